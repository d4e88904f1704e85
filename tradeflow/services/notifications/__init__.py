"""Post-commit order notifications."""
