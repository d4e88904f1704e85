"""Redis-backed shared state."""
