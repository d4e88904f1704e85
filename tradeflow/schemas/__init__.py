"""Request/response schemas and boundary validation."""
