"""Performance statistics form engine and service."""
