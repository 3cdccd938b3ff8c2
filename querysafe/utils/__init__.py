"""SQL parsing and dialect helpers."""
