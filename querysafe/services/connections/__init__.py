"""Connection records, adapter lifecycle, health and connection testing."""
