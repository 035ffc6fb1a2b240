"""External system connectors (source control and record store)."""
