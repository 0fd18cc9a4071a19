"""Identity service domain operations."""
