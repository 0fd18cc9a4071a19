"""Store service domain operations."""
