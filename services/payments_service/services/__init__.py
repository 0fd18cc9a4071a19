"""Payments service domain operations."""
