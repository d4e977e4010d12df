"""Persisted record schemas."""
