"""File-backed storage."""
