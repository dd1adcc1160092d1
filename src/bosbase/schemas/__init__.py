"""Pydantic schemas for values exchanged with callers."""
