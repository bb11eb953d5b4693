"""Pydantic schemas for API request and response validation."""
