"""Caching services built on top of the Redis client."""
