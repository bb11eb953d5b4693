"""
Cache package initialization.

Provides the Redis connection management and cache key utilities used by
the progress cache.
"""
