"""
Core package for shared utilities.

Holds application settings and structured logging configuration used
across the service.
"""
