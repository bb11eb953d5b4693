"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and column mixins
- connection: async engine and session management
- models: ORM models for orders and their stage progress
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []
