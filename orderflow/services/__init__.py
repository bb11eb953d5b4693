"""Service layer for order progress tracking."""
