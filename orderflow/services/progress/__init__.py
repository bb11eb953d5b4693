"""Staged order progress workflow engine."""
