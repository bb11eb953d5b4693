"""
Orderflow: staged order fulfillment tracking.

Tracks each customer order through warehouse release, shipping, field
application and yield result, and derives the order's lifecycle status
from the recorded stage progress.
"""

__version__ = "1.0.0"
