"""
DB Coach
========

Streaming database-design assistant backend.
"""

__version__ = "0.1.0"
