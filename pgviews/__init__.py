"""
pgviews - managed, versioned PostgreSQL views compiled from query builder specs.
"""

__version__ = "1.0.0"
