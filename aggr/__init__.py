"""
Real-time trade aggregation into time-bucketed bars and formula series.
"""

__version__ = "0.1.0"
