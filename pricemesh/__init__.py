"""
Product search aggregation with rate limiting, circuit breaking and caching.
"""

__version__ = "0.1.0"
