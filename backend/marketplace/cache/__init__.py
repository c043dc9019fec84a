"""
Cache package for Redis-backed caching and realtime publish operations.
"""
