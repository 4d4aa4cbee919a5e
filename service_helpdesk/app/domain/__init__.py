"""
Domain read paths served through the cache.
"""
