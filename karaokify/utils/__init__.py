"""
Shared helpers: structured event logging and human-readable formatting.
"""
