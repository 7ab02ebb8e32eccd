"""
Utility helpers: fixture data and duration parsing.
"""
