"""Photorama command line."""
