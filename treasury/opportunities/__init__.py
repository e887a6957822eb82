"""Yield opportunity aggregation and ranking."""
