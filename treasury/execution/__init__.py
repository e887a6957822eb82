"""Venue routing, execution adapters, and balance-moving operations."""
