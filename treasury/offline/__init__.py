"""Offline command queue."""
