"""Key-value persistence."""
