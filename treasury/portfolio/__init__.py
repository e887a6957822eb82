"""Safety balance and yield positions (optimistic local book)."""
