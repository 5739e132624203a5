"""Environment lifecycle core."""
