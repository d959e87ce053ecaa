"""Lookup table loading for the table-driven key mapping."""
