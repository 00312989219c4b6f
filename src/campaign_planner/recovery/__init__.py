"""Repair, reset, backup and one-off data migrations."""
