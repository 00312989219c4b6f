"""Multi-layer persistence and the record repositories built on it."""
