"""Campaign and budget domain records."""
