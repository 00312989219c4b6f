"""Storage and synchronization core for the campaign planning tool."""

__version__ = "0.1.0"
