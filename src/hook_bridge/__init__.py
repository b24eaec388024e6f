"""Bridge between version-control hooks and a long-running development host."""

__version__ = "0.1.0"
