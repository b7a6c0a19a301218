"""instancesync - offline-first synchronization of game instances."""

__version__ = "0.1.0"
