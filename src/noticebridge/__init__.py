"""GZCTF notice bridge with a durable, retrying delivery queue."""

__version__ = "0.1.0"
