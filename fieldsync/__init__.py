"""Local mirror of inspection records and photographs from a remote feature service."""

__version__ = "0.1.0"
