"""AI Digest: multi-source AI content collector."""

__version__ = "0.1.0"
