"""LocalChat: local-first conversation storage for chat clients."""

__version__ = "0.1.0"
