"""Task Market Service - task lifecycle and settlement for the agent marketplace."""

__version__ = "0.1.0"
