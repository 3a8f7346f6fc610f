"""Job queue and processing engine for commit summary workflows."""

__version__ = "0.1.0"
