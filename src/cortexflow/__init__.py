"""CortexFlow: document retrieval for project context."""

__version__ = "0.1.0"
