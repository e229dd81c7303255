"""Drive GitHub issues through grooming, building and review with AI agents."""

__version__ = "0.1.0"
