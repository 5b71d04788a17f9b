"""flowlink: session manager for remote agentic workflows."""

__version__ = "0.1.0"
