"""Workflow graph execution: expressions, scheduling and a background queue."""

__version__ = "0.3.0"
