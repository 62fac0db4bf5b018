"""Operator CLI for the kanban API.

The command surface is implemented with Typer and Rich for better help and
error ergonomics, while command payload outputs remain machine-friendly.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
