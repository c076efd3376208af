"""
CarChat CLI

Command-line interface for the CarChat voice core.
"""

from .main import cli, main

__all__ = ["cli", "main"]
