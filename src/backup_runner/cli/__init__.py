"""Command line interface for backup-runner."""

from .dispatcher import main

__all__ = ["main"]
