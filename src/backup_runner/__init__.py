"""backup-runner: backup_runner/__init__.py."""

__version__ = "0.3.2"
