"""Scheduled, consistent backups of Docker volumes."""

__version__ = '1.0.0'
