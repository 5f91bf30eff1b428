"""
Infrastructure Configuration
============================
Single source of truth for all relay configuration.

Settings are created once by the application factory (or the CLI entry point)
and passed to components explicitly.
"""

from .settings import AppSettings

__all__ = ['AppSettings']
