"""
Logging module for gomon.
This module provides the console logging setup and the optional Loki handler.
"""

from .setup import setup_logging, set_console_level

__all__ = ["setup_logging", "set_console_level"]
