"""
This module initializes the console package, exposing the command console
that reads 'rs', 'stats' and friends from standard input.
"""

from .process import CommandConsole
from .handler import print_stats, print_help

__all__ = ["CommandConsole", "print_stats", "print_help"]
