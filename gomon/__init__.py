"""
gomon watches a Go source tree, rebuilds the program when a watched file
changes and keeps exactly one instance of the fresh build running.
"""

__version__ = "2.0.0"
