"""
Live reload package for gomon.

Serves the WebSocket endpoint that browser or editor listeners connect to in
order to be told when a new build is running.
"""
from .server import LiveReloadNotifier, RELOAD_MESSAGE

__all__ = ["LiveReloadNotifier", "RELOAD_MESSAGE"]
