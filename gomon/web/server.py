import time
import asyncio
import logging
import threading
import concurrent.futures
from typing import List, Optional, Set

from hypercorn.asyncio import serve
from hypercorn.config import Config
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket
from starlette.applications import Starlette

log = logging.getLogger(__name__)

RELOAD_MESSAGE = "reload"


class Listener:
    """A connected socket and the event loop it lives on. Hashed by identity."""
    __slots__ = ("websocket", "loop")

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.loop = loop


class LiveReloadNotifier:
    """
    Holds live reload listener connections and pushes a reload message to
    all of them after each successful build.

    The ASGI app is served by hypercorn on a dedicated thread with its own
    event loop. Connections are accepted regardless of build state.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 35729, path: str = "/livereload",
                 send_timeout: float = 1.0):
        self.host = host
        self.port = port
        self.path = path
        self.send_timeout = send_timeout
        self.app = Starlette(debug=False, routes=[WebSocketRoute(path, self._handle_websocket)])

        self._listeners: Set[Listener] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._ready = threading.Event()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _register(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.add(listener)

    def _deregister(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.discard(listener)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Keeps one listener registered until its connection closes or fails."""
        await websocket.accept()
        listener = Listener(websocket, asyncio.get_running_loop())
        self._register(listener)
        client = websocket.client.host if websocket.client else "unknown"
        log.debug(f"Live reload listener connected from {client}")
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except Exception as e:
            log.debug(f"Live reload connection from {client} failed: {e}")
        finally:
            self._deregister(listener)
            log.debug(f"Live reload listener from {client} disconnected")

    def notify_reload(self) -> int:
        """
        Pushes the reload message to every active listener.

        Pushes run concurrently and are bounded by `send_timeout` in total.
        A listener whose push fails or times out is dropped.

        :return int: The number of listeners that received the message.
        """
        with self._lock:
            listeners: List[Listener] = list(self._listeners)
        if not listeners:
            return 0

        pending = []
        for listener in listeners:
            try:
                future = asyncio.run_coroutine_threadsafe(listener.websocket.send_text(RELOAD_MESSAGE), listener.loop)
            except RuntimeError:
                self._deregister(listener)
                continue
            pending.append((listener, future))

        delivered = 0
        deadline = time.monotonic() + self.send_timeout
        for listener, future in pending:
            try:
                future.result(timeout=max(0.0, deadline - time.monotonic()))
                delivered += 1
            except concurrent.futures.TimeoutError:
                future.cancel()
                self._deregister(listener)
                log.debug("Dropped live reload listener: push timed out")
            except Exception as e:
                self._deregister(listener)
                log.debug(f"Dropped live reload listener: {e}")

        log.debug(f"Reload signal sent to {delivered} listener(s)")
        return delivered

    #* --- Server Lifecycle ---
    def start(self) -> None:
        """Starts serving on a background thread and waits until the loop is up."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._serve, daemon=True, name="LiveReloadServerThread")
        self._thread.start()
        self._ready.wait(timeout=5)

    def _serve(self) -> None:
        try:
            asyncio.run(self._serve_async())
        except OSError as e:
            log.error(f"Live reload server could not listen on {self.host}:{self.port}: {e}")
        finally:
            self._ready.set()

    async def _serve_async(self) -> None:
        config = Config()
        config.bind = [f"{self.host}:{self.port}"]
        config.accesslog = None
        config.errorlog = log
        config.graceful_timeout = 1.0

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._ready.set()
        log.info(f"Live reload server listening on ws://{self.host}:{self.port}{self.path}")
        await serve(self.app, config, shutdown_trigger=self._shutdown_event.wait)

    def stop(self) -> None:
        """Closes all listener connections and stops the server thread."""
        if self._thread is None:
            return
        loop, shutdown_event = self._loop, self._shutdown_event
        if loop is not None and shutdown_event is not None and not loop.is_closed():
            with self._lock:
                listeners = list(self._listeners)
                self._listeners.clear()
            try:
                for listener in listeners:
                    if listener.loop is loop:
                        asyncio.run_coroutine_threadsafe(listener.websocket.close(), loop)
                loop.call_soon_threadsafe(shutdown_event.set)
            except RuntimeError:
                # The loop finished on its own in the meantime.
                pass
        self._thread.join(timeout=5)
        self._thread = None
        log.debug("Live reload server stopped.")
