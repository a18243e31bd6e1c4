"""Local relay server the device under test reports into.

The in-app test client opens a websocket to ``/`` and sends JSON frames of
the form ``{"event": "<name>", "data": {...}}``. Every accepted frame becomes
an :class:`Event` on a single channel that both callback handlers and queue
subscribers observe in arrival order. The device farm poll bridge writes to
the same channel through :meth:`RelayServer.emit`.
"""

import asyncio
import contextlib
import json
import socket
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from devicemedic.domain.errors import ConfigurationError, InfrastructureError
from devicemedic.domain.models import Event, EventName

logger = structlog.get_logger()

EventHandler = Callable[[Dict[str, Any]], Any]

# Android emulators reach the host loopback through this address.
ANDROID_HOST_ADDRESS = "10.0.2.2"
LOCAL_HOST_ADDRESS = "127.0.0.1"


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the CLI."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):  # type: ignore[override]
        yield


def _bind_first_free(ports: Tuple[int, int], host: str = "0.0.0.0") -> socket.socket:
    low, high = ports
    last_error: Optional[OSError] = None
    for port in range(low, high + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            last_error = e
            continue
        sock.listen(16)
        sock.setblocking(False)
        return sock
    raise InfrastructureError(
        f"Unable to bind relay server to any port in {low}-{high}: {last_error}"
    )


class RelayServer:
    """Websocket relay between the device and the orchestrator."""

    def __init__(self, external_url: Optional[str] = None, use_tunnel: bool = False):
        if use_tunnel and not external_url:
            raise ConfigurationError(
                "A tunnel requires an external server url to hand to the device."
            )
        self.external_url = external_url.rstrip("/") if external_url else None
        self.use_tunnel = use_tunnel
        self.port: Optional[int] = None

        self._handlers: Dict[EventName, List[EventHandler]] = defaultdict(list)
        self._subscribers: List["asyncio.Queue[Event]"] = []
        self._device_connected = False
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional["asyncio.Task[None]"] = None
        self._socket: Optional[socket.socket] = None
        self.app = self._build_app()

    @classmethod
    async def start(
        cls,
        ports: Tuple[int, int],
        external_url: Optional[str] = None,
        use_tunnel: bool = False,
    ) -> "RelayServer":
        """Start listening on the first free port in ``ports``."""
        relay = cls(external_url=external_url, use_tunnel=use_tunnel)
        await relay.listen(ports)
        return relay

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="devicemedic relay")

        @app.get("/")
        async def status() -> Dict[str, Any]:
            return {"connected": self._device_connected}

        @app.websocket("/")
        async def device_socket(websocket: WebSocket) -> None:
            await websocket.accept()
            self.mark_connected()
            try:
                while True:
                    raw = await websocket.receive_text()
                    self.receive(raw)
            except WebSocketDisconnect:
                pass
            finally:
                logger.info("Device disconnected from relay server", port=self.port)
                self.emit(EventName.DISCONNECT, {})

        return app

    async def listen(self, ports: Tuple[int, int]) -> None:
        self._socket = _bind_first_free(ports)
        self.port = self._socket.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", lifespan="off")
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise InfrastructureError("Relay server exited during startup")
            await asyncio.sleep(0.05)

        logger.info("Relay server listening", port=self.port, external_url=self.external_url)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, timeout=5)
            except asyncio.TimeoutError:
                self._serve_task.cancel()
        if self._socket is not None:
            self._socket.close()
        self._server = None
        logger.info("Relay server stopped", port=self.port)

    def get_connection_url(self, platform_id: str) -> str:
        """URL the in-app client should report to."""
        if self.external_url:
            return f"{self.external_url}:{self.port}" if not self.use_tunnel else self.external_url
        host = ANDROID_HOST_ADDRESS if platform_id == "android" else LOCAL_HOST_ADDRESS
        return f"http://{host}:{self.port}"

    def is_device_connected(self) -> bool:
        return self._device_connected

    def mark_connected(self) -> None:
        if not self._device_connected:
            logger.info("Device connected to relay server", port=self.port)
        self._device_connected = True

    def on(self, name: EventName, handler: EventHandler) -> None:
        self._handlers[EventName(name)].append(handler)

    def subscribe(self) -> "asyncio.Queue[Event]":
        """Return a queue that receives every event emitted from now on."""
        queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Event]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def emit(self, name: EventName, payload: Optional[Dict[str, Any]] = None, source: str = "relay") -> Event:
        event = Event(name=EventName(name), payload=payload or {}, source=source)
        for handler in list(self._handlers[event.name]):
            try:
                handler(event.payload)
            except Exception as e:
                logger.warning(
                    "Relay event handler failed",
                    event_name=event.name.value,
                    error=str(e),
                )
        for queue in list(self._subscribers):
            queue.put_nowait(event)
        return event

    def receive(self, raw: str) -> Optional[Event]:
        """Turn a raw device frame into an event; malformed frames are dropped."""
        try:
            frame = json.loads(raw)
            name = EventName(frame.get("event"))
            payload = frame.get("data") or {}
            if not isinstance(payload, dict):
                payload = {"value": payload}
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.warning("Dropping unrecognised relay frame", frame=raw[:200], error=str(e))
            return None
        return self.emit(name, payload)
