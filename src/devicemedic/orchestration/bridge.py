"""Forwards events polled from a device farm session onto the relay channel."""

import asyncio
from typing import Optional

import structlog

from devicemedic.infra.farm import RemoteSession
from devicemedic.infra.relay import RelayServer

logger = structlog.get_logger()

POLL_INTERVAL = 5.0


class EventBridge:
    """Polls the remote session on a fixed interval.

    Each polled batch is re-emitted in order, so the result watcher cannot
    tell bridged events from ones the device sent to the relay directly.
    A failed poll is logged and the loop carries on.
    """

    def __init__(
        self,
        session: RemoteSession,
        relay: RelayServer,
        is_android: bool,
        interval: float = POLL_INTERVAL,
    ):
        self.session = session
        self.relay = relay
        self.is_android = is_android
        self.interval = interval
        self.forwarded = 0
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting device farm event bridge", interval=self.interval)
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                events = await self.session.poll_for_events(self.is_android)
            except Exception as e:
                logger.warning("appium: polling for events failed", error=str(e))
                continue
            if events:
                # Polled events prove the device is up even though it never
                # opened a socket to the relay.
                self.relay.mark_connected()
            for event in events:
                self.relay.emit(event.name, event.payload, source="farm")
                self.forwarded += 1

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Device farm event bridge stopped", forwarded=self.forwarded)
