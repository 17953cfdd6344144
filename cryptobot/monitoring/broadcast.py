"""Periodic price broadcast to websocket subscribers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from aiohttp import WSCloseCode, web

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish(self, message: Dict[str, Any]) -> None:
        ...


class SubscriberHub:
    """The set of live websocket connections receiving broadcasts."""

    def __init__(self) -> None:
        self._subscribers: Set[web.WebSocketResponse] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def add(self, socket: web.WebSocketResponse) -> None:
        self._subscribers.add(socket)
        logger.info('WebSocket client connected (%d total)', len(self._subscribers))

    def discard(self, socket: web.WebSocketResponse) -> None:
        if socket in self._subscribers:
            self._subscribers.discard(socket)
            logger.info('WebSocket client disconnected (%d total)', len(self._subscribers))

    async def publish(self, message: Dict[str, Any]) -> None:
        if not self._subscribers:
            return
        payload = json.dumps(message)
        for socket in list(self._subscribers):
            if socket.closed:
                self.discard(socket)
                continue
            try:
                await socket.send_str(payload)
            except (ConnectionResetError, RuntimeError) as error:
                logger.debug('Dropping websocket subscriber: %s', error)
                self.discard(socket)

    async def close(self) -> None:
        for socket in list(self._subscribers):
            await socket.close(code=WSCloseCode.GOING_AWAY, message=b'Server shutdown')
        self._subscribers.clear()


class PriceBroadcaster:
    """Polls tickers for the configured symbols and publishes ``price_update`` messages.

    A failed cycle is logged and skipped; the schedule keeps running until
    :meth:`stop` is called.
    """

    def __init__(
        self,
        gateway: Any,
        resolver: Any,
        publisher: Publisher,
        symbols: Iterable[str],
        *,
        interval: float = 5.0,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._publisher = publisher
        self._symbols: List[str] = list(symbols)
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def broadcast_once(self) -> Dict[str, Dict[str, Any]]:
        venue_symbols = await self._resolver.preferred_symbols(self._symbols)
        if not venue_symbols:
            logger.warning('No trading pairs available for price broadcast')
            return {}
        snapshots = await self._gateway.get_tickers(venue_symbols)
        updates: Dict[str, Dict[str, Any]] = {}
        for venue_symbol, snapshot in snapshots.items():
            display = await self._resolver.display_symbol(venue_symbol)
            updates[display] = snapshot.to_broadcast()
        if updates:
            await self._publisher.publish({'type': 'price_update', 'data': updates})
        return updates

    async def _run(self) -> None:
        while True:
            try:
                await self.broadcast_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('Price broadcast cycle failed')
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name='price-broadcast')
        logger.info('Price broadcast started every %.1fs for %d symbols', self._interval, len(self._symbols))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info('Price broadcast stopped')


__all__ = ['PriceBroadcaster', 'Publisher', 'SubscriberHub']
