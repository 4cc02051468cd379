#!/usr/bin/env python3
"""Server-Sent Events fan-out for busloc_hub."""

from __future__ import annotations

import json
import logging
import queue
import secrets
import threading
import time
from typing import Any, Dict, Iterator, List, Optional

from .models import EVENT_CONNECTED, KEEPALIVE_SECONDS

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ":heartbeat\n\n"

# Pushed into a subscription's queue to end its stream
_CLOSE = object()


def format_event(event: str, payload: Any) -> str:
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n"


def new_connection_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(5)}"


class Subscription:
    """One open push connection: an id, a bounded outbox and the channel that owns it."""

    def __init__(self, channel: "BroadcastChannel", connection_id: str,
                 device_id: Optional[str] = None, maxsize: int = 100) -> None:
        self.channel = channel
        self.id = connection_id
        self.device_id = device_id
        self.outbox: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self.connected_at = time.time()
        self.closed = False

    def offer(self, frame: Any) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(frame)
            return True
        except queue.Full:
            return False

    def end(self) -> None:
        """Mark closed and replace whatever is still queued with the close marker."""
        self.closed = True
        while True:
            try:
                self.outbox.get_nowait()
            except queue.Empty:
                break
        try:
            self.outbox.put_nowait(_CLOSE)
        except queue.Full:
            pass

    def frames(self, keepalive: Optional[float] = None) -> Iterator[str]:
        """
        Yield SSE frames until the client goes away or the channel closes.

        An idle gap of ``keepalive`` seconds yields a comment frame. The
        ``finally`` releases the registry entry on disconnect, error or
        shutdown; the web server closes this generator when the socket drops.
        """
        wait = keepalive if keepalive is not None else self.channel.keepalive_seconds
        try:
            while not self.closed:
                try:
                    frame = self.outbox.get(timeout=wait)
                except queue.Empty:
                    if self.closed:
                        return
                    yield KEEPALIVE_FRAME
                    continue
                if frame is _CLOSE or self.closed:
                    return
                yield frame
        finally:
            self.channel.unsubscribe(self.id)


class BroadcastChannel:
    """
    Process-wide registry of push connections.

    Created at server start, handed to both the SSE endpoint and the ETA
    calculator, and closed at shutdown. All registry mutations hold
    ``_lock``; broadcast iterates over a snapshot so slow clients never
    block subscribe/unsubscribe.
    """

    def __init__(self, keepalive_seconds: float = KEEPALIVE_SECONDS, queue_size: int = 100) -> None:
        self.keepalive_seconds = keepalive_seconds
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subs: Dict[str, Subscription] = {}
        self._closed = False
        self.broadcast_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

    def connection_ids(self) -> List[str]:
        with self._lock:
            return list(self._subs)

    def subscribe(self, device_id: Optional[str] = None) -> Subscription:
        if self._closed:
            raise RuntimeError("broadcast channel is closed")
        sub = Subscription(self, new_connection_id(), device_id=device_id, maxsize=self.queue_size)
        # The connected frame is queued before registration so it is always first
        sub.offer(format_event(EVENT_CONNECTED, {"clientId": sub.id}))
        with self._lock:
            self._subs[sub.id] = sub
        logger.info(f"SSE: client {sub.id} connected (device={device_id or '-'}, total={len(self)})")
        return sub

    def unsubscribe(self, connection_id: str) -> bool:
        with self._lock:
            sub = self._subs.pop(connection_id, None)
        if sub is None:
            return False
        # Ends the stream too, so a dropped client sees EOF and reconnects
        sub.end()
        logger.info(f"SSE: client {connection_id} disconnected (total={len(self)})")
        return True

    def broadcast(self, event: str, payload: Any) -> int:
        """
        Queue one event frame for every registered connection.

        A connection that cannot accept the frame is dropped and its stream
        ended; the others still get it. Returns the number of connections the
        frame was queued for.
        """
        frame = format_event(event, payload)
        with self._lock:
            targets = list(self._subs.values())
        delivered = 0
        for sub in targets:
            if sub.offer(frame):
                delivered += 1
            else:
                logger.debug(f"SSE: dropping client {sub.id} after failed write of {event}")
                self.unsubscribe(sub.id)
        self.broadcast_count += 1
        return delivered

    def close(self) -> None:
        """Deregister every connection and end their streams."""
        with self._lock:
            self._closed = True
            subs = list(self._subs.values())
            self._subs.clear()
        for sub in subs:
            sub.end()
        if subs:
            logger.info(f"SSE: closed {len(subs)} client(s) at shutdown")
