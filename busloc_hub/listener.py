#!/usr/bin/env python3
"""STOMP heartbeat listener for busloc_hub."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, Optional

import stomp

from .ingest import HeartbeatIngestor
from .models import BadHeartbeat, utc_now_iso

logger = logging.getLogger(__name__)


class HeartbeatListener(stomp.ConnectionListener):
    """Feeds JSON heartbeats published on a STOMP destination into the ingestor."""

    def __init__(self, ingestor: HeartbeatIngestor) -> None:
        self.ingestor = ingestor

        self.connected_at: Optional[str] = None
        self.last_message_at: Optional[str] = None
        self.msg_count_total = 0
        self.msg_count_by_dest = defaultdict(int)
        self.rejected_count = 0

    def on_connecting(self, host_and_port):
        try:
            h, p = host_and_port
        except (TypeError, ValueError):
            h, p = "?", "?"
        logger.info(f"STOMP: connecting TCP to {h}:{p} ...")

    def on_connected(self, frame) -> None:
        self.connected_at = utc_now_iso()
        headers = getattr(frame, "headers", None) or {}
        logger.info(
            f"STOMP: connected version={headers.get('version', '?')} "
            f"session={headers.get('session', '?')} server={headers.get('server', '?')}"
        )

    def on_disconnected(self) -> None:
        logger.warning("STOMP: disconnected")

    def on_error(self, frame) -> None:
        logger.error(f"STOMP: error headers={getattr(frame, 'headers', {})} body={getattr(frame, 'body', '')}")

    def on_message(self, frame) -> None:
        self.last_message_at = utc_now_iso()
        self.msg_count_total += 1
        dest = (getattr(frame, "headers", None) or {}).get("destination", "")
        if dest:
            self.msg_count_by_dest[dest] += 1

        if not frame.body:
            return
        try:
            payload: Any = json.loads(frame.body)
        except ValueError:
            self.rejected_count += 1
            logger.debug(f"STOMP: non-JSON message on {dest or '?'} ignored")
            return

        # A message may batch several heartbeats
        items = payload if isinstance(payload, list) else [payload]
        for item in items:
            try:
                self.ingestor.record_heartbeat(item)
            except BadHeartbeat as e:
                self.rejected_count += 1
                logger.debug(f"STOMP: rejected heartbeat on {dest or '?'}: {e}")
            except Exception:
                # Keep the receiver thread alive; a DB outage must not stop the feed
                logger.exception("STOMP: heartbeat persist failed")


def connect_listener(ingestor: HeartbeatIngestor, host: str, port: int, destination: str,
                     user: Optional[str] = None, password: Optional[str] = None) -> stomp.Connection:
    conn = stomp.Connection11(
        host_and_ports=[(host, port)],
        keepalive=True,
        heartbeats=(10000, 10000),
        reconnect_attempts_max=5,
    )
    listener = HeartbeatListener(ingestor)
    conn.set_listener("", listener)
    logger.info(f"STOMP: connecting to {host}:{port} (stomp.py {getattr(stomp, '__version__', '?')})")
    conn.connect(username=user, passcode=password, wait=True)
    conn.subscribe(destination=destination, id="heartbeat", ack="auto")
    logger.info(f"STOMP: subscribed {destination}")
    return conn
