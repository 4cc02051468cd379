#!/usr/bin/env python3
"""Command-line interface for busloc_hub."""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
import threading
import time
from typing import Any, Dict, List, Optional

import yaml

from .config import ConfigError, HubConfig, load_config
from .database import FleetDB
from .eta import EtaCalculator
from .ingest import HeartbeatIngestor
from .sse import BroadcastChannel
from .web import create_app, start_web_server

logger = logging.getLogger(__name__)


def start_status_ticker(channel: BroadcastChannel, ingestor: HeartbeatIngestor, interval: int = 60) -> threading.Thread:
    def loop():
        while True:
            time.sleep(interval)
            logger.info(
                f"STATUS subscribers={len(channel)} broadcasts={channel.broadcast_count} "
                f"heartbeats={ingestor.heartbeat_count} eta_errors={ingestor.eta_error_count} "
                f"last_heartbeat={ingestor.last_heartbeat_at or 'none-yet'}"
            )

    t = threading.Thread(target=loop, daemon=True)
    t.start()
    return t


def open_db(cfg: HubConfig) -> FleetDB:
    path = pathlib.Path(cfg.resolved_db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return FleetDB(str(path))


def build_services(cfg: HubConfig, db: FleetDB):
    """Wire the channel, calculator and ingestor around one database handle."""
    channel = BroadcastChannel(keepalive_seconds=cfg.keepalive_seconds, queue_size=cfg.subscriber_queue_size)
    calculator = EtaCalculator(
        db, db, channel,
        max_arrivals=cfg.max_arrivals,
        arrival_sort=cfg.arrival_sort,
        stale_after_minutes=cfg.stale_after_minutes,
        timezone=cfg.timezone,
    )
    ingestor = HeartbeatIngestor(db, calculator)
    return channel, calculator, ingestor


def serve(cfg: HubConfig) -> None:
    db = open_db(cfg)
    channel, _calculator, ingestor = build_services(cfg, db)
    app = create_app(db, channel, ingestor)

    stomp_conn = None
    if cfg.stomp_host:
        from .listener import connect_listener
        try:
            stomp_conn = connect_listener(
                ingestor, cfg.stomp_host, cfg.stomp_port, cfg.stomp_destination,
                user=cfg.stomp_user, password=cfg.stomp_password,
            )
        except Exception as e:
            logger.error(f"STOMP: connect failed ({type(e).__name__}: {e}); continuing with HTTP heartbeats only")

    start_status_ticker(channel, ingestor, interval=cfg.status_every)
    try:
        start_web_server(app, cfg.web_host, cfg.web_port)
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        channel.close()
        if stomp_conn is not None:
            try:
                stomp_conn.disconnect()
            except Exception as e:
                logger.debug(f"STOMP: disconnect failed: {e}")
        db.close()


def load_timetable_file(db: FleetDB, path: str) -> List[int]:
    """
    Load stops and dias from a YAML file into the database.

    Layout::

        stops:
          - {stopId: S1, stopName: Station Square, stopLat: "35.1", stopLon: "139.2"}
        dias:
          - name: Weekday 1
            routeId: R1
            type: weekday
            segments:
              - {stopId: S1, arrivalTime: "08:00"}

    Returns the ids of the inserted dias.
    """
    data: Dict[str, Any] = yaml.safe_load(pathlib.Path(path).expanduser().read_text(encoding="utf-8")) or {}
    for s in data.get("stops") or []:
        db.add_stop(str(s["stopId"]), str(s.get("stopName") or s["stopId"]),
                    s.get("stopLat"), s.get("stopLon"), s.get("routeId"))
    ids = []
    for d in data.get("dias") or []:
        segments = [dict(seg, stopId=str(seg["stopId"])) for seg in d.get("segments") or []]
        dia_id = db.add_dia(str(d["name"]), d.get("routeId"), d.get("type", "weekday"), segments)
        logger.info(f"Loaded dia {dia_id} '{d['name']}' route={d.get('routeId')} stops={len(segments)}")
        ids.append(dia_id)
    return ids


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Bus fleet heartbeat ingestion, arrival prediction and SSE push.")
    p.add_argument("--config", help="YAML config file (keys as in HubConfig)")
    p.add_argument("--db-path", help="SQLite database path (default: ~/.cache/busloc/busloc.db)")
    p.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    sub = p.add_subparsers(dest="command")

    s = sub.add_parser("serve", help="Run the HTTP/SSE server (default)")
    s.add_argument("--host", dest="web_host", help="Bind address (default 0.0.0.0)")
    s.add_argument("--port", dest="web_port", type=int, help="HTTP port (default 3000)")
    s.add_argument("--timezone", help="IANA timezone schedules are authored in (default: host local time)")
    s.add_argument("--keepalive", dest="keepalive_seconds", type=float,
                   help="Seconds between SSE keep-alive comments (default 30)")
    s.add_argument("--arrival-sort", choices=["lexical", "service_day"],
                   help="Ordering of a stop's arrival list (default lexical)")
    s.add_argument("--stale-after", dest="stale_after_minutes", type=int,
                   help="Drop other vehicles' predictions older than N minutes (default: never)")
    s.add_argument("--stomp-host", help="Also consume JSON heartbeats from this STOMP broker")
    s.add_argument("--stomp-port", type=int, help="STOMP port (default 61613)")
    s.add_argument("--stomp-user", help="STOMP login")
    s.add_argument("--stomp-password", help="STOMP passcode")
    s.add_argument("--stomp-destination", help="STOMP destination (default /topic/busloc.heartbeat)")
    s.add_argument("--status-every", type=int, help="Log a status line every N seconds (default 60)")

    sub.add_parser("init-db", help="Create the database schema and exit")

    lt = sub.add_parser("load-timetable", help="Load stops/dias from a YAML file")
    lt.add_argument("path", help="YAML timetable file")
    return p.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> HubConfig:
    cfg = load_config(args.config)
    overrides = {k: v for k, v in vars(args).items() if k in HubConfig.__dataclass_fields__}
    return cfg.replace(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        cfg = config_from_args(args)
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2

    command = args.command or "serve"
    if command == "init-db":
        open_db(cfg).close()
        logger.info(f"Schema applied to {cfg.resolved_db_path}")
        return 0
    if command == "load-timetable":
        db = open_db(cfg)
        try:
            load_timetable_file(db, args.path)
        finally:
            db.close()
        return 0
    serve(cfg)
    return 0
