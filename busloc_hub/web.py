#!/usr/bin/env python3
"""HTTP API, SSE stream and bus-locator page for busloc_hub."""

from __future__ import annotations

import html as _html
import json
import logging

from flask import Flask, Response, jsonify, request, stream_with_context

from .database import FleetDB
from .ingest import HeartbeatIngestor
from .models import BadHeartbeat, safe_int
from .sse import BroadcastChannel

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def create_app(db: FleetDB, channel: BroadcastChannel, ingestor: HeartbeatIngestor) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False

    def bad_request(msg: str):
        return jsonify({"error": msg}), 400

    @app.errorhandler(BadHeartbeat)
    def on_bad_heartbeat(e: BadHeartbeat):
        return bad_request(str(e))

    # ------------------------------------------------------------
    # Push stream
    # ------------------------------------------------------------
    @app.get("/api/sse")
    def sse():
        device_id = request.args.get("deviceId", "").strip() or None
        sub = channel.subscribe(device_id=device_id)
        return Response(stream_with_context(sub.frames()), mimetype="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/status")
    def status():
        return jsonify({
            "subscribers": len(channel),
            "connectionIds": channel.connection_ids(),
            "broadcasts": channel.broadcast_count,
            "heartbeats": ingestor.heartbeat_count,
            "etaErrors": ingestor.eta_error_count,
            "lastHeartbeatAt": ingestor.last_heartbeat_at,
        })

    # ------------------------------------------------------------
    # Tablet ingestion
    # ------------------------------------------------------------
    @app.post("/api/device/heartbeat")
    def heartbeat():
        body = request.get_json(silent=True)
        return jsonify(ingestor.record_heartbeat(body if body is not None else {}))

    @app.post("/api/device/shift")
    def apply_shift():
        body = request.get_json(silent=True)
        return jsonify(ingestor.apply_shift(body if body is not None else {}))

    @app.get("/api/devices")
    def devices():
        return jsonify([d.to_dict() for d in db.get_all_device_states()])

    @app.get("/api/device/<device_id>")
    def device(device_id: str):
        st = db.get_device_state(device_id)
        if st is None:
            return jsonify({"error": f"unknown device {device_id}"}), 404
        return jsonify(st.to_dict())

    @app.get("/api/timetable")
    def timetable():
        dia_id = safe_int(request.args.get("diaId"))
        route_id = request.args.get("routeId", "").strip()
        if dia_id is None or not route_id:
            return bad_request("diaId (integer) and routeId are required")
        return jsonify([e.to_dict() for e in db.get_timetable(dia_id, route_id)])

    # ------------------------------------------------------------
    # Public bus locator (read side, polling fallback)
    # ------------------------------------------------------------
    @app.get("/api/busloc/arrivals")
    def arrivals():
        route_id = request.args.get("routeId", "").strip()
        stop_id = request.args.get("stopId", "").strip()
        if not route_id or not stop_id:
            return bad_request("routeId and stopId are required")
        rec = db.get_arrivals(route_id, stop_id)
        if rec is None:
            return jsonify({"stopName": stop_id, "arrivals": []})
        return jsonify({
            "stopName": rec.stop_name,
            "arrivals": [a.to_dict() for a in rec.arrivals],
            "updatedAt": rec.updated_at,
        })

    @app.get("/api/busloc/routes/<route_id>/arrivals")
    def route_arrivals(route_id: str):
        return jsonify([r.to_dict() for r in db.get_arrivals_by_route(route_id)])

    @app.get("/api/busloc/positions")
    def positions():
        return jsonify(db.get_public_bus_positions())

    @app.get("/busloc")
    def busloc_page():
        route_id = request.args.get("routeId", "").strip()
        esc = _html.escape
        page = ["<html><head><meta charset='utf-8'><title>Bus locator</title>"
                "<style>body{font-family:system-ui,Arial;margin:20px} table{border-collapse:collapse;width:100%}"
                "th,td{border-bottom:1px solid #ddd;padding:6px 8px;font-size:14px} th{text-align:left}"
                ".soon{font-weight:bold;color:#b00}</style></head><body>"]
        page.append(f"<h2>Bus locator{(' / ' + esc(route_id)) if route_id else ''}</h2>")
        if not route_id:
            page.append("<p>Pass <code>?routeId=...</code> to show a route.</p>")
        else:
            page.append("<table><tr><th>Stop</th><th>Vehicle</th><th>Scheduled</th><th>Estimated</th><th>Delay</th><th></th></tr>")
            for rec in db.get_arrivals_by_route(route_id):
                if not rec.arrivals:
                    page.append(f"<tr><td>{esc(rec.stop_name)}</td><td colspan='5'>-</td></tr>")
                for a in rec.arrivals:
                    soon = f"<span class='soon'>{esc(a.approaching_desc or '')}</span>" if a.is_approaching else ""
                    page.append(
                        f"<tr><td>{esc(rec.stop_name)}</td><td>{esc(a.vehicle_no)}</td><td>{esc(a.scheduled_time)}</td>"
                        f"<td>{esc(a.estimated_time)}</td><td>{a.delay_minutes:+d}</td><td>{soon}</td></tr>"
                    )
            page.append("</table>")
            # Reload on push; the 60s reload covers a dropped stream
            page.append(
                "<script>"
                "const es=new EventSource('/api/sse');"
                f"es.addEventListener('arrival_updated',e=>{{const d=JSON.parse(e.data);if(d.routeId==={_js_str(route_id)})location.reload();}});"
                "setTimeout(()=>location.reload(),60000);"
                "</script>"
            )
        page.append("</body></html>")
        return "\n".join(page)

    return app


def _js_str(s: str) -> str:
    return json.dumps(s).replace("<", "\\u003c")


def start_web_server(app: Flask, host: str, port: int) -> None:
    logger.info(f"WEB: listening on http://{host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
