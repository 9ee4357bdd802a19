from flask import Flask, Response, request, jsonify
import os
import json
import logging
from threading import Lock
from typing import Optional

import dotenv

from serial_gps_simulator import (
    DEFAULT_BAUD,
    SEND_INTERVAL,
    PivotSimulator,
    PortNotOpen,
    PortOpenError,
    list_serial_ports,
)

DEFAULT_HTTP_PORT = 8080
HEARTBEAT_INTERVAL = 15.0  # Seconds between SSE keep-alive comments

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Global simulator instance and lock
sim_lock = Lock()
simulator: Optional[PivotSimulator] = None


def get_simulator() -> PivotSimulator:
    global simulator
    with sim_lock:
        if simulator is None:
            simulator = PivotSimulator(interval=float(os.getenv("GPS_SIM_INTERVAL", SEND_INTERVAL)))
        return simulator


def set_simulator(sim: Optional[PivotSimulator]) -> None:
    global simulator
    with sim_lock:
        simulator = sim


def format_sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.route("/api/ports", methods=["GET"])
def api_ports():
    try:
        return jsonify(list_serial_ports())
    except Exception as e:
        logger.error("Failed to list ports: %s", e)
        return jsonify({"error": "Failed to list ports"}), 500


@app.route("/api/status", methods=["GET"])
def api_status():
    return jsonify(get_simulator().status())


@app.route("/api/stream", methods=["GET"])
def api_stream():
    try:
        limit = int(request.args.get("limit", 100))
    except ValueError:
        limit = 100
    return jsonify({"lines": get_simulator().get_stream(limit=limit)})


@app.route("/api/events", methods=["GET"])
def api_events():
    registry = get_simulator().subscribers

    def generate():
        sub = registry.add()
        try:
            yield ": connected\n\n"
            while True:
                item = sub.get(timeout=HEARTBEAT_INTERVAL)
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(*item)
        finally:
            # Client went away
            sub.close()

    return Response(generate(), mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


@app.route("/api/open-port", methods=["POST"])
def api_open_port():
    data = _json_body()
    port_path = data.get("portPath")
    if not port_path:
        return jsonify({"error": "portPath is required"}), 400
    try:
        baud = int(data.get("baudRate") or DEFAULT_BAUD)
    except (TypeError, ValueError):
        return jsonify({"error": f"Invalid baudRate: {data.get('baudRate')!r}"}), 400
    try:
        get_simulator().open_port(port_path, baud)
    except PortOpenError as e:
        logger.error("Serial port error: %s", e)
        return jsonify({"error": str(e)}), 500
    return jsonify({"success": True})


@app.route("/api/close-port", methods=["POST"])
def api_close_port():
    get_simulator().close_port()
    return jsonify({"closed": True})


@app.route("/api/start-sending", methods=["POST"])
def api_start_sending():
    data = _json_body()
    try:
        get_simulator().start(data.get("currentPos"))
    except PortNotOpen as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"started": True})


@app.route("/api/stop-sending", methods=["POST"])
def api_stop_sending():
    get_simulator().stop()
    return jsonify({"stopped": True})


@app.route("/api/update-coordinates", methods=["POST"])
def api_update_coordinates():
    data = _json_body()
    return jsonify({"updated": get_simulator().set_manual_target(data.get("currentPos"))})


@app.route("/api/update-pivot", methods=["POST"])
def api_update_pivot():
    data = _json_body()
    ok = get_simulator().set_pivot(data.get("center"), data.get("rad"), data.get("speed"))
    return jsonify({"pvtUpdate": ok})


@app.route("/api/clear-pivot", methods=["POST"])
def api_clear_pivot():
    get_simulator().clear_pivot()
    return jsonify({"pvtCleared": True})


@app.route("/api/do", methods=["POST"])
def api_do():
    data = _json_body()
    sim = get_simulator()
    if data.get("autopilot") is not None:
        return jsonify({"ok": sim.set_autopilot(bool(data["autopilot"]))})
    if data.get("speed") is not None:
        return jsonify({"ok": sim.set_speed(data["speed"])})
    return jsonify({"ok": False, "error": "Expected 'autopilot' or 'speed'"}), 400


if __name__ == "__main__":
    dotenv.load_dotenv()
    logging.basicConfig(
        level=os.getenv("GPS_SIM_LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    port = int(os.getenv("GPS_SIM_HTTP_PORT", DEFAULT_HTTP_PORT))
    logger.info("Server running at http://localhost:%d", port)
    # threaded so event streams do not block the control API
    app.run(host="0.0.0.0", port=port, threaded=True)
