'''
Serial GPS Simulator
====================
This module simulates a GPS receiver and writes NMEA 0183 GNGGA sentences to a serial port.
The position either follows a manually set target or sweeps around a pivot center
(irrigation-pivot style autopilot), advancing a fixed angle every tick.

Every emitted position is also published as a `gpsData` event to all registered
subscribers (the Flask app streams them to browsers).

The simulation is controlled programmatically via the PivotSimulator class
(open/close port, start/stop, target/pivot/speed/autopilot updates) and by CLI
arguments for headless use.
'''

import math
import time
import queue
import logging
import threading
import argparse
import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, NamedTuple, Optional

import dotenv
import serial
from serial.tools.list_ports import comports

logger = logging.getLogger(__name__)

# --- Configuration ---
SEND_INTERVAL = 1.0        # Seconds between ticks
DEFAULT_BAUD = 9600        # Baud rate used when none is given
DEFAULT_SPEED = 1.0        # Autopilot angular speed in degrees per minute
EARTH_RADIUS_M = 6371000.0 # Mean Earth radius in meters
STREAM_SIZE = 200          # Recent sentences kept for the stream API
SUBSCRIBER_QUEUE_SIZE = 100
POSITION_EVENT = "gpsData"

# Constant GGA fields (not derived from the simulation)
GGA_FIX_QUALITY = "1"
GGA_NUM_SATS = "10"
GGA_HDOP = "2.0"
GGA_ALTITUDE = "230.1"
GGA_GEOID_SEP = "46.9"

# Port status codes reported by status()
STATUS_CLOSED = 0
STATUS_OPEN = 1
STATUS_SENDING = 2


# --- Errors ---

class SimulatorError(Exception):
    """Base class for simulator errors."""


class PortNotOpen(SimulatorError):
    """Raised when the engine is started without an open serial port."""


class PortOpenError(SimulatorError):
    """Raised when the serial device cannot be opened."""


class InvalidPivotConfig(SimulatorError):
    """Raised when a pivot update is missing its center, radius or speed."""


class DeviceWriteError(SimulatorError):
    """Raised when a sentence cannot be written to the serial device."""


# --- Data model ---

class GeoPoint(NamedTuple):
    lat: float
    lon: float

    @classmethod
    def parse(cls, value) -> Optional["GeoPoint"]:
        """Builds a GeoPoint from a [lat, lon] pair or a {lat, lon} dict.

        Returns None if the value is missing, malformed or out of range.
        """
        if value is None:
            return None
        try:
            if isinstance(value, dict):
                lat, lon = float(value["lat"]), float(value["lon"])
            else:
                lat, lon = (float(v) for v in value)
        except (KeyError, TypeError, ValueError):
            return None
        if math.isnan(lat) or math.isnan(lon):
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            return None
        return cls(lat, lon)


class PivotConfig(NamedTuple):
    center: GeoPoint
    radius_m: float
    speed: float  # degrees per minute


class Mode(Enum):
    MANUAL = "manual"
    AUTOPILOT = "autopilot"


@dataclass
class SimulationState:
    mode: Mode = Mode.MANUAL
    manual_target: Optional[GeoPoint] = None
    pivot: Optional[PivotConfig] = None
    target_angle_deg: float = 0.0
    current_angle_deg: float = 0.0
    current_position: Optional[GeoPoint] = None
    running: bool = False
    speed: float = DEFAULT_SPEED


class PositionEvent(NamedTuple):
    position: GeoPoint
    bearing_from_pivot_deg: float

    def to_payload(self) -> dict:
        return {"servPos": [self.position.lat, self.position.lon], "angle": self.bearing_from_pivot_deg}


# --- Geo helpers ---

def destination_point(origin: GeoPoint, bearing_deg: float, distance_m: float) -> GeoPoint:
    """Point reached from origin after distance_m along bearing_deg (spherical earth)."""
    lat1 = math.radians(origin.lat)
    lon1 = math.radians(origin.lon)
    brng = math.radians(bearing_deg)
    ang = distance_m / EARTH_RADIUS_M

    lat2 = math.asin(
        math.sin(lat1) * math.cos(ang) + math.cos(lat1) * math.sin(ang) * math.cos(brng)
    )
    lon2 = lon1 + math.atan2(
        math.sin(brng) * math.sin(ang) * math.cos(lat1),
        math.cos(ang) - math.sin(lat1) * math.sin(lat2),
    )
    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return GeoPoint(math.degrees(lat2), lon_deg)


def initial_bearing(origin: GeoPoint, point: GeoPoint) -> float:
    """Initial great-circle bearing from origin to point, degrees in [0, 360)."""
    lat1 = math.radians(origin.lat)
    lat2 = math.radians(point.lat)
    dlon = math.radians(point.lon - origin.lon)
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    brng = math.degrees(math.atan2(y, x))
    if brng < 0:
        brng += 360.0
    # -0.0 and values rounding up to 360.0
    return brng % 360.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)
    h = math.sin(dlat / 2) ** 2 + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def step_angle(current_deg: float, target_deg: float, rate_deg: float) -> float:
    """Moves current_deg one step of rate_deg towards target_deg along the shorter arc.

    There is no clamping on arrival: if the remaining gap is smaller than one
    step the angle overshoots and keeps oscillating around the target.
    """
    if target_deg > current_deg and (target_deg - current_deg) > 180:
        nxt = current_deg - rate_deg
    elif target_deg < current_deg and (current_deg - target_deg) > 180:
        nxt = current_deg + rate_deg
    elif target_deg > current_deg:
        nxt = current_deg + rate_deg
    elif target_deg < current_deg:
        nxt = current_deg - rate_deg
    else:
        nxt = current_deg
    nxt %= 360.0
    # a tiny negative value wraps to exactly 360.0
    return 0.0 if nxt >= 360.0 else nxt


# --- NMEA helpers ---

def calculate_nmea_checksum(sentence_body: str) -> str:
    """Calculates the NMEA checksum for a sentence body (without '$' or '*')"""
    checksum = 0
    for char in sentence_body:
        checksum ^= ord(char)
    return f"{checksum & 0xFF:02X}"


def _split_degrees(value: float):
    value_abs = abs(value)
    degrees = int(value_abs)
    minutes = round((value_abs - degrees) * 60, 4)
    if minutes >= 60.0:
        # 59.99999' rounds up to a whole degree
        degrees += 1
        minutes = 0.0
    return degrees, minutes


def format_nmea_lat(lat_decimal: float) -> str:
    """Converts decimal latitude to NMEA format (ddmm.mmmm,H)"""
    indicator = 'N' if lat_decimal >= 0 else 'S'
    degrees, minutes = _split_degrees(lat_decimal)
    return f"{degrees:02d}{minutes:07.4f},{indicator}"


def format_nmea_lon(lon_decimal: float) -> str:
    """Converts decimal longitude to NMEA format (dddmm.mmmm,H)"""
    indicator = 'E' if lon_decimal >= 0 else 'W'
    degrees, minutes = _split_degrees(lon_decimal)
    return f"{degrees:03d}{minutes:07.4f},{indicator}"


def create_gngga(utc_time: datetime, lat: float, lon: float) -> str:
    """Creates a GNGGA sentence without line terminator."""
    # $GNGGA,time,lat,N/S,lon,E/W,fix_quality,num_sats,hdop,altitude,M,geoid_sep,M,age_dgps,dgps_id*CS
    time_str = f"{utc_time.strftime('%H%M%S')}.{utc_time.microsecond // 1000:03d}"
    lat_nmea = format_nmea_lat(lat)
    lon_nmea = format_nmea_lon(lon)

    body = (
        f"GNGGA,{time_str},{lat_nmea},{lon_nmea},{GGA_FIX_QUALITY},{GGA_NUM_SATS},"
        f"{GGA_HDOP},{GGA_ALTITUDE},M,{GGA_GEOID_SEP},M,,"
    )
    checksum = calculate_nmea_checksum(body)
    return f"${body}*{checksum}"


# --- Serial output ---

def list_serial_ports() -> List[str]:
    return [p.device for p in comports()]


class SerialOutput:
    """Thin wrapper around a pyserial port used as the sentence sink."""

    def __init__(self, opener: Callable = serial.serial_for_url) -> None:
        self._opener = opener
        self.ser = None
        self.path: Optional[str] = None
        self.baud = DEFAULT_BAUD

    def open(self, path: str, baud: int = DEFAULT_BAUD) -> None:
        """Opens the device, closing any previously open one.

        Raises:
            PortOpenError: If the device cannot be opened.
        """
        self.close()
        try:
            self.ser = self._opener(path, baudrate=int(baud), bytesize=serial.EIGHTBITS, parity=serial.PARITY_NONE,
                                    stopbits=serial.STOPBITS_ONE, timeout=1, write_timeout=1)
        except (serial.SerialException, OSError, ValueError) as e:
            self.ser = None
            raise PortOpenError(f"Failed to open {path}: {e}") from e
        self.path = path
        self.baud = int(baud)
        logger.info("Port %s opened at %d baud", path, self.baud)

    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    def write(self, data: bytes) -> None:
        if not self.is_open():
            raise DeviceWriteError("Serial port not open")
        try:
            self.ser.write(data)
        except (serial.SerialException, OSError) as e:
            raise DeviceWriteError(str(e)) from e

    def close(self) -> None:
        if self.ser is None:
            return
        try:
            if self.ser.is_open:
                self.ser.close()
                logger.info("Serial port %s closed", self.path)
        finally:
            self.ser = None


# --- Subscribers ---

class Subscription:
    def __init__(self, registry: "SubscriberRegistry", maxsize: int) -> None:
        self._registry = registry
        self.queue: "queue.Queue[tuple]" = queue.Queue(maxsize=maxsize)

    def get(self, timeout: Optional[float] = None):
        """Returns the next (event, payload) pair, or None on timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._registry.remove(self)


class SubscriberRegistry:
    """Fan-out of events to independent subscriber queues.

    A subscriber that does not drain its queue loses events once the queue is
    full; publishing never blocks on it.
    """

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []

    def add(self) -> Subscription:
        sub = Subscription(self, self._maxsize)
        with self._lock:
            self._subscribers.append(sub)
        logger.info("Subscriber connected (%d total)", len(self))
        return sub

    def remove(self, sub: Subscription) -> None:
        with self._lock:
            try:
                self._subscribers.remove(sub)
            except ValueError:
                return
        logger.info("Subscriber disconnected (%d total)", len(self))

    def publish(self, event: str, payload: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            try:
                sub.queue.put_nowait((event, payload))
            except queue.Full:
                logger.debug("Subscriber queue full, dropping %s event", event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


# --- Simulator ---

class PivotSimulator:
    """A controllable serial GPS simulator ticking in a background thread.

    All state lives in one SimulationState guarded by a single lock. Control
    methods mutate it and return immediately; the tick reads, computes, writes
    and publishes while holding the same lock.
    """

    def __init__(
        self,
        interval: float = SEND_INTERVAL,
        output: Optional[SerialOutput] = None,
        subscribers: Optional[SubscriberRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.interval = float(interval)
        self.output = output if output is not None else SerialOutput()
        self.subscribers = subscribers if subscribers is not None else SubscriberRegistry()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = SimulationState()

        # Runtime control
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        # serialises start/stop; never taken by the tick
        self._control_lock = threading.Lock()
        self._stream = deque(maxlen=STREAM_SIZE)

    # Port handling
    def open_port(self, path: str, baud: int = DEFAULT_BAUD) -> None:
        with self._lock:
            self.output.open(path, baud)

    def close_port(self) -> None:
        self.stop()
        with self._lock:
            self.output.close()

    def port_status(self) -> int:
        with self._lock:
            if not self.output.is_open():
                return STATUS_CLOSED
            return STATUS_SENDING if self.state.running else STATUS_OPEN

    # Lifecycle
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, initial_target=None) -> None:
        """Starts ticking, optionally setting the manual target first.

        Raises:
            PortNotOpen: If no serial port is open.
        """
        with self._control_lock:
            with self._lock:
                if not self.output.is_open():
                    raise PortNotOpen("Serial port not open")
                if initial_target is not None:
                    self.set_manual_target(initial_target)
                self.state.running = True
            if self.is_running():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._run_loop, args=(self._stop_event,), daemon=True)
            self._thread.start()
        logger.info("Simulator started, ticking every %.1fs", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        with self._control_lock:
            with self._lock:
                was_running = self.state.running
                self.state.running = False
            self._stop_event.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
            self._thread = None
        if was_running:
            logger.info("Simulator stopped")

    # Commands
    def set_manual_target(self, point) -> bool:
        target = GeoPoint.parse(point)
        if target is None:
            return False
        with self._lock:
            self.state.manual_target = target
            self._refresh_target_angle()
        return True

    def set_pivot(self, center, radius_m, speed) -> bool:
        try:
            pivot = self._build_pivot(center, radius_m, speed)
        except InvalidPivotConfig as e:
            logger.warning("Pivot not updated: %s", e)
            return False
        with self._lock:
            self.state.pivot = pivot
            self.state.speed = pivot.speed
            self._refresh_target_angle()
            if self.state.mode is Mode.AUTOPILOT:
                self._seed_angle()
        logger.info("Set pivot of %.1fm at [%.6f, %.6f]", pivot.radius_m, pivot.center.lat, pivot.center.lon)
        return True

    def clear_pivot(self) -> None:
        with self._lock:
            self.state.pivot = None
            self.state.mode = Mode.MANUAL
        logger.info("Pivot cleared")

    def set_autopilot(self, enabled: bool) -> bool:
        with self._lock:
            if not self.state.running:
                return False
            if not enabled:
                self.state.mode = Mode.MANUAL
            elif self.state.pivot is None:
                logger.warning("Autopilot requires a pivot")
                return False
            else:
                self.state.mode = Mode.AUTOPILOT
                self._seed_angle()
        logger.info("Autopilot: %s", "on" if enabled else "off")
        return True

    def set_speed(self, speed) -> bool:
        try:
            value = float(speed)
        except (TypeError, ValueError):
            return False
        if not value > 0:
            return False
        with self._lock:
            self.state.speed = value
            if self.state.pivot is not None:
                self.state.pivot = self.state.pivot._replace(speed=value)
        logger.info("Set speed to %s deg/min", value)
        return True

    # Tick
    def tick(self) -> Optional[PositionEvent]:
        """Runs one simulation step. Returns the emitted event, if any."""
        with self._lock:
            st = self.state
            if not st.running:
                return None
            if st.mode is Mode.AUTOPILOT and st.pivot is not None and st.current_position is not None:
                rate = st.pivot.speed / 60.0
                st.current_angle_deg = step_angle(st.current_angle_deg, st.target_angle_deg, rate)
                st.current_position = destination_point(st.pivot.center, st.current_angle_deg, st.pivot.radius_m)
            else:
                st.current_position = st.manual_target
                if st.mode is Mode.AUTOPILOT:
                    # sweep starts from the bearing of the first emitted position
                    self._seed_angle()
            if st.current_position is None:
                return None

            pos = st.current_position
            angle = initial_bearing(st.pivot.center, pos) if st.pivot is not None else 0.0
            sentence = create_gngga(self._clock(), pos.lat, pos.lon)
            try:
                self.output.write((sentence + "\r\n").encode('ascii'))
                logger.debug("Sent: %s", sentence)
            except DeviceWriteError as e:
                logger.error("Failed to write to serial port: %s", e)
            self._stream.append(sentence)
            event = PositionEvent(pos, angle)
            self.subscribers.publish(POSITION_EVENT, event.to_payload())
            return event

    def status(self) -> dict:
        with self._lock:
            st = self.state
            pivot = st.pivot
            return {
                "status": self.port_status(),
                "autopilot": st.mode is Mode.AUTOPILOT,
                "coords": list(st.manual_target) if st.manual_target else None,
                "pivotCenter": list(pivot.center) if pivot else None,
                "pivotRadius": pivot.radius_m if pivot else None,
                "speed": st.speed,
                "running": st.running,
                "position": list(st.current_position) if st.current_position else None,
                "angle": st.current_angle_deg,
                "interval": self.interval,
                "port": self.output.path if self.output.is_open() else None,
                "subscribers": len(self.subscribers),
                "stream_size": len(self._stream),
            }

    def get_stream(self, limit: int = 100) -> List[str]:
        with self._lock:
            if limit <= 0:
                return []
            return list(self._stream)[-limit:]

    # Internal helpers
    def _run_loop(self, stop_event: threading.Event) -> None:
        # first tick fires one interval after start
        while not stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Simulator tick failed")

    @staticmethod
    def _build_pivot(center, radius_m, speed) -> PivotConfig:
        if not (center and radius_m and speed):
            raise InvalidPivotConfig("center, rad and speed are required")
        point = GeoPoint.parse(center)
        if point is None:
            raise InvalidPivotConfig(f"Invalid center: {center!r}")
        try:
            radius_m = float(radius_m)
            speed = float(speed)
        except (TypeError, ValueError) as e:
            raise InvalidPivotConfig(str(e)) from e
        if not (radius_m > 0 and speed > 0):
            raise InvalidPivotConfig("rad and speed must be positive")
        return PivotConfig(point, radius_m, speed)

    def _refresh_target_angle(self) -> None:
        st = self.state
        if st.pivot is not None and st.manual_target is not None:
            st.target_angle_deg = initial_bearing(st.pivot.center, st.manual_target)
            logger.debug("Target angle: %f", st.target_angle_deg)

    def _seed_angle(self) -> None:
        st = self.state
        if st.pivot is not None and st.current_position is not None:
            st.current_angle_deg = initial_bearing(st.pivot.center, st.current_position)


def run_simulator(device, baud, interval, target, pivot=None, autopilot=False):
    sim = PivotSimulator(interval=interval)
    sim.open_port(device, baud)
    if pivot:
        sim.set_pivot(*pivot)
    sim.start(target)
    if autopilot:
        sim.set_autopilot(True)
    try:
        # Keep main thread alive until Ctrl+C
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Simulator stopped by user.")
    finally:
        sim.close_port()


if __name__ == "__main__":
    dotenv.load_dotenv()
    logging.basicConfig(
        level=os.getenv("GPS_SIM_LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    parser = argparse.ArgumentParser(description="Serial GPS (NMEA GNGGA) Simulator")
    parser.add_argument("--device", required=True, help="Serial device path or pyserial URL")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD, help="Baud rate")
    parser.add_argument("--interval", type=float, default=SEND_INTERVAL, help="Tick interval seconds")
    parser.add_argument("--lat", type=float, required=True, help="Target latitude")
    parser.add_argument("--lon", type=float, required=True, help="Target longitude")
    parser.add_argument("--pivot-lat", type=float, help="Pivot center latitude")
    parser.add_argument("--pivot-lon", type=float, help="Pivot center longitude")
    parser.add_argument("--radius", type=float, help="Pivot radius (meters)")
    parser.add_argument("--speed", type=float, default=DEFAULT_SPEED, help="Pivot speed (deg/min)")
    parser.add_argument("--autopilot", action="store_true", help="Sweep around the pivot")

    args = parser.parse_args()
    pivot = None
    if args.pivot_lat is not None and args.pivot_lon is not None and args.radius:
        pivot = ([args.pivot_lat, args.pivot_lon], args.radius, args.speed)
    elif args.autopilot:
        parser.error("--autopilot requires --pivot-lat, --pivot-lon and --radius")

    try:
        run_simulator(args.device, args.baud, args.interval, [args.lat, args.lon], pivot, args.autopilot)
    except SimulatorError as e:
        logger.error("%s", e)
        raise SystemExit(1)
