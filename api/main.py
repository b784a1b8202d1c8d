"""FastAPI REST and WebSocket interface for gimbal control and telemetry.

Single-process, single-gimbal lifecycle with thread-safe access to:
- GimbalController (serial link, exclusive access, telemetry poller)
- TelemetryStore (latest sample, pandas recording)

Error mapping:
- GimbalConnectionError → 503
- SerialIOError → 503
- NotReadyError → 409
- CalibrationError → 502
- CommutationTimeout → 504
- ValueError → 400
"""

import asyncio
import logging
import os
from threading import RLock
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from data_store import TelemetryStore
from gimbal_lib import GimbalConfig, GimbalController, __version__
from gimbal_lib import protocol
from gimbal_lib.errors import (
    CalibrationError,
    CommutationTimeout,
    GimbalConnectionError,
    NotReadyError,
    SerialIOError,
)
from gimbal_lib.parsing import parse_pairs
from gimbal_lib.transport import PortFactory

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
DEFAULT_SERIAL_PORT = os.getenv("SERIAL_PORT", "/dev/ttyUSB0")
MAX_RECORD_ROWS = int(os.getenv("MAX_RECORD_ROWS", "100000"))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

API_VERSION = "0.1.0"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_controller: Optional[GimbalController] = None
_store: Optional[TelemetryStore] = None
_port_factory: Optional[PortFactory] = None  # None = pyserial; tests inject fakes
_lock = RLock()  # Protects state-changing operations

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Gimbal Control API",
    description="REST and WebSocket interface for two-axis gimbal drives",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response

# =============================================================================
# Request/Response Models
# =============================================================================

class CommandRequest(BaseModel):
    """Request body for POST /command."""
    command: str = Field(..., min_length=1)


class QueryRequest(BaseModel):
    """Request body for POST /query."""
    command: str = Field(..., min_length=1)
    timeout_ms: Optional[int] = Field(None, gt=0, le=10000)


class MotorRequest(BaseModel):
    on: bool


class MoveRequest(BaseModel):
    """Request body for POST /move (degrees, deg/s)."""
    tr: float
    el: float
    velocity: float = protocol.DEFAULT_VELOCITY_DEG_S


class TorqueTestRequest(BaseModel):
    """Request body for POST /torque-test (degrees, deg/s)."""
    min_angle: float
    max_angle: float
    reps: int = Field(2, ge=1)
    velocity: float = protocol.DEFAULT_VELOCITY_DEG_S


class CommutationRequest(BaseModel):
    axis: int = 2
    timeout_s: float = Field(protocol.COMMUTATION_TIMEOUT, gt=0, le=120)


class StatusResponse(BaseModel):
    """Response for GET /status."""
    connected: bool
    state: str
    port: Optional[str]
    live_data: bool
    motor_on: bool
    motion: Optional[str]
    recording: bool
    rows: int


class ConnectResponse(BaseModel):
    """Response for POST /connect."""
    status: str
    port: str
    baud: int


class StatsResponse(BaseModel):
    """Response for GET /stats."""
    row_count: int
    recording: bool
    duration_s: float
    est_sample_rate_hz: float


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    logger.error(f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(GimbalConnectionError)
async def connection_error_handler(request, exc: GimbalConnectionError):
    """Map GimbalConnectionError to 503 Service Unavailable."""
    return _error_response(503, exc)


@app.exception_handler(SerialIOError)
async def serial_io_error_handler(request, exc: SerialIOError):
    """Map SerialIOError to 503 Service Unavailable."""
    return _error_response(503, exc)


@app.exception_handler(NotReadyError)
async def not_ready_handler(request, exc: NotReadyError):
    """Map NotReadyError to 409 Conflict."""
    return _error_response(409, exc)


@app.exception_handler(CalibrationError)
async def calibration_error_handler(request, exc: CalibrationError):
    """Map CalibrationError to 502 Bad Gateway."""
    return _error_response(502, exc)


@app.exception_handler(CommutationTimeout)
async def commutation_timeout_handler(request, exc: CommutationTimeout):
    """Map CommutationTimeout to 504 Gateway Timeout."""
    return _error_response(504, exc)


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    """Map ValueError to 400 Bad Request."""
    return _error_response(400, exc)


def _require_controller() -> GimbalController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="Not connected")
    return _controller


def _require_store() -> TelemetryStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="No telemetry store. Call /connect first.")
    return _store


# =============================================================================
# Read-Only Endpoints (Low Latency)
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current system status.

    Returns connection state, live data and motor flags, and recorded row count.
    """
    controller = _controller
    store = _store

    return StatusResponse(
        connected=controller is not None and controller.is_connected(),
        state=controller.state.value if controller else "disconnected",
        port=controller.transport.port_name if controller else None,
        live_data=controller is not None and controller.live_data_running,
        motor_on=controller is not None and controller.motor_on,
        motion=controller.motion_name if controller else None,
        recording=store is not None and store.is_recording(),
        rows=store.get_stats()["row_count"] if store else 0,
    )


@app.get("/latest")
async def get_latest():
    """Get the most recent displayed sample, or {} if none."""
    if not _store or _store.latest is None:
        return {}
    return _store.latest.as_dict()


@app.get("/stats", response_model=StatsResponse)
async def get_stats():
    store = _require_store()
    return StatsResponse(**store.get_stats())


# =============================================================================
# Connection Lifecycle Endpoints
# =============================================================================

@app.post("/connect", response_model=ConnectResponse)
def connect(
    port: str = Query(DEFAULT_SERIAL_PORT, description="Serial port (e.g., /dev/ttyUSB0)"),
    baud: Optional[int] = Query(None, gt=0, description="Baud rate (default from GIMBAL_BAUD)")
):
    """Open the serial link to the gimbal drive.

    Raises:
        400: If already connected
        503: If the port cannot be opened (GimbalConnectionError)
    """
    global _controller, _store

    with _lock:
        if _controller is not None and _controller.is_connected():
            raise HTTPException(status_code=400, detail="Already connected. Disconnect first.")

        config = GimbalConfig.from_env()
        if _store is None:
            _store = TelemetryStore(max_rows=MAX_RECORD_ROWS)

        controller = GimbalController(config=config, listener=_store, port_factory=_port_factory)
        controller.connect(port=port, baud=baud)
        _controller = controller

        return ConnectResponse(status="connected", port=port, baud=baud or config.baud)


@app.post("/disconnect")
def disconnect():
    """Stop live data, release remote control, and close the port.

    Recorded data stays available until the next /recording/start.
    """
    global _controller

    with _lock:
        if _store and _store.is_recording():
            logger.info("Stopping recording before disconnect...")
            _store.stop_recording()

        if _controller:
            logger.info("Disconnecting from gimbal...")
            _controller.disconnect()
            _controller = None

        return {"status": "disconnected"}


@app.post("/reconnect")
def reconnect():
    """Close and reopen the same port, resuming live data if it was running."""
    with _lock:
        controller = _require_controller()
        controller.reconnect()
        return {"status": "connected", "live_data": controller.live_data_running}


# =============================================================================
# Wire Endpoints
# =============================================================================

@app.post("/command")
def send_command(req: CommandRequest):
    """Send one raw command line (fire-and-forget)."""
    controller = _require_controller()
    controller.send_msg(req.command)
    return {"status": "sent", "command": req.command}


@app.post("/query")
def query(req: QueryRequest):
    """Send a read command and return the raw reply and its parsed pairs."""
    controller = _require_controller()
    timeout_s = req.timeout_ms / 1000.0 if req.timeout_ms else None
    reply = controller.read_msg(req.command, timeout_s)

    return {
        "reply": reply,
        "pairs": [[key, value] for key, value in parse_pairs(reply)],
    }


# =============================================================================
# Live Data Endpoints
# =============================================================================

@app.post("/live/start")
def start_live_data(period_ms: Optional[int] = Query(None, ge=10, le=5000)):
    """Start the telemetry poll (period defaults to GIMBAL_POLL_PERIOD_MS)."""
    with _lock:
        controller = _require_controller()
        controller.start_live_data(period_ms / 1000.0 if period_ms else None)
        return {"status": "started", "period_ms": controller.poller.period_s * 1000.0}


@app.post("/live/stop")
def stop_live_data():
    with _lock:
        controller = _require_controller()
        if not controller.live_data_running:
            raise HTTPException(status_code=400, detail="Live data not running")
        controller.stop_live_data()
        return {"status": "stopped"}


# =============================================================================
# Motion Endpoints
# =============================================================================

@app.post("/motor")
def set_motor(req: MotorRequest):
    controller = _require_controller()
    controller.set_motor(req.on)
    return {"status": "ok", "motor_on": controller.motor_on}


@app.post("/move")
def move(req: MoveRequest):
    """Move both axes to absolute angles."""
    controller = _require_controller()
    command = controller.move_to_angles(req.tr, req.el, req.velocity)
    return {"status": "moving", "command": command}


@app.post("/move/{position}")
def move_to_position(
    position: str,
    velocity: float = Query(protocol.DEFAULT_VELOCITY_DEG_S),
):
    """Move to a preset position (home, top_right, top_left, bottom_right, bottom_left)."""
    controller = _require_controller()
    command = controller.move_to_position(position, velocity)
    return {"status": "moving", "position": position, "command": command}


@app.post("/joystick/{direction}")
def joystick(direction: str):
    controller = _require_controller()
    tr, el = controller.joystick(direction)
    return {"status": "ok", "tr": tr, "el": el}


@app.post("/scenario/{name}")
def run_scenario(name: str):
    """Start a motion program. Calling "demo2" while a host-driven program runs stops it."""
    controller = _require_controller()
    running = controller.run_scenario(name)
    return {"status": "running" if running else "stopped", "scenario": name}


@app.post("/torque-test")
def start_torque_test(req: TorqueTestRequest):
    """Cycle the traverse axis between two angles, recording from the first arrival at min."""
    controller = _require_controller()
    store = _require_store()
    controller.start_torque_test(
        req.min_angle,
        req.max_angle,
        req.reps,
        req.velocity,
        on_recording_start=store.start_recording,
    )
    return {"status": "running", "program": controller.motion_name}


@app.post("/motion/stop")
def stop_motion():
    controller = _require_controller()
    stopped = controller.stop_motion()
    return {"status": "stopped" if stopped else "idle"}


# =============================================================================
# Installation Setup Endpoints
# =============================================================================

@app.post("/zero")
def set_zero_angles():
    """Make the current pose the zero angle on both axes.

    Raises:
        502: If the drive never returns valid offsets (CalibrationError)
    """
    controller = _require_controller()
    offsets = controller.set_zero_angles()
    return {"status": "ok", "offsets": {str(axis): value for axis, value in offsets.items()}}


@app.post("/commutation")
def commutation(req: Optional[CommutationRequest] = None):
    """Run the commutation procedure on one axis.

    Raises:
        504: If the axis does not report done in time (CommutationTimeout)
    """
    req = req or CommutationRequest()
    controller = _require_controller()
    controller.commutation(axis=req.axis, timeout_s=req.timeout_s)
    return {"status": "ok", "axis": req.axis}


@app.post("/save")
def save_settings():
    controller = _require_controller()
    controller.save_settings()
    return {"status": "saved"}


# =============================================================================
# Recording Endpoints
# =============================================================================

@app.post("/recording/start")
def start_recording():
    """Clear previous rows and record every accepted sample."""
    with _lock:
        store = _require_store()
        if store.is_recording():
            raise HTTPException(status_code=400, detail="Already recording")
        store.start_recording()
        return {"status": "recording"}


@app.post("/recording/stop")
def stop_recording():
    with _lock:
        store = _require_store()
        if not store.is_recording():
            raise HTTPException(status_code=400, detail="Not recording")
        rows = store.stop_recording()
        return {"status": "stopped", "rows": rows}


@app.get("/recording")
async def get_recording(limit: Optional[int] = Query(None, ge=1)):
    """Recorded rows, most recent last (optionally only the last ``limit``)."""
    store = _require_store()
    df = store.get_dataframe()
    if limit is not None:
        df = df.tail(limit)
    return {"rows": df.to_dict(orient="records")}


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint for real-time streaming of the displayed sample.

    Sends a JSON object with the seven telemetry fields whenever a new
    sample has been forwarded, checked every 100ms (10 Hz).
    """
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    if not _store:
        await websocket.send_json({"error": "No telemetry store available"})
        await websocket.close()
        return

    try:
        last_sent = None

        while True:
            latest = _store.latest if _store else None
            if latest is not None and latest is not last_sent:
                await websocket.send_json(latest.as_dict())
                last_sent = latest

            # Wait 100ms before next check (10 Hz); returns early on client messages
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=0.1)
            except asyncio.TimeoutError:
                pass

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception:
            pass


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "Gimbal Control API",
        "version": API_VERSION,
        "status": "online"
    }


@app.get("/version")
async def version():
    return {
        "api": API_VERSION,
        "gimbal_lib": __version__,
        "status": "online"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup configuration."""
    logger.info("=" * 60)
    logger.info("Gimbal Control API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default Serial Port: {DEFAULT_SERIAL_PORT}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    logger.info("Shutting down Gimbal Control API...")

    if _store and _store.is_recording():
        _store.stop_recording()

    if _controller:
        logger.info("Disconnecting controller...")
        try:
            _controller.disconnect()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    logger.info("Shutdown complete")
