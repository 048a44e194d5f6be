"""FastAPI REST and WebSocket interface for the serial log monitor.

Single-process, single-device lifecycle with thread-safe access to:
- SerialSessionManager (device selection, connection, reconnection, buffer)
- LogFilter (regex/level view over the buffer)

Error mapping:
- SelectionError → 404
- OpenError → 503
- SessionStateError → 409
- ValueError → 400
- Other exceptions → 500
"""

import asyncio
import io
import logging
import os
from dataclasses import replace
from threading import RLock
from typing import List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from serial_log_lib import (
    LogFilter,
    MonitorConfig,
    PySerialBackend,
    SerialSessionManager,
    load_config,
    save_preferences,
)
from serial_log_lib.errors import OpenError, SelectionError, SessionStateError
from serial_log_lib.models import LogLine, SessionState
from serial_log_lib.transport import SerialBackend

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
DEFAULT_SERIAL_PORT = os.getenv("SERIAL_PORT")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000"
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

_config: Optional[MonitorConfig] = None
_manager: Optional[SerialSessionManager] = None
_filter: Optional[LogFilter] = None
_lock = RLock()  # Protects singleton creation and teardown


def _make_backend() -> SerialBackend:
    """Create the platform serial backend (replaced in tests)."""
    return PySerialBackend()


def _get_config() -> MonitorConfig:
    global _config
    with _lock:
        if _config is None:
            _config = load_config()
        return _config


def _get_manager() -> SerialSessionManager:
    global _manager
    with _lock:
        if _manager is None:
            _manager = SerialSessionManager(_make_backend(), _get_config())
        return _manager


def _get_filter() -> LogFilter:
    global _filter
    with _lock:
        if _filter is None:
            config = _get_config()
            _filter = LogFilter(pattern=config.filter_text, level=config.level)
        return _filter


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Serial Log Monitor API",
    description="REST and WebSocket interface for streaming USB serial device logs",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Request/Response Models
# =============================================================================

class SelectRequest(BaseModel):
    """Request body for POST /select."""
    port: Optional[str] = None
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None


class CapacityRequest(BaseModel):
    """Request body for POST /capacity."""
    line_limit: int


class DeviceResponse(BaseModel):
    """One serial device."""
    device: str
    description: str
    vendor_id: Optional[int]
    product_id: Optional[int]
    serial_number: Optional[str]


class StatusResponse(BaseModel):
    """Response for GET /status."""
    state: str
    connected: bool
    device: Optional[DeviceResponse]
    baud_rate: int
    line_limit: int
    lines: int
    last_error: Optional[str]
    reconnect_attempts: int
    reconnect_count: int


class LineResponse(BaseModel):
    """One buffered log line."""
    ts: str
    text: str


class LinesResponse(BaseModel):
    """Response for GET /lines."""
    lines: List[LineResponse]
    total: int
    pattern: str
    pattern_valid: bool
    error: Optional[str]


def _line_to_response(line: LogLine) -> LineResponse:
    return LineResponse(ts=line.ts.isoformat(), text=line.text)


def _status_response() -> StatusResponse:
    status = _get_manager().status()
    return StatusResponse(
        state=status.state.value,
        connected=status.state == SessionState.CONNECTED,
        device=DeviceResponse(**status.device.to_dict()) if status.device else None,
        baud_rate=status.baud_rate,
        line_limit=status.line_limit,
        lines=status.lines,
        last_error=status.last_error,
        reconnect_attempts=status.reconnect_attempts,
        reconnect_count=status.reconnect_count,
    )


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(SelectionError)
async def selection_error_handler(request: Request, exc: SelectionError):
    """Map SelectionError to 404 Not Found."""
    logger.error(f"SelectionError: {exc}")
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(OpenError)
async def open_error_handler(request: Request, exc: OpenError):
    """Map OpenError to 503 Service Unavailable."""
    logger.error(f"OpenError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(SessionStateError)
async def session_state_error_handler(request: Request, exc: SessionStateError):
    """Map SessionStateError to 409 Conflict."""
    logger.error(f"SessionStateError: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Map ValueError to 400 Bad Request."""
    logger.error(f"ValueError: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# =============================================================================
# Device Endpoints
# =============================================================================

@app.get("/ports")
async def list_ports():
    """List serial devices currently available."""
    handles = _get_manager().list_devices()
    return {"ports": [h.to_dict() for h in handles]}


@app.post("/select")
async def select_port(req: Optional[SelectRequest] = None):
    """Select the device to connect to.

    With no body, picks the only USB serial device present.

    Raises:
        404: If no compatible device qualifies (SelectionError)
        409: If a session is active (SessionStateError)
    """
    criteria = req.model_dump(exclude_none=True) if req else {}
    logger.info(f"Selecting device: {criteria or 'auto'}")
    handle = _get_manager().request_device(**criteria)
    return {"status": "selected", "device": handle.to_dict()}


@app.post("/connect", response_model=StatusResponse)
async def connect(
    baud: Optional[int] = Query(None, description="Baud rate (defaults to configured rate)"),
    port: Optional[str] = Query(DEFAULT_SERIAL_PORT, description="Select this port first"),
):
    """Open the selected device and start streaming.

    Raises:
        404: If port is given but not present (SelectionError)
        409: If already connected or nothing selected (SessionStateError)
        503: If the port cannot be opened (OpenError)
    """
    manager = _get_manager()
    with _lock:
        if port and manager.state == SessionState.IDLE:
            manager.request_device(port=port)

        logger.info(f"Connecting at {baud or manager.baud_rate} baud...")
        manager.connect(baud)

    return _status_response()


@app.post("/disconnect")
async def disconnect():
    """Request disconnect; returns before the read loop has finished."""
    _get_manager().disconnect()
    return {"status": "disconnecting"}


@app.post("/reconnect/cancel")
async def cancel_reconnect():
    """Stop trying to reacquire a lost device."""
    _get_manager().cancel_reconnect()
    return {"status": "cancelled"}


@app.post("/reconnect/retry")
async def retry_reconnect():
    """Run a reconnect attempt now instead of waiting for the next one."""
    _get_manager().retry_now()
    return {"status": "retrying"}


@app.post("/baud")
async def set_baud(rate: int = Query(..., description="Baud rate for the next connect")):
    """Set the baud rate used by the next connect."""
    global _config
    _get_manager().set_baud_rate(rate)
    with _lock:
        _config = _replace_config(baud_rate=rate)
    return {"baud_rate": rate}


@app.post("/capacity")
async def set_capacity(req: CapacityRequest):
    """Change the line limit; shrinking drops the oldest lines."""
    global _config
    _get_manager().set_capacity(req.line_limit)
    with _lock:
        _config = _replace_config(line_limit=req.line_limit)
    return {"line_limit": req.line_limit}


@app.post("/clear")
async def clear_lines():
    """Drop all buffered lines."""
    _get_manager().clear()
    return {"status": "cleared"}


def _replace_config(**changes) -> MonitorConfig:
    return replace(_get_config(), **changes)


# =============================================================================
# Read-Only Endpoints
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get session state, device info, last error and buffer size."""
    return _status_response()


@app.get("/lines", response_model=LinesResponse)
async def get_lines(
    pattern: Optional[str] = Query(None, description="Regex filter (replaces the current one)"),
    level: Optional[str] = Query(None, description="all, error, warning, info or debug"),
    limit: int = Query(0, ge=0, description="Return only the newest N lines (0 = all)"),
):
    """Get the filtered view of the buffer.

    An invalid pattern never empties the view: the last valid pattern stays
    in force and pattern_valid is false.
    """
    global _config
    log_filter = _get_filter()
    with _lock:
        if pattern is not None and log_filter.set_pattern(pattern):
            _config = _replace_config(filter_text=pattern)
        if level is not None:
            log_filter.set_level(level)
            _config = _replace_config(level=log_filter.level)

        result = log_filter.apply(_get_manager().buffer_snapshot())

    lines = result.lines[-limit:] if limit else result.lines
    return LinesResponse(
        lines=[_line_to_response(line) for line in lines],
        total=len(result.lines),
        pattern=log_filter.pattern,
        pattern_valid=result.pattern_valid,
        error=result.error,
    )


@app.get("/export/csv")
async def export_csv():
    """Export the current buffer as CSV.

    Raises:
        400: If the buffer is empty
    """
    lines = _get_manager().buffer_snapshot()
    if not lines:
        raise HTTPException(status_code=400, detail="No lines to export")

    df = pd.DataFrame(
        {
            "timestamp": [line.ts.isoformat() for line in lines],
            "text": [line.text for line in lines],
        }
    )
    out = io.StringIO()
    df.to_csv(out, index=False)
    logger.info(f"Exported {len(df)} lines to CSV")

    return Response(
        content=out.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=serial_log.csv"},
    )


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint pushing newly buffered lines.

    Sends {"state": ..., "lines": [{"ts": ..., "text": ...}, ...]} whenever
    lines arrive, polling the buffer every 100ms. The first message carries
    the current state even if no line is pending.
    """
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    manager = _get_manager()
    try:
        cursor = 0
        first = True

        while True:
            lines, cursor = manager.new_lines(cursor)
            if lines or first:
                await websocket.send_json({
                    "state": manager.state.value,
                    "lines": [_line_to_response(line).model_dump() for line in lines],
                })
                first = False

            await asyncio.sleep(0.1)

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "Serial Log Monitor API",
        "version": API_VERSION,
        "status": "online"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Load configuration once and log it."""
    config = _get_config()
    logger.info("=" * 60)
    logger.info("Serial Log Monitor API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default Serial Port: {DEFAULT_SERIAL_PORT}")
    logger.info(f"Baud Rate: {config.baud_rate}")
    logger.info(f"Line Limit: {config.line_limit}")
    logger.info(f"Reconnect Interval: {config.reconnect_interval_s}s")
    logger.info(f"Preferences: {config.prefs_path}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Persist preferences and release the device."""
    global _manager

    logger.info("Shutting down Serial Log Monitor API...")

    with _lock:
        if _config is not None:
            save_preferences(_config)
        if _manager is not None:
            _manager.close()
            _manager = None

    logger.info("Shutdown complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
