"""
FastAPI WebSocket server between the simulator and the MPC stack.
Receives telemetry events, runs one control cycle per event and replies with
steering/throttle plus the predicted and reference lines for display.
"""

import asyncio
import time
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn

from bridge.protocol import (
    MANUAL_MESSAGE,
    TELEMETRY_EVENT,
    ProtocolError,
    decode_frame,
    encode_steer,
)
from mpc_stack import ControlSession, MPCStack

# Log solves that eat a large share of the control period.
SLOW_SOLVE_SECONDS = 0.05


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()


class TelemetryRequest(BaseModel):
    """Telemetry payload posted to /api/control (same fields as the telemetry event)."""
    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: float
    throttle: float


class SteerResponse(BaseModel):
    """Steer payload plus cycle diagnostics."""
    steering_angle: float
    throttle: float
    mpc_x: List[float]
    mpc_y: List[float]
    next_x: List[float]
    next_y: List[float]
    status: str
    fallback: bool = False
    fallback_reason: Optional[str] = None
    solve_time_s: Optional[float] = None


class HealthStatus(BaseModel):
    status: str
    horizon: int
    dt: float
    connections: int
    cycles: int
    fallbacks: int
    dropped: int
    timestamp: float


async def _run_session(websocket: WebSocket, stack: MPCStack, pacing_delay_s: float,
                       stats: dict) -> None:
    """
    Serve one simulator connection.

    A receiver task keeps only the newest telemetry payload; the loop below
    solves it, so at most one solve is in flight and stale telemetry that
    arrived during a solve is dropped.
    """
    session = ControlSession()
    pending: Optional[dict] = None
    has_pending = asyncio.Event()
    closed = False
    dropped = 0

    async def receive_loop() -> None:
        nonlocal pending, closed, dropped
        try:
            while True:
                message = await websocket.receive_text()
                try:
                    frame = decode_frame(message)
                except ProtocolError as e:
                    logger.warning("Ignoring malformed frame: %s", e)
                    continue
                if not frame.is_event:
                    continue
                if frame.event is None:
                    # No telemetry yet: hand control back to the driver.
                    await websocket.send_text(MANUAL_MESSAGE)
                    continue
                if frame.event != TELEMETRY_EVENT:
                    continue
                if pending is not None:
                    dropped += 1
                    stats["dropped"] += 1
                    logger.info("Dropping stale telemetry (dropped=%d this session)", dropped)
                pending = frame.payload
                has_pending.set()
        except WebSocketDisconnect as e:
            logger.info("Simulator disconnected (code=%s)", e.code)
        finally:
            closed = True
            has_pending.set()

    receiver = asyncio.create_task(receive_loop())
    try:
        while True:
            await has_pending.wait()
            has_pending.clear()
            if pending is None:
                if closed:
                    break
                continue

            payload, pending = pending, None
            start_time = time.time()
            command = await run_in_threadpool(stack.process_message, payload, session)
            duration = time.time() - start_time
            stats["cycles"] += 1
            if command.fallback:
                stats["fallbacks"] += 1
            if duration > SLOW_SOLVE_SECONDS:
                logger.warning(
                    "[SLOW] control cycle duration=%.3fs status=%s fallback=%s",
                    duration,
                    command.status,
                    command.fallback,
                )

            if pacing_delay_s > 0.0:
                await asyncio.sleep(pacing_delay_s)
            if closed:
                break
            try:
                await websocket.send_text(encode_steer(command.to_message()))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.info("Reply not sent, connection closed: %s", e)
                break
    finally:
        receiver.cancel()
        for outcome in await asyncio.gather(receiver, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.warning("Telemetry receiver stopped on error: %r", outcome)
        logger.info(
            "Session ended: cycles=%d fallbacks=%d dropped=%d",
            session.cycles,
            session.fallbacks,
            dropped,
        )


def create_app(stack: MPCStack, pacing_delay_s: float = 0.1) -> FastAPI:
    """Build the bridge application around an MPC stack."""
    app = FastAPI(title="MPC Controller Bridge")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    stats = {"connections": 0, "cycles": 0, "fallbacks": 0, "dropped": 0}
    app.state.stack = stack
    app.state.stats = stats
    app.state.http_session = ControlSession()
    http_lock = asyncio.Lock()

    async def telemetry_socket(websocket: WebSocket):
        await websocket.accept()
        stats["connections"] += 1
        logger.info("Simulator connected")
        await _run_session(websocket, stack, pacing_delay_s, stats)

    app.add_api_websocket_route("/", telemetry_socket)
    app.add_api_websocket_route("/socket.io/", telemetry_socket)

    @app.post("/api/control", response_model=SteerResponse)
    async def control(telemetry: TelemetryRequest):
        """Run one control cycle on the HTTP session."""
        # One solve at a time for the shared HTTP session.
        async with http_lock:
            start_time = time.time()
            command = await run_in_threadpool(
                stack.process_message, telemetry.model_dump(), app.state.http_session
            )
            duration = time.time() - start_time
        stats["cycles"] += 1
        if command.fallback:
            stats["fallbacks"] += 1
        if duration > SLOW_SOLVE_SECONDS:
            logger.warning(
                "[SLOW] /api/control duration=%.3fs status=%s fallback=%s",
                duration,
                command.status,
                command.fallback,
            )
        return SteerResponse(
            **command.to_message(),
            status=command.status,
            fallback=command.fallback,
            fallback_reason=command.fallback_reason,
            solve_time_s=command.solve_time_s,
        )

    @app.get("/api/health", response_model=HealthStatus)
    async def health_check():
        """Health check endpoint."""
        return HealthStatus(
            status="ok",
            horizon=stack.horizon_config.horizon,
            dt=stack.horizon_config.dt,
            timestamp=time.time(),
            **stats,
        )

    return app


def run_server(stack: MPCStack, host: str = "0.0.0.0", port: int = 4567,
               pacing_delay_s: float = 0.1):
    """Run the bridge server."""
    print(f"Starting MPC Controller Bridge on {host}:{port}")
    print("Endpoints:")
    print("  WS   /socket.io/ - Telemetry in, steer/manual events out")
    print("  WS   /           - Same, for clients without a Socket.IO path")
    print("  POST /api/control - One control cycle from a JSON telemetry body")
    print("  GET  /api/health  - Health check")

    uvicorn.run(create_app(stack, pacing_delay_s=pacing_delay_s), host=host, port=port)


if __name__ == "__main__":
    from mpc_stack import main
    main()
