"""
IceStorm Synthesis Server - WebSocket frontend.

Clients send `request_synthesis` messages with Verilog sources; each request is
synthesized in its own temporary directory and answered with the bitstream on
the same connection.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Set, Union

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from icestorm_server import __version__, errors
from icestorm_server.config import ServerSettings, load_settings
from icestorm_server.messages import (
    InvalidRequest,
    JsonErrorResponse,
    MalformedMessage,
    SynthesisErrorResponse,
    SynthesisRequest,
    UnrecognizedMessage,
    decode_message,
)
from icestorm_server.tools.synthesis_manager import SynthesisJobCoordinator


# =============================================================================
# CONNECTION
# =============================================================================

class Connection:
    """One WebSocket client. Sends are serialized; receives happen in one loop."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        self._send_lock = asyncio.Lock()
        self.closed = False

    async def send(self, payload: dict) -> bool:
        if self.closed:
            print(f"[SERVER] Dropping {payload.get('type')} for closed connection {self.client}", flush=True)
            return False
        async with self._send_lock:
            try:
                await self.websocket.send_json(payload)
                return True
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                self.closed = True
                print(f"[SERVER] Unable to send {payload.get('type')} to {self.client}: {e}", flush=True)
                return False


# =============================================================================
# SERVER
# =============================================================================

class SynthesisServer:
    """
    Owns the FastAPI app, the set of in-flight job tasks and the uvicorn server.

    The coordinator is injected so it can be replaced in tests.
    """

    def __init__(self, settings: ServerSettings, coordinator: Optional[SynthesisJobCoordinator] = None):
        self.settings = settings
        self.coordinator = coordinator or SynthesisJobCoordinator(settings)
        self.jobs: Set[asyncio.Task] = set()
        self.app = create_app(self)
        self._uvicorn: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None

    # -- dispatch -------------------------------------------------------------

    async def dispatch(self, connection: Connection, raw: Union[str, bytes]) -> None:
        message = decode_message(raw)

        if isinstance(message, SynthesisRequest):
            print(f"[SERVER] recv request_synthesis from {connection.client}", flush=True)
            self._start_job(connection, message)
        elif isinstance(message, MalformedMessage):
            print(f"[SERVER] error: {message.error.detail}", flush=True)
            await connection.send(JsonErrorResponse().model_dump())
        elif isinstance(message, InvalidRequest):
            print(f"[SERVER] error: invalid request_synthesis: {message.detail}", flush=True)
            await connection.send(SynthesisErrorResponse(error=errors.InvalidRequest.kind, detail=message.detail).model_dump())
        elif isinstance(message, UnrecognizedMessage):
            print(f"[SERVER] error: unrecognized data type: {message.type!r}", flush=True)
        else:
            raise TypeError(f"Unhandled message variant {type(message).__name__}")

    def _start_job(self, connection: Connection, request: SynthesisRequest) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(connection, request))
        self.jobs.add(task)
        task.add_done_callback(self.jobs.discard)
        return task

    async def _run_job(self, connection: Connection, request: SynthesisRequest) -> None:
        try:
            response = await self.coordinator.handle(request)
        except Exception as e:
            print(f"[ERROR] Job for {connection.client} crashed: {type(e).__name__}: {e}", flush=True)
            response = SynthesisErrorResponse(error=errors.SynthesisError.kind, detail=f"{type(e).__name__}: {e}")
        await connection.send(response.model_dump())

    async def serve_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection = Connection(websocket)
        print(f"[SERVER] Connection from {connection.client}", flush=True)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes")
                if raw is None:
                    continue
                await self.dispatch(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            # In-flight jobs keep running; their responses are dropped.
            connection.closed = True
            print(f"[SERVER] Disconnected {connection.client}", flush=True)

    # -- lifecycle ------------------------------------------------------------

    async def cancel_jobs(self) -> None:
        jobs = list(self.jobs)
        for task in jobs:
            task.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    async def start(self) -> None:
        if self._serve_task is not None:
            raise RuntimeError("Server already started")
        config = uvicorn.Config(self.app, host=self.settings.host, port=self.settings.port, log_level="warning")
        self._uvicorn = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._uvicorn.serve())
        while not self._uvicorn.started:
            if self._serve_task.done():
                # Surface bind errors instead of spinning.
                self._serve_task.result()
                raise RuntimeError("Server exited during startup")
            await asyncio.sleep(0.05)

    async def stop(self) -> None:
        if self._serve_task is None:
            return
        self._uvicorn.should_exit = True
        await self.cancel_jobs()
        await self._serve_task
        self._serve_task = None
        self._uvicorn = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self._serve_task
        finally:
            await self.stop()


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(server: SynthesisServer) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print(f"[SERVER] listening on ws://{server.settings.host}:{server.settings.port}", flush=True)
        print(f"[SERVER] Toolchain: {' '.join(server.settings.make_command)} in {server.settings.toolchain_dir}", flush=True)
        yield
        await server.cancel_jobs()
        print("[SERVER] Shutting down...", flush=True)

    app = FastAPI(
        title="IceStorm Synthesis Server",
        description="Synthesizes Verilog sent over a WebSocket into iCE40 bitstreams",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "port": server.settings.port,
            "jobs": len(server.jobs),
        }

    # Any path is accepted, clients historically connect to the bare host.
    @app.websocket("/{path:path}")
    async def synthesis_websocket(websocket: WebSocket, path: str):
        await server.serve_connection(websocket)

    return app


# =============================================================================
# MAIN
# =============================================================================

def main() -> None:
    server = SynthesisServer(load_settings())
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("[SERVER] Interrupted", flush=True)


if __name__ == "__main__":
    main()
