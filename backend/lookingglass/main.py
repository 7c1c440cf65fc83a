"""
FastAPI application for the looking glass.

Serves the throughput test chunk endpoint, the streaming probe command
endpoint and a bounded live MTR report.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import settings
from .errors import LookingGlassError
from .probe.enrichment import AsnEnricher
from .probe.runner import ProbeRunner
from .probe.session import MtrSession
from .probe.stream import encode_message
from .schemas import CommandRequest, ErrorResponse, MtrReportRequest, MtrSnapshot, UploadResponse
from .speedtest.endpoint import TransferEndpoint

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, private, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

CHUNK_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed token or headers"},
    408: {"model": ErrorResponse, "description": "Chunk not served or drained in time"},
    413: {"model": ErrorResponse, "description": "Declared upload above the cap"},
}

transfer_endpoint = TransferEndpoint()
probe_runner = ProbeRunner()
_enricher: Optional[AsnEnricher] = None


def get_enricher() -> AsnEnricher:
    """Process-wide enricher, created on first use."""
    global _enricher
    if _enricher is None:
        _enricher = AsnEnricher()
    return _enricher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    print(f"✓ Chunk endpoint ready ({transfer_endpoint.chunk_size} byte chunks, {transfer_endpoint.generator} payload)")
    print("✓ Server running at http://localhost:8000")
    print("✓ API docs available at http://localhost:8000/docs")

    yield

    # Shutdown
    global _enricher
    if _enricher is not None:
        _enricher.shutdown()
        _enricher.lookup.close()
        _enricher = None
        print("✓ Enrichment workers stopped")


# Create FastAPI app with lifespan
app = FastAPI(
    title=settings.app_name,
    description="Looking Glass API - probes, live MTR and speed test",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


# Keep proxies and browsers from caching API responses
class NoCacheMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-cache, no-store, must-revalidate")
            response.headers.setdefault("Pragma", "no-cache")
            response.headers.setdefault("Expires", "0")
        return response


app.add_middleware(NoCacheMiddleware)


@app.exception_handler(LookingGlassError)
async def looking_glass_error_handler(request: Request, exc: LookingGlassError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    body = ErrorResponse(error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# ============================================================================
# Speed Test Endpoints
# ============================================================================


@app.get("/api/speedtest/{token}", responses=CHUNK_ERROR_RESPONSES)
async def download_chunk(token: str, size: Optional[int] = Query(default=None, ge=1)):
    """
    Serve one generated chunk.

    The token is ``<anything>-<index>``; the index selects the pattern. Without
    ``size`` the configured chunk size is served, otherwise ``size`` clamped
    to the timed-test range.
    """
    started = time.perf_counter()
    data = await transfer_endpoint.serve_chunk(token, size)
    elapsed_ms = (time.perf_counter() - started) * 1000
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={
            **NO_STORE_HEADERS,
            "X-Request-ID": token,
            "X-Response-Time": f"{elapsed_ms:.0f}ms",
        },
    )


@app.post("/api/speedtest/{token}", response_model=UploadResponse, responses=CHUNK_ERROR_RESPONSES)
async def upload_chunk(token: str, request: Request):
    """
    Absorb one uploaded chunk.

    Requires ``Content-Length`` and ``X-Chunk-ID``. The body is drained and
    counted, never stored.
    """
    receipt = await transfer_endpoint.receive_upload(
        request.headers.get("content-length"),
        request.headers.get("x-chunk-id"),
        request.stream(),
    )
    body = UploadResponse(bytes_received=receipt.bytes_received, duration=receipt.duration_ms)
    return JSONResponse(
        content=body.model_dump(by_alias=True),
        headers={**NO_STORE_HEADERS, "X-Request-ID": token},
    )


# ============================================================================
# Probe Endpoints
# ============================================================================


@app.post("/api/command")
async def run_command(request: CommandRequest):
    """
    Run an allow-listed command and stream its output as server-sent events.

    Live MTR starts with a ``system_info`` message; every message after that
    carries either ``output`` or ``error``.
    """
    cycles = request.cycles or settings.livemtr_cycles or None

    async def events():
        async for message in probe_runner.stream_messages(request.command, request.target_host, cycles):
            yield encode_message(message)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={**NO_STORE_HEADERS, "X-Accel-Buffering": "no"},
    )


@app.post("/api/mtr", response_model=MtrSnapshot)
async def live_mtr_report(request: MtrReportRequest):
    """Run a bounded live MTR and return the per-hop table."""
    session = MtrSession(request.target_host, enricher=get_enricher())
    messages = probe_runner.stream_messages("livemtr", request.target_host, request.cycles)
    return await session.consume(messages)


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "looking-glass-api", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
