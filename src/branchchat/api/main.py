from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.conversations import router as conversations_router
from .routers.messages import router as messages_router
from .routers.streaming import router as streaming_router
from .routers.limits import router as limits_router
from ..domain.errors import ChatError, RateLimited
from ..observability.metrics import metrics_middleware_factory
from ..services.streaming import StaleStreamSweeper, StreamingConfig

load_dotenv()  # Load environment variables from .env if present (OPENROUTER_API_KEY, JWT_SECRET, etc.)

_logger = logging.getLogger("branchchat.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = StreamingConfig.from_env()
    sweeper = StaleStreamSweeper(config=config)
    if config.sweeper_enabled:
        sweeper.start()
        _logger.info("stale_stream_sweeper_started", extra={"interval_s": config.sweep_interval_s})
    try:
        yield
    finally:
        await sweeper.stop()


app = FastAPI(title="BranchChat API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        _logger.warning("request_failed", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


# Routers
app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(streaming_router)
app.include_router(limits_router)

# Also expose the same routers under /api
app.include_router(conversations_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(streaming_router, prefix="/api")
app.include_router(limits_router, prefix="/api")

# CORS (for a web client dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "BranchChat API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": "in-memory",
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
