"""
HTTP and WebSocket surface of the phone concierge.

    GET  /health       liveness plus the live call count
    GET  /metrics      connection and call counters
    GET  /events       system event log, newest first
    GET  /activities   orders and reservations recorded this process
    *    /voice|/twiml TwiML answering Twilio's voice webhook
    WS   /ws           Twilio Media Streams, one call per socket
"""

import sys
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from xml.sax.saxutils import quoteattr

from fastapi import APIRouter, FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.concierge.bridge import create_bridge
from src.concierge.config import ConfigError, get_config, init_config
from src.concierge.events import SystemEventLog
from src.concierge.filler import FillerClip, FillerManager
from src.concierge.history import ActivityStore
from src.concierge.logging_setup import bind_call, configure_logging, unbind_call

logger = structlog.get_logger(__name__)


@dataclass
class CallCounters:
    started_at: float = field(default_factory=time.time)
    connections: int = 0
    calls_total: int = 0
    calls_active: int = 0
    errors: int = 0

    def call_opened(self) -> None:
        self.connections += 1
        self.calls_total += 1
        self.calls_active += 1

    def call_closed(self) -> None:
        self.calls_active = max(0, self.calls_active - 1)

    def snapshot(self, store: ActivityStore) -> dict:
        return {
            "uptime_seconds": round(time.time() - self.started_at, 2),
            "total_connections": self.connections,
            "total_calls": self.calls_total,
            "active_calls": self.calls_active,
            "errors": self.errors,
            "completed_activities": len(store.completed()),
        }


# Shared by every call in this process
metrics = CallCounters()
event_log = SystemEventLog()
activity_store = ActivityStore()
filler_clips: list[FillerClip] = []

router = APIRouter()


def render_twiml(ws_url: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        "    <Connect>\n"
        f"        <Stream url={quoteattr(ws_url)} />\n"
        "    </Connect>\n"
        "</Response>"
    )


@router.get("/health")
async def health() -> dict:
    return {"status": "healthy", "timestamp": time.time(), "active_calls": metrics.calls_active}


@router.get("/metrics")
async def call_metrics() -> dict:
    return metrics.snapshot(activity_store)


@router.get("/events")
async def system_events() -> dict:
    return {"events": event_log.entries}


@router.get("/activities")
async def activities() -> dict:
    return {"activities": [record.to_dict() for record in activity_store.list()]}


@router.api_route("/voice", methods=["GET", "POST"])
@router.api_route("/twiml", methods=["GET", "POST"])
async def voice_webhook() -> Response:
    """Point the answered call at our Media Streams socket."""
    ws_url = get_config().ws_url
    logger.info("Answering voice webhook", ws_url=ws_url)
    return Response(content=render_twiml(ws_url), media_type="application/xml")


@router.websocket("/ws")
async def media_stream(websocket: WebSocket) -> None:
    await websocket.accept()

    call_id = f"call_{uuid.uuid4().hex[:12]}"
    bind_call(call_id)
    metrics.call_opened()
    logger.info("Media stream connected", active_calls=metrics.calls_active)

    async def send_text(message: str) -> None:
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.warning("Dropped outbound frame", error=str(e))

    bridge = None
    try:
        bridge = await create_bridge(
            send_text,
            event_log=event_log,
            store=activity_store,
            filler_clips=filler_clips,
            close_transport=websocket.close,
        )
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("Media stream disconnected")
                break
            try:
                await bridge.handle_message(raw)
            except Exception as e:
                # One bad frame does not end the call
                metrics.errors += 1
                logger.error("Failed to handle frame", error=str(e))
    except Exception as e:
        metrics.errors += 1
        logger.error("Media stream failed", error=str(e))
    finally:
        if bridge is not None:
            try:
                await bridge.stop()
            except Exception as e:
                logger.error("Bridge shutdown failed", error=str(e))
        metrics.call_closed()
        logger.info("Media stream closed", active_calls=metrics.calls_active)
        unbind_call()


async def _preload_fillers(sources: tuple[str, ...]) -> None:
    loader = FillerManager()
    await loader.preload(sources)
    filler_clips[:] = loader.clips


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        config = init_config()
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    if config.filler_clips:
        await _preload_fillers(tuple(config.filler_clips))

    logger.info(
        "Server ready",
        port=config.port,
        ws_url=config.ws_url,
        filler_clips=len(filler_clips),
    )
    yield
    logger.info("Server shutting down", calls_total=metrics.calls_total)


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    metrics.errors += 1
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app() -> FastAPI:
    application = FastAPI(
        title="Phone Concierge",
        description="Voice ordering and reservations over Twilio and Gemini Live",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.include_router(router)
    application.add_exception_handler(Exception, _unhandled)
    return application


app = create_app()


def main() -> None:
    config = get_config()
    configure_logging(config.log_level)
    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
