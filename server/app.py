"""
FastAPI server for the ConversationRelay call bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twilio/voice (alias /twiml): TwiML that opens a ConversationRelay socket
- POST /twilio/transfer: TwiML that hands the caller to a person
- POST /twilio/status: Call status callback (logged)
- WS {RELAY_PATH}: ConversationRelay WebSocket
- POST /admin/reload-zips: Reload the ZIP pricing table (bearer token)
- POST /pricing/batch: Pricing for several ZIP codes
- POST /intent/delivery-minimum: Spoken delivery quote for one ZIP code
- GET /debug/zip/{zip}: What the agent would say about a ZIP code
"""

import secrets
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState
from pydantic import BaseModel
import structlog
import uvicorn

from src.callbridge.config import get_config, init_config, ConfigError


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    transfers_requested: int = 0
    pricing_reloads: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "transfers_requested": self.transfers_requested,
            "pricing_reloads": self.pricing_reloads,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    # Best effort: an unreadable pricing source leaves an empty table, not a crash
    from src.callbridge.pricing import get_pricing_store

    result = await get_pricing_store().reload()
    logger.info(
        "Server ready",
        port=config.port,
        relay_url=config.relay_url,
        model_mode=config.model_mode,
        pricing_ok=result.ok,
        pricing_rows=result.count,
    )

    yield

    logger.info("Shutting down server...")
    from src.callbridge.registry import get_registry

    await get_registry().close_all()


app = FastAPI(
    title="Call Bridge",
    description="Answers store calls over Twilio ConversationRelay",
    version="1.0.0",
    lifespan=lifespan,
)


class BatchPricingRequest(BaseModel):
    zips: Optional[List[Any]] = None


class DeliveryMinimumRequest(BaseModel):
    zipcode: Optional[Any] = None


def _xml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    from src.callbridge.pricing import get_pricing_store
    from src.callbridge.registry import get_registry

    config = get_config()
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
            "active_sessions": len(get_registry()),
            "pricing_rows": len(get_pricing_store().table),
            "model_mode": config.model_mode if config.model_enabled else "local-only",
            "relay_url": config.relay_url,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twilio/voice")
@app.get("/twilio/voice")
@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the inbound call webhook.

    Returns TwiML that connects the call to our ConversationRelay socket.
    """
    from src.callbridge.twiml import build_voice_twiml

    config = get_config()
    logger.info("Generated TwiML", relay_url=config.relay_url)
    return _xml(build_voice_twiml(config))


@app.post("/twilio/transfer")
async def transfer_twiml(request: Request) -> Response:
    from src.callbridge.twiml import build_transfer_twiml

    metrics.transfers_requested += 1
    return _xml(build_transfer_twiml(get_config()))


@app.post("/twilio/status")
async def call_status(request: Request) -> JSONResponse:
    form = await request.form()
    logger.info(
        "Call status",
        call_sid=form.get("CallSid"),
        status=form.get("CallStatus"),
        duration=form.get("CallDuration"),
    )
    return JSONResponse(content={"ok": True})


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


@app.post("/admin/reload-zips")
async def reload_zips(request: Request) -> JSONResponse:
    """Reload the pricing table from PRICING_SOURCE. Requires ADMIN_TOKEN."""
    from src.callbridge.pricing import get_pricing_store

    config = get_config()
    token = _bearer_token(request)
    if not config.admin_token or not token or not secrets.compare_digest(token, config.admin_token):
        return JSONResponse(status_code=401, content={"ok": False, "error": "Unauthorized"})

    result = await get_pricing_store().reload()
    metrics.pricing_reloads += 1
    if not result.ok:
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"ok": False, "error": result.error, "source": result.source})

    return JSONResponse(content={"ok": True, "count": result.count, "source": result.source})


@app.post("/pricing/batch")
async def pricing_batch(body: BatchPricingRequest) -> JSONResponse:
    from src.callbridge.pricing import get_pricing_store

    codes = [code for code in (body.zips or []) if str(code).strip()]
    if not codes:
        return JSONResponse(status_code=400, content={"error": "Provide a non-empty 'zips' list"})

    table = get_pricing_store().table
    entries = table.lookup_many(codes)
    if not entries:
        return JSONResponse(status_code=404, content={"error": "No pricing found for those ZIP codes"})

    results = []
    for entry in entries:
        item = entry.to_dict()
        item["eta"] = table.eta_for(entry)
        results.append(item)
    return JSONResponse(content={"count": len(results), "results": results})


@app.post("/intent/delivery-minimum")
async def delivery_minimum(body: DeliveryMinimumRequest) -> JSONResponse:
    from src.callbridge.intents import render_zip_reply
    from src.callbridge.pricing import get_pricing_store
    from src.callbridge.speech import digits_only, sanitize_reply

    code = digits_only(body.zipcode)
    if not code:
        return JSONResponse(status_code=400, content={"error": "zipcode is required"})

    config = get_config()
    table = get_pricing_store().table
    entries = table.lookup_many([code])
    reply = render_zip_reply(
        [code],
        entries,
        table,
        use_ssml=config.use_ssml,
        last_call_minutes=config.default_last_call_minutes,
    )
    return JSONResponse(
        content={
            "zip": code,
            "found": bool(entries),
            "reply": sanitize_reply(reply, domain=config.business.domain, emails=config.business.emails),
        }
    )


@app.get("/debug/zip/{zip_code}")
async def debug_zip(zip_code: str) -> JSONResponse:
    from src.callbridge.intents import render_zip_reply
    from src.callbridge.pricing import get_pricing_store
    from src.callbridge.speech import digits_only, zip_for_voice

    config = get_config()
    table = get_pricing_store().table
    code = digits_only(zip_code)
    entry = table.lookup(code)
    return JSONResponse(
        content={
            "zip": code,
            "voice": zip_for_voice(code, use_ssml=config.use_ssml),
            "reply": render_zip_reply(
                [code],
                [entry] if entry else [],
                table,
                use_ssml=config.use_ssml,
                last_call_minutes=config.default_last_call_minutes,
            ),
            "entry": entry.to_dict() if entry else None,
        }
    )


async def relay_websocket(websocket: WebSocket) -> None:
    """
    ConversationRelay WebSocket endpoint.

    One socket per call; every inbound message is handed to the call's session.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    logger.info("WebSocket connected", active_calls=metrics.active_calls)

    # Import here to avoid circular imports and speed up startup
    from src.callbridge.session import create_session

    session = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    async def close_caller() -> None:
        if websocket.application_state != WebSocketState.DISCONNECTED:
            await websocket.close()

    try:
        session = await create_session(send_message, close_caller=close_caller)

        while True:
            try:
                message = await websocket.receive_text()
                await session.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", session_id=session.session_id, call_sid=session.call_sid)
                break
            except Exception as e:
                if WebSocketState.DISCONNECTED in (websocket.client_state, websocket.application_state):
                    break
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session.session_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if session:
            try:
                await session.close()
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info("Call ended", active_calls=metrics.active_calls)


app.add_api_websocket_route(get_config().relay_path, relay_websocket)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        loop="auto",
        reload=False,
    )


if __name__ == "__main__":
    main()
