"""
FastAPI server for the call assist service.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /speech-recognition: live call assist session (JWT required)
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux/macOS only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.assist.config import get_config, init_config, ConfigError


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
    total_sessions: int = 0
    rejected_connections: int = 0
    stream_restarts: int = 0
    suggestions: int = 0
    conversations_saved: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_sessions": self.total_sessions,
            "rejected_connections": self.rejected_connections,
            "stream_restarts": self.stream_restarts,
            "suggestions": self.suggestions,
            "conversations_saved": self.conversations_saved,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


def build_services(config, reasoner):
    """Shared collaborators for every session."""
    from src.assist.logstore import JsonlConversationStore, LearningScheduler
    from src.assist.pricing import PricingTable
    from src.assist.session import SessionServices
    from src.assist.stt import create_stream_factory

    store = JsonlConversationStore(config.conversation_log_dir)
    return SessionServices(
        reasoner=reasoner,
        log_writer=store,
        pricing=PricingTable(),
        stream_factory=create_stream_factory(config),
        learning_scheduler=LearningScheduler(store, reasoner),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call assist server...")

    from src.assist.llm import initialize_reasoning
    from src.assist.session import SessionRegistry

    try:
        config = init_config()
        configure_logging(config.log_level)

        services = build_services(config, await initialize_reasoning(config))

        app.state.services = services
        app.state.registry = SessionRegistry()

        logger.info(
            "Server ready",
            port=config.port,
            llm_provider=config.llm_provider,
            capture="aggregate" if config.use_backend_audio_capture else "client",
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.registry.close_all()
    if app.state.services.learning_scheduler is not None:
        await app.state.services.learning_scheduler.drain(timeout=10.0)


app = FastAPI(
    title="Call Assist",
    description="Live transcription and response suggestions for operator phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": metrics.active_connections,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    services = getattr(request.app.state, "services", None)
    if services is not None and hasattr(services.reasoner, "metrics"):
        content["reasoning"] = services.reasoner.metrics.to_dict()
    return JSONResponse(content=content)


@app.websocket("/speech-recognition")
async def speech_recognition_endpoint(websocket: WebSocket) -> None:
    """
    Operator console WebSocket.

    The connection is authenticated before any event is accepted; a bad
    token gets an `error` event and close code 4401.
    """
    from src.assist.auth import AUTH_CLOSE_CODE, token_from_request, verify_token
    from src.assist.errors import AuthError
    from src.assist.protocol import ServerEventType, encode_event
    from src.assist.session import create_session

    await websocket.accept()
    metrics.total_connections += 1

    config = get_config()
    try:
        principal = verify_token(
            token_from_request(websocket.query_params, websocket.headers),
            config.jwt_secret,
            config.jwt_algorithm,
        )
    except AuthError as e:
        metrics.rejected_connections += 1
        logger.warning("WebSocket rejected", code=e.code)
        await websocket.send_text(encode_event(ServerEventType.ERROR, e.to_payload()))
        await websocket.close(code=AUTH_CLOSE_CODE)
        return

    metrics.active_connections += 1
    metrics.total_sessions += 1

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    registry = websocket.app.state.registry
    session = None

    try:
        session = await create_session(
            send_message,
            websocket.app.state.services,
            config=config,
            operator_id=principal.user_id,
        )
        registry.add(session)
        logger.info(
            "WebSocket connected",
            connection_id=session.connection_id,
            operator_id=principal.user_id,
            active_connections=metrics.active_connections,
        )

        while True:
            try:
                message = await websocket.receive_text()
                await session.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=session.connection_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    connection_id=session.connection_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.error("Error closing session", error=str(e))
            registry.remove(session.connection_id)
            metrics.stream_restarts += session.metrics.stream_restarts
            metrics.suggestions += session.metrics.suggestions
            metrics.conversations_saved += session.metrics.saves
            metrics.errors += session.metrics.errors

        metrics.active_connections -= 1

        logger.info(
            "Session ended",
            connection_id=session.connection_id if session else None,
            active_connections=metrics.active_connections,
        )


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
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
