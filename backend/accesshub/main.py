# ==============================================================================
# == backend/accesshub/main.py - HTTP / WebSocket surface                   ==
# ==============================================================================

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import schemas
from .config import Settings, get_settings
from .errors import ExtractionError, NotFoundError, ValidationError
from .services import Services, build_services

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SLOW_REQUEST_MS = 1000


class RequestIDFilter(logging.Filter):
    """Guarantees a request_id attribute so handlers may format it."""

    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.insert(0, logging.FileHandler(settings.LOG_FILE, encoding='utf-8', delay=True))
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=LOG_FORMAT, handlers=handlers)
    request_filter = RequestIDFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIDFilter) for f in handler.filters):
            handler.addFilter(request_filter)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every HTTP request with an id, echoed back as X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        request.state.request_id = request_id
        tag = {'request_id': request_id}

        logger.debug(f"[{request_id[:8]}] {request.method} {request.url.path}", extra=tag)
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers['X-Request-ID'] = request_id
        logger.info(
            f"[{request_id[:8]}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
            extra=tag,
        )
        return response


class MonitoringMiddleware(BaseHTTPMiddleware):
    """Records request timings in the health monitor"""

    async def dispatch(self, request: Request, call_next):
        monitor = request.app.state.services.monitor
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            monitor.record_request(elapsed_ms)

        if elapsed_ms > SLOW_REQUEST_MS:
            logger.warning(f"Slow request: {request.method} {request.url.path} took {elapsed_ms:.0f}ms")
        return response


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Access hub starting...")
        try:
            await services.start()
            yield
        finally:
            logger.info("🛑 Access hub shutting down...")
            await services.stop()
            logger.info("✓ Shutdown complete")

    app = FastAPI(title="Access Control Telemetry Hub", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(MonitoringMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === ERROR HANDLERS ===
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.info(f"Rejected request to {request.url.path}: {exc.errors}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Invalid request", "errors": errors},
        )

    @app.exception_handler(ExtractionError)
    async def extraction_error_handler(request: Request, exc: ExtractionError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"success": False, "message": f"Template extraction failed: {exc}"},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"success": False, "message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        services.monitor.record_error('unhandled_exception', str(exc))
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "timestamp": time.time()},
        )

    # === QUERY ENDPOINTS ===
    @app.get("/api/devices", response_model=list[schemas.Device])
    async def list_devices(request: Request):
        return await get_services(request).synchronizer.list_devices()

    @app.get("/api/devices/{device_id}/users", response_model=list[schemas.RosterUser])
    async def get_device_roster(device_id: str, request: Request):
        return await get_services(request).synchronizer.get_roster(device_id)

    @app.get("/api/logs/access", response_model=list[schemas.AccessLog])
    async def get_access_logs(
        request: Request,
        limit: Optional[int] = Query(None, ge=1),
        device_id: Optional[str] = Query(None),
    ):
        return await get_services(request).synchronizer.recent_access_logs(limit, device_id=device_id)

    @app.get("/api/logs/system", response_model=list[schemas.SystemLog])
    async def get_system_logs(
        request: Request,
        limit: Optional[int] = Query(None, ge=1),
        device_id: Optional[str] = Query(None),
    ):
        return await get_services(request).synchronizer.recent_system_logs(limit, device_id=device_id)

    # === COMMANDS ===
    @app.post("/api/commands", response_model=schemas.CommandResult)
    async def submit_command(command: schemas.CommandRequest, request: Request):
        return await get_services(request).dispatcher.submit(command)

    @app.get("/api/commands/pending")
    async def list_pending_commands(request: Request):
        return [c.to_wire() for c in get_services(request).commands.pending()]

    @app.get("/device/{device_id}/command")
    async def pull_command(device_id: str, request: Request):
        """Device poll: returns the pending command and clears it, or {"kind": "none"}."""
        return get_services(request).dispatcher.take(device_id)

    # === DEVICE INGEST OVER HTTP ===
    @app.post("/device/{device_id}/{message_type}", status_code=status.HTTP_202_ACCEPTED)
    async def ingest_over_http(device_id: str, message_type: str, request: Request):
        body = await request.body()
        event = get_services(request).pipeline.submit(f"device/{device_id}/{message_type}", body)
        return {"status": "accepted", "type": event.type, "deviceId": event.device_id}

    # === TEMPLATES ===
    @app.post("/api/templates", response_model=schemas.TemplateInfo, status_code=status.HTTP_201_CREATED)
    async def upload_template(request: Request):
        return await get_services(request).templates.upload(await request.body())

    @app.post("/api/templates/extract", response_model=schemas.TemplateInfo, status_code=status.HTTP_201_CREATED)
    async def extract_template(request: Request, template_id: Optional[str] = Query(None)):
        return await get_services(request).templates.extract_and_store(await request.body(), template_id)

    @app.post("/api/templates/match", response_model=schemas.TemplateMatch)
    async def match_template(request: Request):
        template_id = await get_services(request).templates.match(await request.body())
        return schemas.TemplateMatch(matched=template_id is not None, template_id=template_id)

    @app.put("/api/templates/{template_id}", response_model=schemas.TemplateInfo)
    async def put_template(template_id: str, request: Request):
        return await get_services(request).templates.upload(await request.body(), template_id)

    @app.get("/api/templates/{template_id}")
    async def get_template(template_id: str, request: Request):
        data = await get_services(request).templates.fetch(template_id)
        return Response(content=data, media_type="application/octet-stream")

    # === WEBSOCKETS ===
    @app.websocket("/ws/updates")
    async def dashboard_websocket_endpoint(websocket: WebSocket):
        await services.hub.serve(websocket, services.snapshot, services.handle_dashboard_message)

    @app.websocket("/ws/device/{device_id}")
    async def device_websocket_endpoint(websocket: WebSocket, device_id: str):
        await services.device_channels.connect(device_id, websocket)
        await services.dispatcher.deliver_pending(device_id)
        try:
            while True:
                # Terminals send either text or binary frames
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
                payload = message.get("bytes") or message.get("text")
                if payload:
                    services.pipeline.submit(f"device/{device_id}", payload)
        except WebSocketDisconnect:
            logger.info(f"Device '{device_id}' closed its WebSocket.")
        finally:
            services.device_channels.disconnect(device_id, websocket)

    # === HEALTH ===
    @app.get("/health")
    async def simple_health_check():
        mqtt_connected = services.mqtt.is_connected() if services.mqtt else None
        return {
            "status": "ok",
            "mqtt_connected": mqtt_connected,
            "dashboard_connections": services.hub.active_connections,
            "device_connections": len(services.device_channels.active_connections),
            "tracked_devices": len(services.presence),
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        return services.monitor.get_health_status()

    @app.get("/health/errors")
    async def recent_errors():
        return {
            "errors": services.monitor.get_recent_errors(),
            "total_errors": services.monitor.error_count
        }

    return app


app = create_app()
