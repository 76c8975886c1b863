from fastapi import FastAPI, Depends, HTTPException, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from typing import Optional
import json
import time
import uuid

from models import get_db, init_db, SessionLocal
from schemas import (
    PollRequest, PollResponse, CommandOut, AckRequest, SuccessResponse,
    ClientSummary, ClientListResponse, SendCommandRequest, SendCommandResponse,
    PostMessageRequest, CreateLicenseBatchRequest, RedeemLicenseRequest
)
from auth import require_admin
from background_tasks import BackgroundTaskManager
from config import config
from licenses import LicenseError, create_batch, list_licenses, redeem_license, license_to_dict
from message_board import MessageBoard
from observability import structured_logger, metrics, request_id_var
from presence import status_label
from registry import (
    ClientRegistry, ClientAttributes, ClientNotFoundError, InvalidCommandError, to_millis
)

MESSAGE_BOARD_LABEL = "message-board-client"
MAX_REQUEST_BYTES = 1 * 1024 * 1024  # 1MB
UNMATCHED_ROUTE = "unmatched"

app = FastAPI(title="FleetDesk API")

# Process-wide state, created once and handed to routes through dependencies
app.state.registry = ClientRegistry()
app.state.message_board = MessageBoard()
app.state.background_tasks = BackgroundTaskManager(app.state.registry, session_factory=SessionLocal)


def get_registry(request: Request) -> ClientRegistry:
    return request.app.state.registry


def get_message_board(request: Request) -> MessageBoard:
    return request.app.state.message_board


def get_background_tasks(request: Request) -> BackgroundTaskManager:
    return request.app.state.background_tasks


def route_label(request: Request) -> str:
    """Route template for metrics labels; paths that matched no route share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000

    route = route_label(request)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })
    metrics.observe_histogram("http_request_latency_ms", latency_ms, {"route": route})

    response.headers["X-Request-ID"] = req_id
    return response


@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Catch unhandled exceptions in routes and answer 500 instead of letting the
    process go down. Internal details are logged, never returned.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if config.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def limit_request_size(request: Request, call_next):
    """
    Reject bodies over 1MB. Counts streamed bytes so the limit holds
    regardless of Content-Length or chunked encoding.
    """
    total_bytes = 0
    receive = request.receive
    size_exceeded = False

    async def guarded_receive():
        nonlocal total_bytes, size_exceeded
        message = await receive()

        if message["type"] == "http.request":
            total_bytes += len(message.get("body", b""))
            if total_bytes > MAX_REQUEST_BYTES:
                size_exceeded = True
                return {"type": "http.request", "body": b""}

        return message

    request._receive = guarded_receive

    too_large = Response(
        status_code=413,
        content=json.dumps({"detail": "Request body too large (max 1MB)"}),
        media_type="application/json"
    )
    try:
        response = await call_next(request)
    except Exception:
        if size_exceeded:
            return too_large
        raise
    return too_large if size_exceeded else response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed or mistyped request bodies are the caller's fault: answer 400."""
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"detail": json.loads(json.dumps(exc.errors(), default=str))}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    structured_logger.log_event(
        "http.unhandled_exception",
        level="ERROR",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "message": "Internal server error"}
    )


def validate_configuration():
    """Validate configuration on startup; errors abort, warnings are logged."""
    is_valid, errors, warnings = config.validate()

    for warning in warnings:
        structured_logger.log_event("config.warning", level="WARN", message=warning)

    if not is_valid:
        for error in errors:
            structured_logger.log_event("config.error", level="ERROR", message=error)
        raise RuntimeError("Configuration validation failed: " + "; ".join(errors))

    config.print_config_summary()


backend_start_time = datetime.now(timezone.utc)


@app.on_event("startup")
async def startup_event():
    validate_configuration()

    try:
        init_db()
        structured_logger.log_event("startup.database.ready")
    except Exception as e:
        # Licenses are unavailable, but polling keeps working
        structured_logger.log_event(
            "startup.database.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )

    await app.state.background_tasks.start()
    structured_logger.log_event("startup.complete", online_timeout_seconds=config.online_timeout_seconds)


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.background_tasks.stop()


# --- Ops ---

@app.get("/healthz")
async def health_check(registry: ClientRegistry = Depends(get_registry)):
    """Liveness check - returns 200 while the process is serving."""
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "clients": len(registry),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/metrics", dependencies=[Depends(require_admin)])
async def prometheus_metrics(registry: ClientRegistry = Depends(get_registry)):
    """Prometheus-compatible metrics endpoint (requires admin authentication)"""
    stats = registry.stats()
    metrics.set_gauge("clients_total", stats["clients_total"])
    metrics.set_gauge("clients_online", stats["clients_online"])
    metrics.set_gauge("commands_pending", stats["pending_commands"])

    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


@app.get("/admin/stats", dependencies=[Depends(require_admin)])
async def admin_stats(
    registry: ClientRegistry = Depends(get_registry),
    background: BackgroundTaskManager = Depends(get_background_tasks),
    board: MessageBoard = Depends(get_message_board)
):
    return {
        "registry": registry.stats(),
        "background_tasks": background.get_stats(),
        "messages": len(board),
        "online_timeout_seconds": registry.online_timeout,
        "polls": {
            result: metrics.get_counter("polls_total", {"result": result})
            for result in ("new_client", "checkin")
        },
    }


# --- Client protocol ---

@app.post("/client/poll", response_model=PollResponse)
async def client_poll(
    payload: Optional[PollRequest] = None,
    registry: ClientRegistry = Depends(get_registry)
):
    """
    Short poll: register or refresh the caller and hand back every command
    still pending for it. Returns immediately.
    """
    payload = payload or PollRequest()
    record = registry.upsert_on_poll(
        payload.client_id,
        ClientAttributes(
            device_label=payload.device_label,
            foreground_app=payload.foreground_app,
            is_foreground=payload.is_foreground,
        )
    )

    return PollResponse(
        client_id=record.id,
        timestamp=to_millis(registry.now()),
        commands=[CommandOut(**c.to_dict()) for c in record.pending_commands]
    )


@app.post("/client/ack", response_model=SuccessResponse)
async def client_ack(payload: AckRequest, registry: ClientRegistry = Depends(get_registry)):
    """Confirm a command finished. Unknown clients or commands are accepted."""
    if not payload.client_id or not payload.command_id:
        raise HTTPException(status_code=400, detail="clientId and commandId are required")

    registry.ack(payload.client_id, payload.command_id)
    return SuccessResponse()


# --- Admin ---

@app.get("/admin/clients", response_model=ClientListResponse, dependencies=[Depends(require_admin)])
async def admin_list_clients(registry: ClientRegistry = Depends(get_registry)):
    return ClientListResponse(
        clients=[ClientSummary(**record.to_summary()) for record in registry.list_all()]
    )


@app.get("/admin/clients/{client_id}", dependencies=[Depends(require_admin)])
async def admin_get_client(client_id: str, registry: ClientRegistry = Depends(get_registry)):
    record = registry.get(client_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Client not found")

    return {
        **ClientSummary(**record.to_summary()).model_dump(by_alias=True),
        "status": status_label(registry.now(), record.last_seen, registry.online_timeout),
        "createdAt": to_millis(record.created_at),
        "pendingCommands": [c.to_dict() for c in record.pending_commands],
    }


@app.post("/admin/send-command", response_model=SendCommandResponse, dependencies=[Depends(require_admin)])
async def admin_send_command(payload: SendCommandRequest, registry: ClientRegistry = Depends(get_registry)):
    if not payload.client_id or not payload.command_type:
        raise HTTPException(status_code=400, detail="clientId and commandType are required")

    try:
        command = registry.enqueue_command(payload.client_id, payload.command_type, payload.command_payload)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")
    except InvalidCommandError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SendCommandResponse(command=CommandOut(**command.to_dict()))


# --- Message board ---

@app.post("/messages")
async def post_message(payload: PostMessageRequest, board: MessageBoard = Depends(get_message_board)):
    if not payload.content:
        raise HTTPException(status_code=400, detail="content is required and must be a string")

    message = board.post(payload.content)
    return {"success": True, "message": message.to_dict()}


@app.get("/messages")
async def poll_messages(
    client_id: Optional[str] = Query(None, alias="clientId"),
    last_timestamp: int = Query(0, alias="lastTimestamp", ge=0),
    registry: ClientRegistry = Depends(get_registry),
    board: MessageBoard = Depends(get_message_board)
):
    record = registry.touch(client_id, MESSAGE_BOARD_LABEL)
    messages, cursor = board.since(last_timestamp)
    return {
        "clientId": record.id,
        "messages": [m.to_dict() for m in messages],
        "lastTimestamp": cursor,
    }


# --- Licenses ---

@app.post("/admin/licenses", dependencies=[Depends(require_admin)])
async def admin_create_license_batch(payload: CreateLicenseBatchRequest, db: Session = Depends(get_db)):
    try:
        batch, keys = create_batch(
            db,
            name=payload.name,
            license_type=payload.type,
            count=payload.count,
            duration_days=payload.duration,
            notes=payload.notes,
        )
    except LicenseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "batchId": batch.id, "keys": [k.key for k in keys]}


@app.get("/admin/licenses", dependencies=[Depends(require_admin)])
async def admin_list_licenses(
    status: Optional[str] = Query(None),
    license_type: Optional[str] = Query(None, alias="type"),
    batch_id: Optional[str] = Query(None, alias="batchId"),
    db: Session = Depends(get_db)
):
    try:
        licenses = list_licenses(db, status=status, license_type=license_type, batch_id=batch_id)
    except LicenseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"licenses": [license_to_dict(lk) for lk in licenses]}


@app.put("/license")
async def activate_license(payload: RedeemLicenseRequest, db: Session = Depends(get_db)):
    try:
        license_key = redeem_license(db, payload.key, payload.client_id)
    except LicenseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    data = license_to_dict(license_key)
    return {"success": True, "expiresAt": data["expiresAt"], "type": data["type"]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
