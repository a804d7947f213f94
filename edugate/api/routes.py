from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from starlette.concurrency import run_in_threadpool

from edugate.api.deps import (
    audit_mutation,
    client_ip,
    enforce_ip_rate_limit,
    get_current_user,
    require_admin_centre,
    require_superadmin,
)
from edugate.api.schemas import (
    ActivityLogResponse,
    Envelope,
    HealthResponse,
    LogCleanupRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from edugate.logging import get_logger
from edugate.service.activity import Action
from edugate.service.auth import AuthContext, RegistrationRequest
from edugate.service.errors import AuthenticationError
from edugate.service.runtime import get_runtime

logger = get_logger(__name__)

# every HTTP route shares the per-IP request budget
router = APIRouter(dependencies=[Depends(enforce_ip_rate_limit)])
ws_router = APIRouter()

WS_UNAUTHORIZED = 4401


def _user_to_response(user) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        status=user.status,
        centre_id=user.centre_id,
        curs_id=user.curs_id,
        last_login=user.last_login,
        created_at=user.created_at,
    )


def _entry_to_response(entry) -> ActivityLogResponse:
    return ActivityLogResponse(
        id=entry.id,
        action=entry.action,
        table_name=entry.table_name,
        record_id=entry.record_id,
        user_id=entry.user_id,
        centre_id=entry.centre_id,
        curs_id=entry.curs_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        old_data=entry.old_data,
        new_data=entry.new_data,
        timestamp=entry.timestamp,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, background_tasks: BackgroundTasks):
    """Authenticate with email and password.

    Raises:
        400: malformed email or password
        401: invalid credentials or inactive account
        429: request budget for this IP exhausted
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    background_tasks.add_task(
        runtime.activity.log_auth_event,
        result.user.id,
        Action.LOGIN,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )
    return Envelope(
        data=LoginResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ),
        message="Login correcte",
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    access_token, expires_in = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        data=RefreshResponse(access_token=access_token, expires_in=expires_in),
        message="Token renovat correctament",
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    body: Optional[LogoutRequest] = None,
):
    runtime = get_runtime()
    user_id = await runtime.auth.logout(body.refresh_token if body else None)
    if user_id:
        background_tasks.add_task(
            runtime.activity.log_auth_event,
            user_id,
            Action.LOGOUT,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
    return Envelope(data={}, message="Logout correcte")


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(audit_mutation)],
)
async def register(
    body: RegisterRequest,
    request: Request,
    principal: AuthContext = Depends(require_admin_centre),
):
    runtime = get_runtime()
    user = await runtime.auth.register(
        RegistrationRequest(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            role=body.role,
            centre_id=body.centre_id,
            curs_id=body.curs_id,
        ),
        created_by=principal,
    )
    request.state.audit = {
        "table": "users",
        "record_id": user.id,
        "centre_id": user.centre_id,
        "curs_id": user.curs_id,
    }
    return Envelope(
        data={"user": _user_to_response(user)},
        message="Usuari registrat correctament",
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_active_user(principal.id)
    return Envelope(data={"user": _user_to_response(user)})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: AuthContext = Depends(get_current_user),
):
    """Replace the caller's password and sign every one of their sessions out."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.id, body.current_password, body.new_password
    )
    background_tasks.add_task(
        runtime.activity.log_password_change,
        principal.id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )
    return Envelope(data={}, message="Contrasenya canviada correctament")


@router.get("/logs", response_model=Envelope, tags=["logs"])
async def list_logs(
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    table: Optional[str] = Query(None, max_length=64),
    action: Optional[Action] = Query(None),
    centre_id: Optional[str] = Query(None, alias="centreId", max_length=64),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    entries = await run_in_threadpool(
        runtime.activity.list_recent,
        user_id=user_id,
        table_name=table,
        action=action.value if action else None,
        centre_id=centre_id,
        limit=limit,
        offset=offset,
    )
    return Envelope(data=[_entry_to_response(entry) for entry in entries])


@router.post(
    "/logs/cleanup",
    response_model=Envelope,
    tags=["logs"],
    dependencies=[Depends(audit_mutation)],
)
async def cleanup_logs(
    request: Request,
    body: Optional[LogCleanupRequest] = None,
    principal: AuthContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    days = body.days if body else LogCleanupRequest().days
    removed = await run_in_threadpool(runtime.activity.cleanup, days)
    request.state.audit = {"table": "activity_logs"}
    logger.info("activity_log_manual_cleanup", user_id=principal.id, days=days, removed=removed)
    return Envelope(data={"deleted": removed})


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    settings = get_runtime().settings
    return HealthResponse(
        status="OK",
        timestamp=datetime.now(timezone.utc),
        version=settings.app_version,
        environment=settings.environment.value,
    )


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Realtime channel; the access token goes in the ``token`` query parameter.

    Connections are accepted only after the same checks HTTP requests get.
    """
    runtime = get_runtime()
    if not token:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    try:
        principal = await run_in_threadpool(runtime.auth.authenticate_token, token)
    except AuthenticationError as exc:
        logger.info("websocket_rejected", error_code=exc.error_code)
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()
    logger.info("websocket_connected", user_id=principal.id)
    await websocket.send_json({"event": "connected", "data": {"userId": principal.id}})
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                message = None
            event = message.get("event") if isinstance(message, dict) else None
            if event == "ping":
                await websocket.send_json({"event": "pong"})
            elif event == "get-system-status":
                database_ok = await run_in_threadpool(runtime.store.ping)
                await websocket.send_json(
                    {
                        "event": "system-status",
                        "data": {
                            "databaseStatus": "online" if database_ok else "offline",
                            "timestamp": datetime.now(timezone.utc).isoformat(),
                        },
                    }
                )
            else:
                await websocket.send_json(
                    {"event": "error", "data": {"message": "Esdeveniment desconegut"}}
                )
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", user_id=principal.id)
