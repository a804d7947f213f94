"""Request-scoped FastAPI dependencies.

Authentication always runs first through :func:`get_current_user`; role and
tenant-scope gates build on it and can be attached per route independently.
Every gate decision is a single :func:`evaluate_access` call.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from edugate.logging import bind_acting_user, get_logger
from edugate.service.auth import AuthContext
from edugate.service.errors import ForbiddenError, RateLimitedError
from edugate.service.policy import (
    ADMIN_CENTRE_TIER,
    ADMIN_CURS_TIER,
    Role,
    ScopeKind,
    evaluate_access,
)
from edugate.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

_READ_METHODS = {"GET", "HEAD", "OPTIONS"}
RATE_LIMIT_MESSAGE = (
    "Massa peticions des d'aquesta IP, si us plau, torna-ho a provar més tard."
)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


async def json_body(request: Request) -> Optional[dict]:
    """Parsed JSON object body, or None for reads and non-object payloads."""
    if request.method.upper() in _READ_METHODS:
        return None
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    request.state.user = ctx
    bind_acting_user(ctx.id)
    return ctx


async def _deny(request: Request, user: AuthContext, message: str, reason: str) -> None:
    runtime = get_runtime()
    resource, _ = runtime.activity.derive_target(request.url.path)
    logger.warning(
        "access_denied",
        user_id=user.id,
        role=user.role,
        path=request.url.path,
        reason=reason,
    )
    await run_in_threadpool(
        runtime.activity.log_access_denied,
        user.id,
        resource,
        reason=reason,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    raise ForbiddenError(message)


def require_role(*roles: Role):
    """Dependency factory: the caller's role must be one of ``roles``."""
    allowed = frozenset(roles)

    async def _dependency(
        request: Request, user: AuthContext = Depends(get_current_user)
    ) -> AuthContext:
        if not evaluate_access(user.role, ScopeKind.ROLE, allowed).allowed:
            await _deny(request, user, "Accés denegat. Permisos insuficients.", "role")
        return user

    return _dependency


require_superadmin = require_role(Role.SUPERADMIN)
require_admin_centre = require_role(*ADMIN_CENTRE_TIER)
require_admin_curs = require_role(*ADMIN_CURS_TIER)


async def _scope_value(request: Request, param: str) -> Any:
    # path parameters win over the JSON body
    value = request.path_params.get(param)
    if value is None:
        body = await json_body(request)
        if body is not None:
            value = body.get(param)
    return value


def _scope_gate(scope_kind: ScopeKind, param: str, caller_attr: str, message: str):
    async def _dependency(
        request: Request, user: AuthContext = Depends(get_current_user)
    ) -> AuthContext:
        requested = await _scope_value(request, param)
        caller_scope = getattr(user, caller_attr)
        if not evaluate_access(user.role, scope_kind, requested, caller_scope).allowed:
            await _deny(request, user, message, scope_kind.value)
        return user

    return _dependency


def require_centre_access(param: str = "centreId"):
    return _scope_gate(
        ScopeKind.CENTRE, param, "centre_id", "Accés denegat al centre especificat"
    )


def require_curs_access(param: str = "cursId"):
    return _scope_gate(
        ScopeKind.CURS, param, "curs_id", "Accés denegat al curs especificat"
    )


def require_user_access(param: str = "userId"):
    return _scope_gate(
        ScopeKind.USER, param, "id", "Accés denegat a l'usuari especificat"
    )


async def audit_mutation(
    request: Request,
    background_tasks: BackgroundTasks,
    user: AuthContext = Depends(get_current_user),
) -> None:
    """Schedule an activity entry for an authenticated non-read request.

    The entry is written after the response is sent. Handlers can set
    ``request.state.audit = {"table": ..., "record_id": ...}`` to name the
    target explicitly (``centre_id`` and ``curs_id`` may be tagged too);
    otherwise it is derived from the path and body.
    """
    if request.method.upper() in _READ_METHODS:
        return
    runtime = get_runtime()
    body = await json_body(request)
    method = request.method
    path = request.url.path
    ip_address = client_ip(request)
    user_agent = _user_agent(request)

    def _write() -> None:
        tag = getattr(request.state, "audit", None) or {}
        entry = runtime.activity.entry_from_request(
            method=method,
            path=path,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            body=body,
            table=tag.get("table"),
            record_id=tag.get("record_id"),
            centre_id=tag.get("centre_id"),
            curs_id=tag.get("curs_id"),
        )
        runtime.activity.record(entry)

    background_tasks.add_task(_write)


async def enforce_ip_rate_limit(request: Request) -> None:
    runtime = get_runtime()
    settings = runtime.settings
    ip_address = client_ip(request)
    allowed = await check_rate_limit(
        runtime,
        f"ip:{ip_address}",
        settings.rate_limit_requests,
        settings.rate_limit_window_seconds,
    )
    if not allowed:
        logger.warning("rate_limited", client_ip=ip_address, path=request.url.path)
        raise RateLimitedError(RATE_LIMIT_MESSAGE)
