"""
auth/dependencies.py -- FastAPI Depends() helpers that turn a Request into the
explicit arguments the orchestrators take.

  get_session_handle()     -- SessionHandle for this browser session. The
                              opaque session id lives in Starlette's signed
                              session cookie; the state itself lives in
                              SessionStateStore.
  build_request_context()  -- RequestContext (BackURL, referer, client IP).
  try_get_current_principal() / get_current_principal()
                           -- the logged-in member from the session JWT
                              (cookie first, then Authorization: Bearer).

auth/dependencies.py may import from fastapi because it is part of the
FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Principal, RequestContext
from auth.session import SESSION_ID_KEY, SessionHandle, new_session_id
from auth.tokens import SESSION_COOKIE, decode_access_token


def get_session_handle(request: Request) -> SessionHandle:
    """Return the SessionHandle for this request, allocating a session id if needed."""
    session_id = request.session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = new_session_id()
        request.session[SESSION_ID_KEY] = session_id
    return request.app.state.session_store.handle(session_id)


def build_request_context(request: Request, back_url: str | None = None) -> RequestContext:
    """Collect request data for an orchestrator call.

    back_url comes from the submitted form when the route has one, otherwise
    from the BackURL query parameter.
    """
    return RequestContext(
        back_url=back_url or request.query_params.get("BackURL"),
        referer=request.headers.get("referer"),
        client_ip=request.client.host if request.client else None,
    )


def try_get_current_principal(request: Request) -> Principal | None:
    """Return the logged-in Principal, or None. Never raises for bad tokens."""
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None
    principal = request.app.state.identity_store.get_by_id(payload["principal_id"])
    if principal is None or not principal.is_active:
        return None
    return principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal
