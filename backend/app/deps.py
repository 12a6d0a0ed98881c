from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, is_valid_schema_name
from .errors import InvalidTenant
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "retail_ledger_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    # Sessions live in the public schema; no tenant context is needed to resolve them.
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id AS session_id, tenant, user_id, user_name, email, expires_at, is_active
                FROM public.auth_sessions
                WHERE token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "tenant": row["tenant"],
                "user_id": row["user_id"],
                "user_name": row["user_name"],
                "email": row["email"],
            }


def get_tenant(session=Depends(get_session)) -> str:
    tenant = session.get("tenant")
    if not is_valid_schema_name(tenant):
        raise InvalidTenant(f"invalid tenant: {tenant!r}")
    return tenant
