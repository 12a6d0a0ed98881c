from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
import secrets
from psycopg import sql
from ..config import settings
from ..db import get_conn, is_valid_schema_name
from ..deps import get_session, SESSION_COOKIE_NAME
from ..security import verify_password, hash_session_token

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


def _like_prefix(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("_", "\\_").replace("%", "\\%") + "%"


def _tenant_schemas(cur) -> list[str]:
    # Every tenant schema carries its own `usuarios` table.
    cur.execute(
        """
        SELECT n.nspname AS schema
        FROM pg_namespace n
        JOIN pg_class c ON c.relnamespace = n.oid
        WHERE n.nspname LIKE %s
          AND c.relname = 'usuarios'
          AND c.relkind = 'r'
        ORDER BY n.nspname
        """,
        (_like_prefix(settings.tenant_schema_prefix),),
    )
    return [r["schema"] for r in cur.fetchall() if is_valid_schema_name(r["schema"])]


def _find_user(cur, email: str):
    for tenant in _tenant_schemas(cur):
        cur.execute(
            sql.SQL(
                """
                SELECT id, nombre, correo, password_hash
                FROM {}.usuarios
                WHERE lower(correo) = lower(%s)
                LIMIT 1
                """
            ).format(sql.Identifier(tenant)),
            (email,),
        )
        row = cur.fetchone()
        if row:
            return tenant, row
    return None, None


@router.post("/login")
def login(data: LoginIn):
    email = (data.email or "").strip()
    if not email or not data.password:
        raise HTTPException(status_code=400, detail="email and password are required")
    with get_conn() as conn:
        with conn.cursor() as cur:
            tenant, user = _find_user(cur, email)
            if not user or not verify_password(data.password, user["password_hash"]):
                raise HTTPException(status_code=401, detail="invalid credentials")

            # Use a strong random token and store only a one-way hash in the DB.
            token = secrets.token_urlsafe(32)
            expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
            cur.execute(
                """
                INSERT INTO public.auth_sessions (token, tenant, user_id, user_name, email, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (hash_session_token(token), tenant, user["id"], user["nombre"], user["correo"], expires),
            )

    resp = JSONResponse(
        {
            "token": token,
            "user": {"id": user["id"], "nombre": user["nombre"], "email": user["correo"]},
            "tenant": tenant,
        }
    )
    secure = settings.env not in {"local", "dev"}
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.get("/me")
def me(session=Depends(get_session)):
    return {
        "user": {"id": session["user_id"], "nombre": session["user_name"], "email": session["email"]},
        "tenant": session["tenant"],
    }


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE public.auth_sessions SET is_active = false WHERE id = %s",
                (session["session_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return resp
