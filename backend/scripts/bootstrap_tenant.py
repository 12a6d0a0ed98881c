#!/usr/bin/env python3
"""
Create (or upgrade) one tenant schema and optionally seed its first user.

  TENANT=tenant_demo BOOTSTRAP_ADMIN_EMAIL=admin@demo.local python -m backend.scripts.bootstrap_tenant
"""

import os
import secrets
import sys
from pathlib import Path

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.db import is_valid_schema_name
from backend.app.security import hash_password

DB_DIR = Path(__file__).resolve().parents[1] / "db"


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_tenant: missing DATABASE_URL", file=sys.stderr)
        return 2

    tenant = (os.getenv("TENANT") or "").strip()
    if not is_valid_schema_name(tenant):
        print(f"bootstrap_tenant: invalid TENANT {tenant!r}", file=sys.stderr)
        return 2
    # Login only discovers schemas carrying the configured prefix.
    if not tenant.startswith(settings.tenant_schema_prefix):
        print(
            f"bootstrap_tenant: TENANT {tenant!r} must start with {settings.tenant_schema_prefix!r}",
            file=sys.stderr,
        )
        return 2

    email = (os.getenv("BOOTSTRAP_ADMIN_EMAIL") or "").strip().lower()
    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if email and not password:
        password = _generate_password()
        generated_password = True

    public_ddl = (DB_DIR / "migrations" / "001_public.sql").read_text(encoding="utf-8")
    tenant_ddl = (DB_DIR / "tenant_schema.sql").read_text(encoding="utf-8")

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(public_ddl)
                cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(tenant)))
                cur.execute("SELECT set_config('search_path', %s, true)", (f'"{tenant}", public',))
                cur.execute(tenant_ddl)

                if email:
                    cur.execute("SELECT id FROM usuarios WHERE lower(correo) = %s", (email,))
                    if cur.fetchone():
                        # Idempotent: don't create duplicate users.
                        print(f"bootstrap_tenant: {tenant} ready (user {email} already exists)")
                        return 0
                    cur.execute(
                        """
                        INSERT INTO usuarios (nombre, correo, password_hash)
                        VALUES (%s, %s, %s)
                        """,
                        (os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrador"), email, hash_password(password)),
                    )

    print(f"bootstrap_tenant: {tenant} ready")
    if email and generated_password:
        print(f"bootstrap_tenant: created {email} with password: {password}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
