import os
import secrets
import hashlib
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, NamedTuple, Optional

from fastapi import HTTPException, Header, Depends, Cookie

from .db import connect

SESSION_DURATION_SECONDS = int(os.getenv("SESSION_DURATION_SECONDS", "28800"))
DEFAULT_ORGANIZATION_ID = os.getenv("DEFAULT_ORGANIZATION_ID", "default")
SESSION_COOKIE = "session"

ROLE_LABELS = {"admin", "mechanic", "auditor"}
WRITE_ROLES = ("admin", "mechanic")

# username, password env var, fallback password, role
DEFAULT_USERS = (
    ("admin", "ADMIN_DEFAULT_PASSWORD", "admin123", "admin"),
    ("mechanic", "MECHANIC_DEFAULT_PASSWORD", "mechanic123", "mechanic"),
    ("auditor", "AUDITOR_DEFAULT_PASSWORD", "auditor123", "auditor"),
)


class RequestContext(NamedTuple):
    """Identity handed to the daily-log service; trusted as given."""

    user_id: int
    username: str
    organization_id: str


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt), password_hash)


def create_user(con, username: str, password: str, role: str, organization_id: str = DEFAULT_ORGANIZATION_ID) -> int:
    if role not in ROLE_LABELS:
        raise ValueError("Rol inválido")
    salt = secrets.token_hex(16)
    c = con.execute(
        "INSERT INTO users(username, password_hash, password_salt, role, organization_id) VALUES (?,?,?,?,?)",
        (username.strip().lower(), hash_password(password, salt), salt, role, organization_id),
    )
    return c.lastrowid


def ensure_default_users(con) -> None:
    if con.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]:
        return
    for username, env_var, fallback, role in DEFAULT_USERS:
        create_user(con, username, os.getenv(env_var, fallback), role)


def authenticate(con, username: str, password: str):
    """Return the user row for valid credentials, 401 otherwise."""
    row = con.execute(
        "SELECT id, username, password_hash, password_salt, role, organization_id FROM users WHERE username=?",
        (username.strip().lower(),),
    ).fetchone()
    if row is None or not verify_password(password, row["password_salt"], row["password_hash"]):
        raise HTTPException(status_code=401, detail="Credenciales inválidas")
    return row


def create_session(con, user_id: int) -> Dict[str, str]:
    token = secrets.token_hex(32)
    expires_at = (datetime.utcnow() + timedelta(seconds=SESSION_DURATION_SECONDS)).isoformat()
    con.execute(
        "INSERT INTO user_session(token, user_id, expires_at) VALUES (?,?,?)",
        (token, user_id, expires_at),
    )
    return {"token": token, "expires_at": expires_at}


def delete_session(con, token: str) -> None:
    con.execute("DELETE FROM user_session WHERE token=?", (token,))


def session_cookie_params() -> Dict[str, Any]:
    """httpOnly cookie settings, overridable through COOKIE_* env vars."""
    samesite = (os.getenv("COOKIE_SAMESITE", "lax") or "").strip().lower()
    if samesite not in ("lax", "strict", "none"):
        samesite = "lax"
    params: Dict[str, Any] = {"httponly": True, "samesite": samesite, "path": "/"}
    domain = (os.getenv("COOKIE_DOMAIN", "") or "").strip()
    if domain:
        params["domain"] = domain
    # browsers drop SameSite=None cookies that are not Secure
    if samesite == "none" or os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes"):
        params["secure"] = True
    return params


def _extract_token(authorization: Optional[str], cookie_token: Optional[str] = None) -> str:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme != "Bearer":
            raise HTTPException(status_code=401, detail="Formato de token inválido")
        token = token.strip()
    else:
        token = cookie_token
    if not token:
        raise HTTPException(status_code=401, detail="Token requerido")
    return token


def _session_expired(expires_at: str) -> bool:
    try:
        return datetime.fromisoformat(expires_at) < datetime.utcnow()
    except ValueError:
        return True


def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    token = _extract_token(authorization, session)
    with connect() as con:
        row = con.execute(
            """
            SELECT s.token, s.expires_at, u.id AS user_id, u.username, u.role, u.organization_id
            FROM user_session s
            JOIN users u ON u.id = s.user_id
            WHERE s.token=?
            """,
            (token,),
        ).fetchone()
        if not row:
            raise HTTPException(status_code=401, detail="Sesión no válida")
        if _session_expired(row["expires_at"]):
            delete_session(con, token)
            raise HTTPException(status_code=401, detail="Sesión expirada")
    return {
        "id": row["user_id"],
        "username": row["username"],
        "role": row["role"],
        "organization_id": row["organization_id"],
        "session_token": row["token"],
        "session_expires_at": row["expires_at"],
    }


def require_user(user=Depends(get_current_user)) -> Dict[str, Any]:
    return user


def require_role(*roles: str) -> Callable:
    allowed = {r.lower() for r in roles if r}

    def dependency(user=Depends(get_current_user)) -> Dict[str, Any]:
        if allowed and user["role"].lower() not in allowed:
            raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
        return user

    return dependency


def context_for(user: Dict[str, Any]) -> RequestContext:
    return RequestContext(int(user["id"]), user["username"], user["organization_id"])
