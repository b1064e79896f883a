import logging
import os
from typing import Optional, Dict, Any

from fastapi import FastAPI, UploadFile, File, HTTPException, Depends, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import connect, init_schema
from .errors import LedgerError
from .service import DailyLogService
from .auth import (
    WRITE_ROLES,
    context_for,
    ensure_default_users,
    create_session,
    delete_session,
    SESSION_COOKIE,
    authenticate,
    session_cookie_params,
    require_role,
    require_user,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Air Log v1")
service = DailyLogService()

# CORS configurable por variables de entorno
def _parse_csv_env(s: str) -> list[str]:
    parts = [p.strip() for p in (s or "").split(",")]
    return [p for p in parts if p]

_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
_methods_env = os.getenv("CORS_ALLOW_METHODS", "*")
_headers_env = os.getenv("CORS_ALLOW_HEADERS", "*")
_creds_env = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() in ("1", "true", "yes")

_allow_origins = ["*"] if _origins_env.strip() == "*" else _parse_csv_env(_origins_env)
_allow_methods = ["*"] if _methods_env.strip() == "*" else _parse_csv_env(_methods_env)
_allow_headers = ["*"] if _headers_env.strip() == "*" else _parse_csv_env(_headers_env)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=_creds_env,
    allow_methods=_allow_methods,
    allow_headers=_allow_headers,
)


MAX_PAGE_SIZE = 500


def _check_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
        raise HTTPException(status_code=400, detail="limit/offset fuera de rango")


def _public_user(user) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "organization_id": user["organization_id"],
    }


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.on_event("startup")
def startup():
    # Ensure schema
    with connect() as con:
        init_schema(con)
        ensure_default_users(con)
    logger.info("Esquema listo")


# ---------------------- Auth ----------------------


@app.post("/auth/login")
def login(payload: Dict[str, str], response: Response):
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        raise HTTPException(status_code=400, detail="Usuario y contraseña requeridos")
    with connect() as con:
        row = authenticate(con, username, password)
        session = create_session(con, row["id"])
    response.set_cookie(key=SESSION_COOKIE, value=session["token"], **session_cookie_params())
    return {
        "token": session["token"],
        "expires_at": session["expires_at"],
        "user": _public_user(row),
    }


@app.post("/auth/logout")
def logout(response: Response, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        delete_session(con, current_user["session_token"])
    params = session_cookie_params()
    response.delete_cookie(SESSION_COOKIE, path=params["path"], domain=params.get("domain"))
    return {"ok": True}


@app.get("/auth/session")
def session(current_user: Dict[str, Any] = Depends(require_user)):
    return {
        "active": True,
        "user": _public_user(current_user),
        "expires_at": current_user["session_expires_at"],
    }


@app.get("/health")
def health():
    with connect() as con:
        con.execute("SELECT 1").fetchone()
    return {"ok": True}


# ---------------------- Daily logs ----------------------


@app.get("/daily-logs")
def list_daily_logs(
    tlp_no: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    current_user: Dict[str, Any] = Depends(require_user),
):
    _check_page(limit, offset)
    page = service.list_daily_logs(context_for(current_user), tlp_no, date_from, date_to, limit, offset)
    return {"success": True, **page}


# Rutas fijas antes de /daily-logs/{record_id}
@app.post("/daily-logs/recalculate")
def recalculate_daily_logs(
    payload: Optional[Dict[str, Any]] = None,
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    tlp_no = (payload or {}).get("tlp_no")
    return {"success": True, **service.recalculate(context_for(current_user), tlp_no)}


@app.get("/daily-logs/check")
def check_daily_logs(
    tlp_no: Optional[str] = None,
    strict: int = 0,
    current_user: Dict[str, Any] = Depends(require_user),
):
    drift = service.check(context_for(current_user), tlp_no, strict=bool(strict))
    return {"success": True, "consistent": not drift, "drift": drift}


@app.post("/daily-logs/import")
async def import_daily_logs(
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(require_role(*WRITE_ROLES)),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Archivo vacío")
    result = service.import_csv(context_for(current_user), file.filename or "upload.csv", content)
    return {"success": True, **result}


@app.get("/daily-logs/{record_id}")
def get_daily_log(record_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "data": service.get_daily_log(context_for(current_user), record_id)}


@app.post("/daily-logs")
def create_daily_log(
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role(*WRITE_ROLES)),
):
    deltas = {k: v for k, v in payload.items() if k not in ("tlp_no", "record_date")}
    created = service.create_daily_log(
        context_for(current_user), payload.get("tlp_no"), payload.get("record_date"), deltas
    )
    return {"success": True, "data": created}


@app.put("/daily-logs/{record_id}")
def update_daily_log(
    record_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role(*WRITE_ROLES)),
):
    updated = service.update_daily_log(context_for(current_user), record_id, payload)
    return {"success": True, "data": updated}


@app.delete("/daily-logs/{record_id}")
def delete_daily_log(record_id: int, current_user: Dict[str, Any] = Depends(require_role(*WRITE_ROLES))):
    service.delete_daily_log(context_for(current_user), record_id)
    return {"success": True, "message": "Registro diario eliminado"}


# ---------------------- Audit ----------------------


@app.get("/audit")
def get_audit(limit: int = 50, offset: int = 0, current_user: Dict[str, Any] = Depends(require_user)):
    _check_page(limit, offset)
    return service.list_audit(context_for(current_user), limit, offset)
