"""
Daily-log operations: create, update, delete, recalculate and import.

Each operation holds the lock of every scope it touches and runs the record
write, the propagation sweep and the audit row in a single transaction, so
a failure anywhere leaves no partial totals behind and the call can simply
be retried.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from .auth import RequestContext
from .db import connect, transaction
from .errors import InconsistentState, InvalidPayload, NotFound, StoreUnavailable
from .importer import parse_csv_bytes
from .recompute import check_scope, propagate, recompute_scope
from .store import LedgerStore, Scope
from .utils import DELTA_FIELDS, diff_rows, normalize_payload, to_date_iso

logger = logging.getLogger(__name__)

_scope_locks: Dict[Scope, threading.Lock] = {}
_scope_locks_guard = threading.Lock()


def _scope_lock(scope: Scope) -> threading.Lock:
    with _scope_locks_guard:
        lock = _scope_locks.get(scope)
        if lock is None:
            lock = _scope_locks[scope] = threading.Lock()
        return lock


@contextmanager
def scope_locks(*scopes: Scope):
    # sorted acquisition keeps two-scope updates deadlock free
    locks = [_scope_lock(s) for s in sorted(set(scopes))]
    for lock in locks:
        lock.acquire()
    try:
        yield
    finally:
        for lock in reversed(locks):
            lock.release()


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def log_ledger(con, ctx: RequestContext, action: str, row_id: Optional[int], details: Dict[str, Any]) -> None:
    con.execute(
        "INSERT INTO data_ledger(organization_id, table_name, action, row_id, actor_user_id, actor_username, details) "
        "VALUES (?,?,?,?,?,?,?)",
        (ctx.organization_id, "daily_log", action, row_id, ctx.user_id, ctx.username, json_dumps(details)),
    )


class DailyLogService:
    def __init__(self, connection_factory: Callable = connect):
        self._connection = connection_factory

    # ---------------------- Reads ----------------------

    def get_daily_log(self, ctx: RequestContext, record_id: int) -> Dict[str, Any]:
        with self._connection() as con:
            row = LedgerStore(con).get_record(ctx.organization_id, record_id)
            if not row:
                raise NotFound("Registro diario no encontrado")
            return dict(row)

    def list_daily_logs(
        self,
        ctx: RequestContext,
        tlp_no: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        if date_from:
            date_from = to_date_iso(date_from, "date_from")
        if date_to:
            date_to = to_date_iso(date_to, "date_to")
        with self._connection() as con:
            return LedgerStore(con).list_records(ctx.organization_id, tlp_no, date_from, date_to, limit, offset)

    def list_audit(self, ctx: RequestContext, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        with self._connection() as con:
            rows = con.execute(
                """
                SELECT id, ts, table_name, action, row_id, actor_user_id, actor_username, details
                FROM data_ledger WHERE organization_id=?
                ORDER BY id DESC LIMIT ? OFFSET ?
                """,
                (ctx.organization_id, limit, offset),
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            try:
                d["details"] = json.loads(d["details"]) if d["details"] else None
            except ValueError:
                pass
            out.append(d)
        return out

    # ---------------------- Create ----------------------

    def create_daily_log(
        self, ctx: RequestContext, tlp_no: str, record_date: str, deltas: Dict[str, Any]
    ) -> Dict[str, Any]:
        # normalize_payload rejects a missing tail number or date
        data = normalize_payload({**deltas, "tlp_no": tlp_no, "record_date": record_date})
        scope = Scope(ctx.organization_id, data.pop("tlp_no"))
        day = data.pop("record_date")

        with self._connection() as con, scope_locks(scope):
            with self._unit_of_work(con):
                store = LedgerStore(con)
                record_id = store.submit_delta(scope, day, data, ctx.user_id)
                sweep = propagate(store, scope, day, record_id)
                log_ledger(con, ctx, "INSERT", record_id, {
                    "action": "INSERT", "tlp_no": scope.tlp_no, "record_date": day,
                    "values": data, "sweep": sweep.as_dict(),
                })
                row = store.get_record(ctx.organization_id, record_id)
        logger.info("daily_log %s creado (%s %s), %d posteriores revisados",
                    record_id, scope.tlp_no, day, sweep.examined - 1)
        return dict(row)

    # ---------------------- Update ----------------------

    def update_daily_log(self, ctx: RequestContext, record_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        update = normalize_payload(fields)
        if not update:
            raise InvalidPayload("Sin cambios")

        with self._connection() as con:
            current = LedgerStore(con).get_record(ctx.organization_id, record_id)
            if not current:
                raise NotFound("Registro diario no encontrado")
            old_scope = Scope(ctx.organization_id, current["tlp_no"])
            new_scope = Scope(ctx.organization_id, update.get("tlp_no", current["tlp_no"]))

            with scope_locks(old_scope, new_scope):
                with self._unit_of_work(con):
                    store = LedgerStore(con)
                    # re-read under the lock; a concurrent move to another scope means our locks are wrong
                    current = store.get_record(ctx.organization_id, record_id)
                    if not current:
                        raise NotFound("Registro diario no encontrado")
                    if current["tlp_no"] != old_scope.tlp_no:
                        raise StoreUnavailable("El registro cambió durante la edición, reintente")
                    before = dict(current)
                    changed = {k: v for k, v in update.items() if before.get(k) != v}
                    if not changed:
                        return before
                    store.update_delta(record_id, changed)
                    sweeps = self._propagate_edit(store, record_id, before, changed, old_scope, new_scope)
                    row = store.get_record(ctx.organization_id, record_id)
                    after = dict(row)
                    log_ledger(con, ctx, "UPDATE", record_id, {
                        "action": "UPDATE",
                        "diff": diff_rows(before, after),
                        "sweeps": [s.as_dict() for s in sweeps],
                    })
        logger.info("daily_log %s actualizado: %s", record_id, sorted(changed))
        return after

    def _propagate_edit(self, store, record_id, before, changed, old_scope, new_scope):
        old_date = before["record_date"]
        new_date = changed.get("record_date", old_date)
        if new_scope != old_scope:
            # leaves the old sequence and joins the new one
            return [
                propagate(store, old_scope, old_date, record_id),
                propagate(store, new_scope, new_date, record_id),
            ]
        if new_date != old_date:
            return [propagate(store, old_scope, min(old_date, new_date), record_id)]
        if any(f in changed for f in DELTA_FIELDS):
            return [propagate(store, old_scope, old_date, record_id)]
        return []

    # ---------------------- Delete ----------------------

    def delete_daily_log(self, ctx: RequestContext, record_id: int) -> None:
        with self._connection() as con:
            current = LedgerStore(con).get_record(ctx.organization_id, record_id)
            if not current:
                raise NotFound("Registro diario no encontrado")
            scope = Scope(ctx.organization_id, current["tlp_no"])
            with scope_locks(scope):
                with self._unit_of_work(con):
                    store = LedgerStore(con)
                    current = store.get_record(ctx.organization_id, record_id)
                    if not current or current["tlp_no"] != scope.tlp_no:
                        raise NotFound("Registro diario no encontrado")
                    store.soft_delete(record_id)
                    sweep = propagate(store, scope, current["record_date"], record_id)
                    log_ledger(con, ctx, "DELETE", record_id, {
                        "action": "DELETE", "tlp_no": scope.tlp_no,
                        "record_date": current["record_date"], "sweep": sweep.as_dict(),
                    })
        logger.info("daily_log %s eliminado (lógico), %d posteriores recalculados", record_id, sweep.written)

    # ---------------------- Repair tools ----------------------

    def recalculate(self, ctx: RequestContext, tlp_no: Optional[str] = None) -> Dict[str, Any]:
        with self._connection() as con:
            if tlp_no:
                scopes = [Scope(ctx.organization_id, tlp_no.strip().upper())]
            else:
                scopes = LedgerStore(con).list_scopes(ctx.organization_id)
            results = []
            for scope in scopes:
                with scope_locks(scope):
                    with self._unit_of_work(con):
                        sweep = recompute_scope(LedgerStore(con), scope)
                        log_ledger(con, ctx, "RECALCULATE", None, sweep.as_dict())
                results.append(sweep.as_dict())
        return {"scopes": results}

    def check(self, ctx: RequestContext, tlp_no: Optional[str] = None, strict: bool = False) -> List[Dict[str, Any]]:
        with self._connection() as con:
            store = LedgerStore(con)
            if tlp_no:
                scopes = [Scope(ctx.organization_id, tlp_no.strip().upper())]
            else:
                scopes = store.list_scopes(ctx.organization_id)
            report = []
            for scope in scopes:
                for d in check_scope(store, scope):
                    report.append({
                        "tlp_no": scope.tlp_no, "record_id": d.record_id, "record_date": d.record_date,
                        "stored": d.stored, "expected": d.expected,
                    })
        if strict and report:
            raise InconsistentState(
                f"{len(report)} registros con totales desalineados; ejecutar recálculo", drift=report
            )
        return report

    # ---------------------- Bulk import ----------------------

    def import_csv(self, ctx: RequestContext, file_name: str, content: bytes) -> Dict[str, Any]:
        valid, errors, total_rows = parse_csv_bytes(content)
        earliest: Dict[Scope, str] = {}
        for rec in valid:
            scope = Scope(ctx.organization_id, rec["tlp_no"])
            if scope not in earliest or rec["record_date"] < earliest[scope]:
                earliest[scope] = rec["record_date"]

        inserted = 0
        sweeps = []
        with self._connection() as con, scope_locks(*earliest.keys()):
            with self._unit_of_work(con):
                store = LedgerStore(con)
                for rec in valid:
                    deltas = {k: v for k, v in rec.items() if k not in ("row_index", "tlp_no", "record_date")}
                    store.submit_delta(Scope(ctx.organization_id, rec["tlp_no"]), rec["record_date"], deltas, ctx.user_id)
                    inserted += 1
                for scope, start in sorted(earliest.items()):
                    sweeps.append(propagate(store, scope, start).as_dict())
                log_ledger(con, ctx, "IMPORT", None, {
                    "action": "IMPORT", "file_name": file_name, "total_rows": total_rows,
                    "inserted_rows": inserted, "errors": errors, "sweeps": sweeps,
                })
        logger.info("Importación %s: %d/%d filas, %d errores", file_name, inserted, total_rows, len(errors))
        return {
            "file_name": file_name,
            "total_rows": total_rows,
            "inserted_rows": inserted,
            "errors": errors,
            "sweeps": sweeps,
        }

    @contextmanager
    def _unit_of_work(self, con):
        try:
            with transaction(con):
                yield
        except sqlite3.IntegrityError as e:
            raise InvalidPayload(f"Datos inválidos: {e}") from e
