"""
Ledger Store: ordered access to daily_log rows within one scope.

A scope is (organization_id, tlp_no). Rows are ordered by (record_date, id);
id is the insertion sequence and breaks ties between same-date records.
The store never commits, callers wrap it in db.transaction().
"""
import logging
import math
import sqlite3
from functools import wraps
from typing import Any, Dict, List, NamedTuple, Optional

from .errors import InconsistentState, InvalidPayload, StoreUnavailable
from .utils import DELTA_FIELDS, TOTAL_FIELDS, TEXT_FIELDS, SCOPE_FIELDS

logger = logging.getLogger(__name__)

_ACTIVE_SCOPE = "organization_id=:org AND tlp_no=:tlp AND status=1"
_ORDER_ASC = "ORDER BY record_date ASC, id ASC"
_ORDER_DESC = "ORDER BY record_date DESC, id DESC"
_WRITABLE_FIELDS = set(DELTA_FIELDS) | TEXT_FIELDS | SCOPE_FIELDS


class Scope(NamedTuple):
    organization_id: str
    tlp_no: str


def _before_key(key_id: Optional[int]) -> str:
    # strictly before (:d, :key_id); date only when no id is given
    if key_id is None:
        return "record_date < :d"
    return "(record_date < :d OR (record_date = :d AND id < :key_id))"


def _storage_errors(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OverflowError as e:
            raise InvalidPayload(f"Valor fuera del rango de almacenamiento: {e}") from e
        except sqlite3.IntegrityError:
            raise
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
            logger.error("Fallo de almacenamiento en %s: %s", fn.__name__, e)
            raise StoreUnavailable(f"Almacenamiento no disponible: {e}") from e
    return wrapper


class LedgerStore:
    def __init__(self, con: sqlite3.Connection):
        self.con = con

    def _params(self, scope: Scope, **extra) -> Dict[str, Any]:
        return {"org": scope.organization_id, "tlp": scope.tlp_no, **extra}

    # ---------------------- Reads used by the engine ----------------------

    @_storage_errors
    def find_prior_record(self, scope: Scope, before_date: str, before_id: Optional[int] = None):
        sql = (
            f"SELECT * FROM daily_log WHERE {_ACTIVE_SCOPE} AND {_before_key(before_id)} "
            f"{_ORDER_DESC} LIMIT 1"
        )
        return self.con.execute(sql, self._params(scope, d=before_date, key_id=before_id)).fetchone()

    @_storage_errors
    def find_records_after(self, scope: Scope, after_date: str, after_id: Optional[int] = None) -> List[sqlite3.Row]:
        if after_id is None:
            cond = "record_date > :d"
        else:
            cond = "(record_date > :d OR (record_date = :d AND id > :key_id))"
        sql = f"SELECT * FROM daily_log WHERE {_ACTIVE_SCOPE} AND {cond} {_ORDER_ASC}"
        return self.con.execute(sql, self._params(scope, d=after_date, key_id=after_id)).fetchall()

    @_storage_errors
    def find_records_up_to(self, scope: Scope, upto_date: str, upto_id: Optional[int] = None) -> List[sqlite3.Row]:
        if upto_id is None:
            cond = "record_date <= :d"
        else:
            cond = "(record_date < :d OR (record_date = :d AND id <= :key_id))"
        sql = f"SELECT * FROM daily_log WHERE {_ACTIVE_SCOPE} AND {cond} {_ORDER_ASC}"
        return self.con.execute(sql, self._params(scope, d=upto_date, key_id=upto_id)).fetchall()

    @_storage_errors
    def find_records_from(self, scope: Scope, from_date: str, from_id: Optional[int] = None) -> List[sqlite3.Row]:
        if from_id is None:
            cond = "record_date >= :d"
        else:
            cond = "(record_date > :d OR (record_date = :d AND id >= :key_id))"
        sql = f"SELECT * FROM daily_log WHERE {_ACTIVE_SCOPE} AND {cond} {_ORDER_ASC}"
        return self.con.execute(sql, self._params(scope, d=from_date, key_id=from_id)).fetchall()

    @_storage_errors
    def deltas_before(self, scope: Scope, before_date: str, before_id: Optional[int] = None) -> List[sqlite3.Row]:
        """Delta columns of every active record strictly before the key, ascending."""
        cols = ", ".join(DELTA_FIELDS)
        sql = (
            f"SELECT {cols} FROM daily_log WHERE {_ACTIVE_SCOPE} AND {_before_key(before_id)} "
            f"{_ORDER_ASC}"
        )
        return self.con.execute(sql, self._params(scope, d=before_date, key_id=before_id)).fetchall()

    @_storage_errors
    def first_record(self, scope: Scope):
        sql = f"SELECT * FROM daily_log WHERE {_ACTIVE_SCOPE} {_ORDER_ASC} LIMIT 1"
        return self.con.execute(sql, self._params(scope)).fetchone()

    # ---------------------- Writes ----------------------

    @_storage_errors
    def write_computed_totals(self, record_id: int, totals: Dict[str, Any]) -> None:
        # Only the recomputation engine calls this; delta columns are untouched.
        missing = [f for f in TOTAL_FIELDS if f not in totals]
        if missing:
            raise ValueError(f"Totales incompletos: {missing}")
        sets = ", ".join(f"{f}=:{f}" for f in TOTAL_FIELDS)
        try:
            self.con.execute(
                f"UPDATE daily_log SET {sets}, updated_at=datetime('now') WHERE id=:id",
                {**{f: totals[f] for f in TOTAL_FIELDS}, "id": record_id},
            )
        except OverflowError as e:
            raise InconsistentState(f"Registro {record_id}: total fuera del rango de almacenamiento") from e

    @_storage_errors
    def submit_delta(self, scope: Scope, record_date: str, deltas: Dict[str, Any], created_by: str) -> int:
        values = {k: v for k, v in deltas.items() if k in set(DELTA_FIELDS) | TEXT_FIELDS}
        data = {
            "organization_id": scope.organization_id,
            "tlp_no": scope.tlp_no,
            "record_date": record_date,
            "created_by": str(created_by),
            **values,
        }
        cols = ",".join(data.keys())
        vals = ":" + ",:".join(data.keys())
        cur = self.con.execute(f"INSERT INTO daily_log({cols}) VALUES ({vals})", data)
        return cur.lastrowid

    @_storage_errors
    def update_delta(self, record_id: int, fields: Dict[str, Any]) -> None:
        bad = [k for k in fields if k not in _WRITABLE_FIELDS]
        if bad:
            raise ValueError(f"Campos no editables: {bad}")
        if not fields:
            return
        sets = ", ".join(f"{k}=:{k}" for k in fields)
        self.con.execute(
            f"UPDATE daily_log SET {sets}, updated_at=datetime('now') WHERE id=:id",
            {**fields, "id": record_id},
        )

    @_storage_errors
    def soft_delete(self, record_id: int) -> None:
        self.con.execute(
            "UPDATE daily_log SET status=0, updated_at=datetime('now') WHERE id=?",
            (record_id,),
        )

    # ---------------------- Lookups / listings ----------------------

    @_storage_errors
    def get_record(self, organization_id: str, record_id: int, include_deleted: bool = False):
        sql = "SELECT * FROM daily_log WHERE id=? AND organization_id=?"
        if not include_deleted:
            sql += " AND status=1"
        return self.con.execute(sql, (record_id, organization_id)).fetchone()

    @_storage_errors
    def list_records(
        self,
        organization_id: str,
        tlp_no: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        where = ["organization_id=:org"]
        params: Dict[str, Any] = {"org": organization_id, "limit": limit, "offset": offset}
        if tlp_no:
            where.append("LOWER(tlp_no) LIKE :tlp")
            params["tlp"] = f"%{tlp_no.lower()}%"
        if date_from:
            where.append("record_date >= :date_from")
            params["date_from"] = date_from
        if date_to:
            where.append("record_date <= :date_to")
            params["date_to"] = date_to
        cond = " AND ".join(where)
        rows = self.con.execute(
            f"SELECT *, COUNT(*) OVER() AS total_count FROM v_daily_log_active WHERE {cond} "
            f"{_ORDER_DESC} LIMIT :limit OFFSET :offset",
            params,
        ).fetchall()
        total = rows[0]["total_count"] if rows else 0
        out = []
        for r in rows:
            d = dict(r)
            d.pop("total_count", None)
            out.append(d)
        return {"list": out, "total_count": total, "total_pages": math.ceil(total / limit) if limit else 0}

    @_storage_errors
    def list_scopes(self, organization_id: str) -> List[Scope]:
        rows = self.con.execute(
            "SELECT DISTINCT tlp_no FROM daily_log WHERE organization_id=? AND status=1 ORDER BY tlp_no",
            (organization_id,),
        ).fetchall()
        return [Scope(organization_id, r["tlp_no"]) for r in rows]
