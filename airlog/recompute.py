"""
Totals recomputation for daily_log.

Totals are always rebuilt from delta columns (whole-history summation), never
from another record's stored totals, so a sweep is idempotent and repairs
any drift it walks over. A sweep seeds its running sum with the deltas of
every record before its start key and walks forward in (record_date, id)
order, writing each record's totals.
"""
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .errors import InconsistentState
from .store import LedgerStore, Scope
from .utils import HOUR_FIELDS, COUNT_FIELDS, TOTAL_FIELDS, hhmm_to_hours, format_hours

logger = logging.getLogger(__name__)

SKIP_UNCHANGED = os.getenv("LEDGER_SKIP_UNCHANGED", "true").lower() in ("1", "true", "yes")


class RunningTotals:
    def __init__(self):
        self.hours = {f: Decimal(0) for f in HOUR_FIELDS}
        self.counts = {f: 0 for f in COUNT_FIELDS}

    def add(self, row) -> None:
        for f in HOUR_FIELDS:
            try:
                self.hours[f] += hhmm_to_hours(row[f])
            except ValueError as e:
                rid = row["id"] if "id" in row.keys() else None
                raise InconsistentState(f"Registro {rid}: {f} ilegible ({e})") from e
        for f in COUNT_FIELDS:
            self.counts[f] += int(row[f] or 0)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for delta, total in HOUR_FIELDS.items():
            out[total] = format_hours(self.hours[delta])
        for delta, total in COUNT_FIELDS.items():
            out[total] = self.counts[delta]
        return out


@dataclass
class SweepResult:
    organization_id: str
    tlp_no: str
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    examined: int = 0
    written: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "tlp_no": self.tlp_no,
            "from_date": self.from_date,
            "to_date": self.to_date,
            "examined": self.examined,
            "written": self.written,
        }


@dataclass
class Drift:
    record_id: int
    record_date: str
    stored: Dict[str, Any] = field(default_factory=dict)
    expected: Dict[str, Any] = field(default_factory=dict)


def compute_totals(rows: Iterable) -> Dict[str, Any]:
    acc = RunningTotals()
    for r in rows:
        acc.add(r)
    return acc.as_dict()


def stored_totals(row) -> Dict[str, Any]:
    return {f: row[f] for f in TOTAL_FIELDS}


def totals_for_record(store: LedgerStore, scope: Scope, record) -> Dict[str, Any]:
    return compute_totals(store.find_records_up_to(scope, record["record_date"], record["id"]))


def propagate(
    store: LedgerStore,
    scope: Scope,
    from_date: str,
    from_id: Optional[int] = None,
    skip_unchanged: Optional[bool] = None,
) -> SweepResult:
    """
    Recompute every active record in scope whose key is >= (from_date, from_id),
    ascending. With from_id=None the sweep starts at the first record on
    from_date.
    """
    if skip_unchanged is None:
        skip_unchanged = SKIP_UNCHANGED
    result = SweepResult(scope.organization_id, scope.tlp_no)
    acc = RunningTotals()
    for r in store.deltas_before(scope, from_date, from_id):
        acc.add(r)
    for row in store.find_records_from(scope, from_date, from_id):
        acc.add(row)
        totals = acc.as_dict()
        result.examined += 1
        if result.from_date is None:
            result.from_date = row["record_date"]
        result.to_date = row["record_date"]
        if skip_unchanged and stored_totals(row) == totals:
            continue
        store.write_computed_totals(row["id"], totals)
        result.written += 1
        logger.debug("daily_log %s recalculado: %s", row["id"], totals)
    logger.info(
        "Barrido %s/%s desde %s: %d revisados, %d escritos",
        scope.organization_id, scope.tlp_no, from_date, result.examined, result.written,
    )
    return result


def recompute_scope(store: LedgerStore, scope: Scope, skip_unchanged: Optional[bool] = None) -> SweepResult:
    first = store.first_record(scope)
    if first is None:
        return SweepResult(scope.organization_id, scope.tlp_no)
    return propagate(store, scope, first["record_date"], first["id"], skip_unchanged=skip_unchanged)


def check_scope(store: LedgerStore, scope: Scope) -> List[Drift]:
    """Compare stored totals with recomputed ones; writes nothing."""
    first = store.first_record(scope)
    if first is None:
        return []
    drift: List[Drift] = []
    acc = RunningTotals()
    for row in store.find_records_from(scope, first["record_date"], first["id"]):
        acc.add(row)
        expected = acc.as_dict()
        stored = stored_totals(row)
        if stored != expected:
            drift.append(Drift(row["id"], row["record_date"], stored, expected))
    if drift:
        logger.warning(
            "Totales desalineados en %s/%s: %d registros (primero %s)",
            scope.organization_id, scope.tlp_no, len(drift), drift[0].record_date,
        )
    return drift
