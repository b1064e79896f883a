import sqlite3
from contextlib import contextmanager
from decimal import Decimal

import pytest

from airlog import db
from airlog.auth import RequestContext
from airlog.service import DailyLogService
from airlog.utils import COUNT_FIELDS, HOUR_FIELDS, format_hours, hhmm_to_hours


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "airlog-test.sqlite"
    monkeypatch.setattr(db, "DB_PATH", path)
    with db.connect() as con:
        db.init_schema(con)
    return path


@pytest.fixture
def svc(db_path):
    return DailyLogService()


@pytest.fixture
def ctx():
    return RequestContext(user_id=1, username="admin", organization_id="org-a")


@pytest.fixture
def other_org_ctx():
    return RequestContext(user_id=2, username="other", organization_id="org-b")


def active_rows(organization_id, tlp_no):
    with db.connect() as con:
        rows = con.execute(
            "SELECT * FROM daily_log WHERE organization_id=? AND tlp_no=? AND status=1 "
            "ORDER BY record_date, id",
            (organization_id, tlp_no),
        ).fetchall()
    return [dict(r) for r in rows]


def assert_invariant(organization_id, tlp_no):
    """Every active record's totals equal the brute-force sum of deltas up to it."""
    rows = active_rows(organization_id, tlp_no)
    for i, row in enumerate(rows):
        prefix = rows[: i + 1]
        for delta, total in HOUR_FIELDS.items():
            expected = format_hours(sum((hhmm_to_hours(r[delta]) for r in prefix), Decimal(0)))
            assert row[total] == expected, (row["id"], total)
        for delta, total in COUNT_FIELDS.items():
            expected = sum(r[delta] or 0 for r in prefix)
            assert row[total] == expected, (row["id"], total)


def landings_sequence(organization_id, tlp_no):
    return [r["total_landings"] for r in active_rows(organization_id, tlp_no)]


def _deny_total_writes(action, arg1, arg2, dbname, source):
    if action == sqlite3.SQLITE_UPDATE and arg1 == "daily_log" and arg2 == "total_landings":
        return sqlite3.SQLITE_DENY
    return sqlite3.SQLITE_OK


@contextmanager
def totals_write_denied():
    """connect() variant whose connection refuses to write running totals."""
    con = db.get_connection()
    con.set_authorizer(_deny_total_writes)
    try:
        yield con
    finally:
        con.close()
