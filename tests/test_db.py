import sqlite3

import pytest

from airlog import db
from airlog.errors import StoreUnavailable


@pytest.fixture
def no_backoff(monkeypatch):
    delays = []
    monkeypatch.setattr(db.time, "sleep", delays.append)
    return delays


def _flaky_connect(monkeypatch, failures, message="database is locked"):
    real_connect = sqlite3.connect
    calls = {"n": 0}

    def connect(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise sqlite3.OperationalError(message)
        return real_connect(*args, **kwargs)

    monkeypatch.setattr(db.sqlite3, "connect", connect)
    return calls


def test_locked_database_is_retried(db_path, monkeypatch, no_backoff):
    calls = _flaky_connect(monkeypatch, failures=2)
    con = db.get_connection()
    try:
        assert con.execute("SELECT 1").fetchone()[0] == 1
    finally:
        con.close()
    assert calls["n"] == 3
    assert no_backoff == [0.1, 0.2]


def test_gives_up_after_retries(db_path, monkeypatch, no_backoff):
    calls = _flaky_connect(monkeypatch, failures=10)
    with pytest.raises(StoreUnavailable):
        db.get_connection()
    assert calls["n"] == db.DB_CONNECT_RETRIES


def test_other_errors_are_not_retried(db_path, monkeypatch, no_backoff):
    calls = _flaky_connect(monkeypatch, failures=1, message="unable to open database file")
    with pytest.raises(StoreUnavailable):
        db.get_connection()
    assert calls["n"] == 1
    assert no_backoff == []


def test_transaction_rolls_back_on_error(db_path):
    with db.connect() as con:
        with pytest.raises(RuntimeError):
            with db.transaction(con):
                con.execute(
                    "INSERT INTO daily_log(organization_id, tlp_no, record_date, created_by) VALUES (?,?,?,?)",
                    ("org-a", "N100", "2024-01-01", "1"),
                )
                raise RuntimeError("boom")
        assert con.execute("SELECT COUNT(*) FROM daily_log").fetchone()[0] == 0
