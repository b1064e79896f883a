import pytest

from airlog import db
from airlog.errors import InconsistentState, InvalidPayload
from airlog.recompute import check_scope, compute_totals, propagate, recompute_scope, totals_for_record
from airlog.store import LedgerStore, Scope

from conftest import assert_invariant, landings_sequence

SCOPE = Scope("org-a", "N100")


def _insert(store, day, **deltas):
    return store.submit_delta(SCOPE, day, deltas, created_by="1")


@pytest.fixture
def store(db_path):
    con = db.get_connection()
    yield LedgerStore(con)
    con.close()


def test_compute_totals_sums_every_delta():
    rows = [
        {"hours_flown_airframe": "01:30", "hours_flown_engine": "01:45", "landings": 2, "tc": 1,
         "no_of_starts": 1, "gg_cycle": 3, "ft_cycle": 4},
        {"hours_flown_airframe": "00:45", "hours_flown_engine": None, "landings": None, "tc": 2,
         "no_of_starts": 0, "gg_cycle": 1, "ft_cycle": None},
    ]
    assert compute_totals(rows) == {
        "total_airframe_hr": "2.25",
        "total_engine_hr_tsn": "1.75",
        "total_landings": 2,
        "total_tc": 3,
        "total_no_of_starts": 1,
        "total_gg_cycle_tsn": 4,
        "total_ft_cycle_tsn": 4,
    }


def test_compute_totals_empty_is_zero():
    totals = compute_totals([])
    assert totals["total_airframe_hr"] == "0.00"
    assert totals["total_landings"] == 0


def test_unreadable_stored_hours_is_inconsistent():
    with pytest.raises(InconsistentState):
        compute_totals([{"id": 7, "hours_flown_airframe": "x:y", "hours_flown_engine": None,
                         "landings": None, "tc": None, "no_of_starts": None,
                         "gg_cycle": None, "ft_cycle": None}])


def test_store_ordering_queries(store):
    a = _insert(store, "2024-01-01", landings=1)
    b = _insert(store, "2024-01-02", landings=1)
    c = _insert(store, "2024-01-02", landings=1)
    d = _insert(store, "2024-01-03", landings=1)

    assert store.find_prior_record(SCOPE, "2024-01-02")["id"] == a
    assert store.find_prior_record(SCOPE, "2024-01-02", c)["id"] == b
    assert store.find_prior_record(SCOPE, "2024-01-01") is None
    assert [r["id"] for r in store.find_records_after(SCOPE, "2024-01-02")] == [d]
    assert [r["id"] for r in store.find_records_after(SCOPE, "2024-01-02", b)] == [c, d]
    assert [r["id"] for r in store.find_records_up_to(SCOPE, "2024-01-02")] == [a, b, c]
    assert [r["id"] for r in store.find_records_up_to(SCOPE, "2024-01-02", b)] == [a, b]
    assert store.first_record(SCOPE)["id"] == a


def test_store_ignores_soft_deleted_and_other_scopes(store):
    a = _insert(store, "2024-01-01", landings=1)
    b = _insert(store, "2024-01-02", landings=1)
    store.submit_delta(Scope("org-a", "N200"), "2024-01-01", {"landings": 5}, "1")
    store.submit_delta(Scope("org-b", "N100"), "2024-01-01", {"landings": 5}, "1")
    store.soft_delete(a)
    assert [r["id"] for r in store.find_records_up_to(SCOPE, "2024-12-31")] == [b]


def test_write_computed_totals_rejects_partial(store):
    a = _insert(store, "2024-01-01", landings=1)
    with pytest.raises(ValueError):
        store.write_computed_totals(a, {"total_landings": 1})


def test_update_delta_rejects_totals(store):
    a = _insert(store, "2024-01-01", landings=1)
    with pytest.raises(ValueError):
        store.update_delta(a, {"total_landings": 99})


def test_propagate_writes_running_totals(store):
    _insert(store, "2024-01-01", landings=2, hours_flown_airframe="01:30")
    _insert(store, "2024-01-02", landings=3, hours_flown_airframe="00:30")
    _insert(store, "2024-01-03", landings=1)
    result = propagate(store, SCOPE, "2024-01-01")
    assert (result.examined, result.written) == (3, 3)
    assert landings_sequence("org-a", "N100") == [2, 5, 6]
    assert_invariant("org-a", "N100")


def test_second_sweep_is_idempotent(store):
    for i, n in enumerate([2, 3, 1], start=1):
        _insert(store, f"2024-01-0{i}", landings=n)
    recompute_scope(store, SCOPE)
    before = landings_sequence("org-a", "N100")
    again = recompute_scope(store, SCOPE)
    assert again.examined == 3
    assert again.written == 0
    assert landings_sequence("org-a", "N100") == before


def test_sweep_ignores_stale_stored_totals(store):
    a = _insert(store, "2024-01-01", landings=2)
    b = _insert(store, "2024-01-02", landings=3)
    recompute_scope(store, SCOPE)
    # corrupt the first record's stored totals; a sweep starting later must not read them
    bogus = dict(compute_totals([]), total_landings=100)
    store.write_computed_totals(a, bogus)
    propagate(store, SCOPE, "2024-01-02", b, skip_unchanged=False)
    assert store.get_record("org-a", b)["total_landings"] == 5


def test_check_scope_reports_and_recompute_repairs(store):
    a = _insert(store, "2024-01-01", landings=2)
    _insert(store, "2024-01-02", landings=3)
    recompute_scope(store, SCOPE)
    assert check_scope(store, SCOPE) == []

    store.write_computed_totals(a, dict(compute_totals([]), total_landings=9))
    drift = check_scope(store, SCOPE)
    assert [d.record_id for d in drift] == [a]
    assert drift[0].expected["total_landings"] == 2

    recompute_scope(store, SCOPE)
    assert check_scope(store, SCOPE) == []
    assert_invariant("org-a", "N100")


def test_totals_for_record_matches_sweep(store):
    _insert(store, "2024-01-01", landings=2)
    b = _insert(store, "2024-01-02", landings=3)
    row = store.get_record("org-a", b)
    assert totals_for_record(store, SCOPE, row)["total_landings"] == 5


def test_recompute_empty_scope(store):
    result = recompute_scope(store, SCOPE)
    assert (result.examined, result.written) == (0, 0)


def test_running_total_past_storage_range_is_inconsistent(store):
    # each delta fits in an INTEGER column, their sum does not
    _insert(store, "2024-01-01", landings=2 ** 62)
    _insert(store, "2024-01-02", landings=2 ** 62)
    with pytest.raises(InconsistentState):
        recompute_scope(store, SCOPE)


def test_oversized_delta_is_invalid(store):
    with pytest.raises(InvalidPayload):
        _insert(store, "2024-01-01", landings=10 ** 19)
