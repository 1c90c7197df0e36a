from __future__ import annotations

from types import SimpleNamespace

from app.bookops.calculations import capacity_warnings, effective_arr, effective_owner, is_customer


def test_effective_arr_prefers_hierarchy_bookings() -> None:
    assert effective_arr(SimpleNamespace(hierarchy_bookings_arr_converted=900.0, arr=100.0)) == 900.0
    assert effective_arr(SimpleNamespace(hierarchy_bookings_arr_converted=0.0, arr=100.0)) == 100.0
    assert effective_arr(SimpleNamespace(hierarchy_bookings_arr_converted=None, arr=None)) == 0.0


def test_effective_owner_uses_new_owner_when_assigned() -> None:
    assigned = SimpleNamespace(owner_id="r1", owner_name="Rita", new_owner_id="r2", new_owner_name="Ravi")
    unassigned = SimpleNamespace(owner_id="r1", owner_name="Rita", new_owner_id=None, new_owner_name=None)
    assert effective_owner(assigned) == ("r2", "Ravi")
    assert effective_owner(unassigned) == ("r1", "Rita")


def test_is_customer_from_flag_or_arr() -> None:
    assert is_customer(SimpleNamespace(is_customer=True, arr=0.0, hierarchy_bookings_arr_converted=None))
    assert is_customer(SimpleNamespace(is_customer=False, arr=5.0, hierarchy_bookings_arr_converted=None))
    assert not is_customer(SimpleNamespace(is_customer=False, arr=0.0, hierarchy_bookings_arr_converted=None))


def test_capacity_warnings_thresholds() -> None:
    assert capacity_warnings(rep_name="Rita", projected_arr=1_500_000.0, target_arr=1_300_000.0, max_arr=3_000_000.0) == []

    approaching = capacity_warnings(rep_name="Rita", projected_arr=1_600_000.0, target_arr=1_300_000.0, max_arr=3_000_000.0)
    assert [item["type"] for item in approaching] == ["approaching_capacity"]
    assert approaching[0]["severity"] == "medium"

    exceeded = capacity_warnings(rep_name=None, projected_arr=3_500_000.0, target_arr=1_300_000.0, max_arr=3_000_000.0)
    assert [item["type"] for item in exceeded] == ["capacity_exceeded"]
    assert exceeded[0]["message"].startswith("proposed owner would carry 3,500,000 ARR")
