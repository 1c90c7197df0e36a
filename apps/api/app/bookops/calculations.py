from __future__ import annotations

from typing import Any

APPROACHING_CAPACITY_FACTOR = 1.2


def effective_arr(account: Any) -> float:
    """Hierarchy bookings ARR when present and non-zero, otherwise raw ARR."""
    for field_name in ("hierarchy_bookings_arr_converted", "arr"):
        value = getattr(account, field_name, None)
        if value:
            return float(value)
    return 0.0


def effective_owner(account: Any) -> tuple[str | None, str | None]:
    if getattr(account, "new_owner_id", None):
        return account.new_owner_id, account.new_owner_name
    return account.owner_id, account.owner_name


def is_customer(account: Any) -> bool:
    return bool(getattr(account, "is_customer", False)) or effective_arr(account) > 0


def capacity_warnings(
    *,
    rep_name: str | None,
    projected_arr: float,
    target_arr: float,
    max_arr: float,
) -> list[dict[str, Any]]:
    label = rep_name or "proposed owner"
    if projected_arr > max_arr:
        return [
            {
                "type": "capacity_exceeded",
                "severity": "high",
                "message": f"{label} would carry {projected_arr:,.0f} ARR, above the {max_arr:,.0f} maximum",
                "projected_arr": projected_arr,
            }
        ]
    if projected_arr > target_arr * APPROACHING_CAPACITY_FACTOR:
        return [
            {
                "type": "approaching_capacity",
                "severity": "medium",
                "message": f"{label} would carry {projected_arr:,.0f} ARR, above 120% of the {target_arr:,.0f} target",
                "projected_arr": projected_arr,
            }
        ]
    return []
