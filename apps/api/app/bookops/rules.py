from __future__ import annotations

from fastapi import HTTPException, status

MANUAL_HOLDOVER = "manual_holdover"
PE_FIRM = "pe_firm"
GEOGRAPHY = "geography"
ARR_BALANCE = "arr_balance"
CONTINUITY = "continuity"
PARENT_ALIGNMENT = "parent_alignment"
OUT_OF_SCOPE = "out_of_scope"

RULE_DESCRIPTIONS: dict[str, str] = {
    MANUAL_HOLDOVER: "Locked account keeps its current owner",
    PE_FIRM: "Rep covers the account's PE firm",
    GEOGRAPHY: "Rep region matches the account geography",
    ARR_BALANCE: "Geo-compatible rep with capacity headroom",
    CONTINUITY: "Current owner retained",
}

DEFAULT_PRIORITY_ORDER: tuple[str, ...] = (MANUAL_HOLDOVER, PE_FIRM, GEOGRAPHY, ARR_BALANCE, CONTINUITY)

OUT_OF_SCOPE_OWNER_NAME = "[OUT OF SCOPE]"


def resolve_priority_order(priority_config: list[str] | None) -> list[str]:
    if not priority_config:
        return list(DEFAULT_PRIORITY_ORDER)

    unknown = [rule for rule in priority_config if rule not in RULE_DESCRIPTIONS]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "unknown priority rules", "rules": unknown},
        )
    if len(set(priority_config)) != len(priority_config):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="duplicate priority rules")
    return list(priority_config)
