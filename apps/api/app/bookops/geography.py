"""Region hierarchy and geography matching for account and rep territories.

Accounts carry three geography fields, most specific first: ``sales_territory``,
``hq_country`` and ``geo``. The first non-blank value is the account's effective
geography. Reps carry a single ``region``. Both are resolved to a node of
``REGION_HIERARCHY`` (a sub-region, a region or ``Global``) before scoring.
"""

from __future__ import annotations

from typing import Any

GLOBAL = "Global"

REGION_HIERARCHY: dict[str, list[str]] = {
    "AMER": ["North East", "South East", "Central", "West"],
    "EMEA": ["UK", "DACH", "France", "Nordics", "Southern Europe", "Benelux", "Middle East", "Africa"],
    "APAC": ["ANZ", "Japan", "Southeast Asia", "India", "Greater China", "Korea"],
}

SCORE_EXACT = 1.0
SCORE_SIBLING = 0.85
SCORE_PARENT = 0.65
SCORE_GLOBAL = 0.40
SCORE_CROSS_REGION = 0.20
GEO_COMPATIBLE_THRESHOLD = SCORE_GLOBAL

GEOGRAPHY_FIELDS = ("sales_territory", "hq_country", "geo")

_PARENT_BY_SUB_REGION: dict[str, str] = {
    sub_region: region for region, sub_regions in REGION_HIERARCHY.items() for sub_region in sub_regions
}

_REGION_ALIASES: dict[str, str] = {
    "global": GLOBAL,
    "worldwide": GLOBAL,
    "ww": GLOBAL,
    "amer": "AMER",
    "americas": "AMER",
    "na": "AMER",
    "north america": "AMER",
    "latam": "AMER",
    "emea": "EMEA",
    "europe": "EMEA",
    "eu": "EMEA",
    "apac": "APAC",
    "apj": "APAC",
    "asia pacific": "APAC",
    "northeast": "North East",
    "southeast": "South East",
    "united kingdom": "UK",
    "great britain": "UK",
    "gb": "UK",
    "ireland": "UK",
    "germany": "DACH",
    "austria": "DACH",
    "switzerland": "DACH",
    "sweden": "Nordics",
    "norway": "Nordics",
    "denmark": "Nordics",
    "finland": "Nordics",
    "iceland": "Nordics",
    "spain": "Southern Europe",
    "italy": "Southern Europe",
    "portugal": "Southern Europe",
    "greece": "Southern Europe",
    "netherlands": "Benelux",
    "belgium": "Benelux",
    "luxembourg": "Benelux",
    "united arab emirates": "Middle East",
    "uae": "Middle East",
    "saudi arabia": "Middle East",
    "israel": "Middle East",
    "qatar": "Middle East",
    "south africa": "Africa",
    "nigeria": "Africa",
    "kenya": "Africa",
    "egypt": "Africa",
    "australia": "ANZ",
    "new zealand": "ANZ",
    "singapore": "Southeast Asia",
    "malaysia": "Southeast Asia",
    "indonesia": "Southeast Asia",
    "thailand": "Southeast Asia",
    "vietnam": "Southeast Asia",
    "philippines": "Southeast Asia",
    "china": "Greater China",
    "hong kong": "Greater China",
    "taiwan": "Greater China",
    "south korea": "Korea",
    "republic of korea": "Korea",
    "united states": "AMER",
    "united states of america": "AMER",
    "usa": "AMER",
    "us": "AMER",
    "canada": "AMER",
    "mexico": "AMER",
    "brazil": "AMER",
}

_NODE_LOOKUP: dict[str, str] = {
    GLOBAL.lower(): GLOBAL,
    **{region.lower(): region for region in REGION_HIERARCHY},
    **{sub_region.lower(): sub_region for sub_region in _PARENT_BY_SUB_REGION},
    **_REGION_ALIASES,
}


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def effective_geography(account: Any) -> str | None:
    for field_name in GEOGRAPHY_FIELDS:
        value = _clean(getattr(account, field_name, None))
        if value is not None:
            return value
    return None


def normalize_location(value: str | None) -> str | None:
    cleaned = _clean(value)
    if cleaned is None:
        return None
    return _NODE_LOOKUP.get(cleaned.lower(), cleaned)


def is_known_node(node: str | None) -> bool:
    return node is not None and (node == GLOBAL or node in REGION_HIERARCHY or node in _PARENT_BY_SUB_REGION)


def parent_of(node: str | None) -> str | None:
    if node is None or node == GLOBAL:
        return None
    if node in _PARENT_BY_SUB_REGION:
        return _PARENT_BY_SUB_REGION[node]
    if node in REGION_HIERARCHY:
        return GLOBAL
    return None


def ancestry(value: str | None) -> list[str]:
    """Return the chain from the resolved node up to ``Global``."""
    node = normalize_location(value)
    if node is None:
        return []
    chain = [node]
    parent = parent_of(node)
    while parent is not None:
        chain.append(parent)
        parent = parent_of(parent)
    return chain


def match_score(account_geography: str | None, rep_region: str | None) -> float:
    account_node = normalize_location(account_geography)
    rep_node = normalize_location(rep_region)
    if account_node is None or rep_node is None:
        return 0.0

    if account_node.lower() == rep_node.lower():
        return SCORE_EXACT
    if rep_node == GLOBAL:
        return SCORE_GLOBAL
    if not is_known_node(account_node) or not is_known_node(rep_node):
        return 0.0

    account_parent = parent_of(account_node)
    rep_parent = parent_of(rep_node)
    if account_node in _PARENT_BY_SUB_REGION and rep_node in _PARENT_BY_SUB_REGION and account_parent == rep_parent:
        return SCORE_SIBLING
    if rep_node == account_parent or account_node == rep_parent:
        return SCORE_PARENT
    return SCORE_CROSS_REGION


def describe_score(score: float) -> str:
    if score >= SCORE_EXACT:
        return "exact geography match"
    if score >= SCORE_SIBLING:
        return "same parent region"
    if score >= SCORE_PARENT:
        return "parent region match"
    if score >= SCORE_GLOBAL:
        return "global coverage"
    if score > 0:
        return "cross-region"
    return "no geography match"
