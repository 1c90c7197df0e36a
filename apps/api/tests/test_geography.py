from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.bookops import geography


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  germany ", "DACH"),
        ("United States", "AMER"),
        ("worldwide", "Global"),
        ("north east", "North East"),
        ("Atlantis", "Atlantis"),
        ("   ", None),
        (None, None),
    ],
)
def test_normalize_location(raw: str | None, expected: str | None) -> None:
    assert geography.normalize_location(raw) == expected


def test_ancestry_walks_up_to_global() -> None:
    assert geography.ancestry("Singapore") == ["Southeast Asia", "APAC", "Global"]
    assert geography.ancestry("EMEA") == ["EMEA", "Global"]
    assert geography.ancestry("Atlantis") == ["Atlantis"]
    assert geography.ancestry(None) == []


@pytest.mark.parametrize(
    ("account_geo", "rep_region", "expected"),
    [
        ("West", "west", geography.SCORE_EXACT),
        ("France", "UK", geography.SCORE_SIBLING),
        ("West", "AMER", geography.SCORE_PARENT),
        ("EMEA", "Nordics", geography.SCORE_PARENT),
        ("Japan", "Global", geography.SCORE_GLOBAL),
        ("Japan", "DACH", geography.SCORE_CROSS_REGION),
        ("AMER", "APAC", geography.SCORE_CROSS_REGION),
        ("Atlantis", "West", 0.0),
        (None, "West", 0.0),
        ("West", None, 0.0),
    ],
)
def test_match_score_levels(account_geo: str | None, rep_region: str | None, expected: float) -> None:
    assert geography.match_score(account_geo, rep_region) == expected


def test_effective_geography_prefers_most_specific_non_blank_field() -> None:
    account = SimpleNamespace(sales_territory="  ", hq_country="Germany", geo="EMEA")
    assert geography.effective_geography(account) == "Germany"
    assert geography.effective_geography(SimpleNamespace(sales_territory="West", hq_country="Germany", geo=None)) == "West"
    assert geography.effective_geography(SimpleNamespace(sales_territory=None, hq_country="", geo=None)) is None


def test_describe_score() -> None:
    assert geography.describe_score(1.0) == "exact geography match"
    assert geography.describe_score(0.85) == "same parent region"
    assert geography.describe_score(0.65) == "parent region match"
    assert geography.describe_score(0.4) == "global coverage"
    assert geography.describe_score(0.2) == "cross-region"
    assert geography.describe_score(0.0) == "no geography match"
