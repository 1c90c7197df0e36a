from __future__ import annotations

import pytest
from fastapi import HTTPException

from app.bookops.field_mapping import (
    aliases_for,
    required_fields,
    suggest_mappings,
    summarize_mappings,
    to_field_mapping,
)


def test_exact_aliases_map_with_full_confidence() -> None:
    headers = ["Account ID (18)", "Account Name", "Bookings Account ARR", "ROE Sales Territory"]
    mappings = suggest_mappings(headers, "accounts")

    assert {header: match.schema_field for header, match in mappings.items()} == {
        "Account ID (18)": "sfdc_account_id",
        "Account Name": "account_name",
        "Bookings Account ARR": "arr",
        "ROE Sales Territory": "sales_territory",
    }
    assert {match.match_type for match in mappings.values()} == {"exact"}
    assert {match.confidence for match in mappings.values()} == {1.0}


def test_pattern_pass_handles_unlisted_owner_headers() -> None:
    mappings = suggest_mappings(["Account ID", "Account Name", "Primary Owner Full Name", "Primary Owner User Id"], "accounts")

    assert mappings["Primary Owner Full Name"].schema_field == "owner_name"
    assert mappings["Primary Owner Full Name"].match_type == "pattern"
    assert mappings["Primary Owner User Id"].schema_field == "owner_id"
    assert mappings["Primary Owner User Id"].confidence == 0.7


def test_partial_and_fuzzy_matches() -> None:
    mappings = suggest_mappings(["Renewal", "Acount Nme"], "accounts")

    assert mappings["Renewal"].schema_field == "renewal_date"
    assert mappings["Renewal"].match_type == "partial"
    assert mappings["Renewal"].confidence == 0.8

    fuzzy = mappings["Acount Nme"]
    assert fuzzy.schema_field == "account_name"
    assert fuzzy.match_type == "fuzzy"
    assert 0.5 <= fuzzy.confidence < 0.6


def test_each_schema_field_is_claimed_once() -> None:
    mappings = suggest_mappings(["Account ID", "AccountID"], "accounts")

    assert mappings["Account ID"].schema_field == "sfdc_account_id"
    assert [match.schema_field for match in mappings.values()].count("sfdc_account_id") == 1


def test_sales_rep_headers() -> None:
    mappings = suggest_mappings(["Rep_ID", "Name", "FLM", "SLM", "Region", "PE Firms"], "sales_reps")

    assert to_field_mapping(mappings) == {
        "rep_id": "Rep_ID",
        "name": "Name",
        "flm": "FLM",
        "slm": "SLM",
        "region": "Region",
        "pe_firms": "PE Firms",
    }


def test_summary_reports_missing_required_fields() -> None:
    headers = ["Account Name", "Zq9"]
    summary = summarize_mappings(headers, suggest_mappings(headers, "accounts"), "accounts")

    assert summary["total_headers"] == 2
    assert summary["total_mapped"] == 1
    assert summary["unmapped_headers"] == ["Zq9"]
    assert summary["high_confidence"] == 1
    assert summary["required_fields_total"] == len(required_fields("accounts")) == 2
    assert summary["missing_required_fields"] == ["sfdc_account_id"]


def test_unknown_entity_is_rejected() -> None:
    with pytest.raises(HTTPException) as raised:
        aliases_for("widgets")
    assert raised.value.status_code == 422
