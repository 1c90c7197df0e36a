from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any, Literal

from fastapi import HTTPException, status

EntityKind = Literal["accounts", "opportunities", "sales_reps"]

EXACT_CONFIDENCE = 1.0
PARTIAL_CONFIDENCE = 0.8
PATTERN_CONFIDENCE = 0.7
FUZZY_THRESHOLD = 0.6
FUZZY_SCALE = 0.6
MIN_ACCEPTED_CONFIDENCE = 0.5


@dataclass(frozen=True, slots=True)
class FieldAlias:
    schema_field: str
    aliases: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...]
    required: bool = False


@dataclass(frozen=True, slots=True)
class MappingMatch:
    schema_field: str
    confidence: float
    match_type: str


def _alias(schema_field: str, aliases: list[str], patterns: list[str], required: bool = False) -> FieldAlias:
    return FieldAlias(
        schema_field=schema_field,
        aliases=tuple(aliases),
        patterns=tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns),
        required=required,
    )


ACCOUNT_FIELD_ALIASES: tuple[FieldAlias, ...] = (
    _alias(
        "sfdc_account_id",
        [
            "Account ID (18)", "Account_ID", "AccountID", "Account ID", "Acct_ID", "SFDC_Account_ID", "AccountId",
            "Account_Id", "acc_id", "account_identifier", "sf_account_id", "salesforce_account_id",
        ],
        [r".*account.*id.*", r".*acct.*id.*", r".*acc.*id.*"],
        required=True,
    ),
    _alias(
        "account_name",
        [
            "Account Name", "Account_Name", "AccountName", "Company Name", "Acct_Name", "Company_Name",
            "account_name", "company", "organization", "org_name", "customer_name", "client_name", "business_name",
        ],
        [r".*account.*name.*", r".*company.*name.*", r".*org.*name.*"],
        required=True,
    ),
    _alias(
        "ultimate_parent_id",
        [
            "Financial Ultimate Parent: Account ID (18)", "Ultimate_Parent_Id", "UltimateParentId", "Parent_Account_ID",
            "Ultimate Parent Id", "ultimate_parent_id", "parent_account_id", "global_parent_id",
            "corporate_parent_id", "holding_company_id", "Ultimate parent 18 Digit ID",
        ],
        [r".*parent.*id.*", r".*ultimate.*id.*"],
    ),
    _alias(
        "ultimate_parent_name",
        [
            "Financial Ultimate Parent: Account Name", "Ultimate_Parent_Name", "UltimateParentName",
            "Parent_Account_Name", "Parent_Name", "Ultimate Parent Name", "ultimate_parent_name",
            "parent_account_name", "parent_name", "global_parent_name", "corporate_parent_name",
        ],
        [r".*parent.*name.*", r".*ultimate.*name.*"],
    ),
    _alias(
        "owner_name",
        [
            "Account Owner: Full Name", "Owner_Full_Name", "Account_Owner", "Sales_Rep", "Rep_Name", "Owner_Name",
            "Owner Full Name", "account_owner", "sales_rep", "rep_name", "owner_name", "sales_person",
            "account_manager", "relationship_manager", "sales_owner",
        ],
        [r".*owner.*(?:full\s*)?name.*", r".*sales.*rep(?!.*id).*", r".*account.*manager(?!.*id).*"],
    ),
    _alias(
        "owner_id",
        [
            "Account Owner User ID", "Owner_ID", "OwnerId", "Account_Owner_ID", "Sales_Rep_ID", "Rep_ID", "Owner ID",
            "owner_id", "account_owner_id", "sales_rep_id", "rep_id", "sales_person_id", "account_manager_id",
            "relationship_manager_id", "Account Owner: User ID",
        ],
        [r".*owner.*id.*", r".*sales.*rep.*id.*", r".*rep.*id(?!.*name).*"],
    ),
    _alias(
        "hq_country",
        [
            "HQ Country", "Billing_Country", "HQ_Country", "Country", "Headquarters_Country",
            "Billing Country (HQ Country)", "billing_country", "hq_country", "country", "headquarters_country",
            "primary_country", "main_country", "base_country", "location_country",
        ],
        [r".*country.*", r".*billing.*country.*", r".*hq.*country.*"],
    ),
    _alias(
        "sales_territory",
        [
            "ROE Sales Territory", "Sales_Territory", "Territory", "Territory_Code", "Territory_Name",
            "Sales Territory", "sales_territory", "territory", "territory_code", "territory_name",
            "assigned_territory", "coverage_territory", "sales_territory_name",
        ],
        [r".*territory.*", r".*assigned.*territory.*"],
    ),
    _alias(
        "geo",
        [
            "GEO", "Geography", "Geo_Region", "Geographic_Region", "Market_Geo", "geo", "geography", "geo_region",
            "geographic_region", "market_geo", "global_region", "world_region", "Region", "Sales_Region",
            "Market_Region",
        ],
        [r"^geo$", r".*geography.*", r".*geo.*region.*", r"^region$", r".*sales.*region.*"],
    ),
    _alias(
        "employees",
        [
            "ROE Employee Count", "Employee_Count", "Employees", "Employee_Size", "Number_of_Employees",
            "Employee Count (Account)", "employee_count", "employees", "employee_size", "number_of_employees",
            "staff_count", "headcount", "team_size", "workforce",
        ],
        [r".*employee.*count.*", r".*employees.*", r".*headcount.*"],
    ),
    _alias(
        "is_customer",
        [
            "Is_Customer", "Customer", "Is_Existing_Customer", "Customer_Status", "Is Customer (Y/N)",
            "is_customer", "customer", "is_existing_customer", "customer_status", "existing_customer",
            "current_customer", "active_customer",
        ],
        [r".*customer.*", r".*is.*customer.*"],
    ),
    _alias(
        "arr",
        [
            "Bookings Account ARR", "Bookings Account ARR (converted)", "ARR", "Annual_Recurring_Revenue",
            "Current_ARR", "Revenue", "ARR (current)", "arr", "annual_recurring_revenue", "current_arr", "revenue",
            "yearly_revenue", "recurring_revenue",
        ],
        [r"^bookings.*arr.*", r"^arr$", r".*annual.*revenue.*", r".*recurring.*revenue.*"],
    ),
    _alias(
        "hierarchy_bookings_arr_converted",
        [
            "Hierarchy Bookings ARR", "Hierarchy Bookings Account ARR (converted)", "Hierarchy_Bookings_ARR",
            "Hierarchy ARR", "Hierarchy_ARR", "hierarchy_bookings_arr", "hierarchy_bookings_arr_converted",
            "hierarchy_arr",
        ],
        [r".*hierarchy.*bookings.*arr.*", r".*hierarchy.*arr.*"],
    ),
    _alias(
        "atr",
        [
            "ATR", "Annual_Total_Revenue", "Total_Revenue", "Annual Revenue", "Total Revenue", "atr",
            "annual_total_revenue", "total_revenue", "annual_revenue",
        ],
        [r"^atr$", r".*annual.*total.*revenue.*", r".*total.*revenue.*"],
    ),
    _alias(
        "renewal_date",
        [
            "Renewal_Date", "RenewalDate", "Contract_Renewal", "Next_Renewal", "Renewal Date", "renewal_date",
            "contract_renewal", "next_renewal", "renewal_due_date",
        ],
        [r".*renewal.*date.*", r".*contract.*renewal.*"],
    ),
    _alias(
        "is_parent",
        ["Is_Parent", "Parent_Account", "Is Parent", "Parent Flag", "is_parent", "parent_account", "parent_flag"],
        [r".*is.*parent.*", r".*parent.*flag.*"],
    ),
    _alias(
        "risk_flag",
        ["Risk_Flag", "At_Risk", "Risk Flag", "At Risk", "High Risk", "risk_flag", "at_risk", "high_risk", "is_at_risk"],
        [r".*risk.*flag.*", r".*at.*risk.*"],
    ),
    _alias(
        "cre_risk",
        ["CRE_Risk", "CRE_Flag", "CRE Risk", "CRE Flag", "Commercial Risk", "cre_risk", "cre_flag", "commercial_risk"],
        [r".*cre.*risk.*", r".*commercial.*risk.*"],
    ),
    _alias(
        "pe_firm",
        [
            "Related Partner Account: Related Partner Account Name", "Related Partner Account Name", "PE_Firm",
            "PE Firm", "Private_Equity_Firm", "Private Equity Firm", "pe_firm", "private_equity_firm",
            "partner_account", "Partner Account", "Related Partner Account", "PE Owner", "PE_Owner", "pe_owner",
        ],
        [r".*related.*partner.*account.*", r".*pe.*firm.*", r".*private.*equity.*", r".*partner.*account.*"],
    ),
    _alias(
        "is_strategic",
        [
            "Is_Strategic", "Is Strategic", "Strategic", "Strategic_Account", "Strategic Account", "is_strategic",
            "strategic", "strategic_account", "is_strategic_account",
        ],
        [r".*is.*strategic.*", r"^strategic$", r".*strategic.*account.*"],
    ),
    _alias(
        "exclude_from_reassignment",
        ["Exclude From Reassignment", "Locked", "Lock", "Hold", "Manual Holdover", "exclude_from_reassignment", "locked"],
        [r".*exclude.*reassign.*", r"^lock(ed)?$", r".*holdover.*"],
    ),
)

OPPORTUNITY_FIELD_ALIASES: tuple[FieldAlias, ...] = (
    _alias(
        "sfdc_opportunity_id",
        [
            "Opportunity_ID", "OpportunityID", "Opportunity ID", "Opp_ID", "SFDC_Opportunity_ID", "opportunity_id",
            "opp_id", "opportunity_identifier", "sf_opportunity_id",
        ],
        [r".*opportunity.*id.*", r".*opp.*id.*"],
        required=True,
    ),
    _alias(
        "sfdc_account_id",
        ["Account_ID", "AccountID", "Account ID", "Related_Account_ID", "account_id", "related_account_id", "parent_account_id"],
        [r".*account.*id.*"],
        required=True,
    ),
    _alias(
        "owner_id",
        [
            "Owner_ID", "OwnerId", "Opportunity_Owner_ID", "Sales_Rep_ID", "Rep_ID", "Opp Owner ID", "owner_id",
            "opportunity_owner_id", "sales_rep_id", "rep_id",
        ],
        [r".*owner.*id.*", r".*rep.*id(?!.*name).*", r".*opp.*owner.*id.*"],
    ),
    _alias(
        "owner_name",
        [
            "Opportunity Owner", "Owner_Name", "Opportunity_Owner_Name", "Sales_Rep_Name", "Rep_Name", "REP Name",
            "opportunity owner", "owner_name", "opportunity_owner_name", "sales_rep_name", "rep_name",
        ],
        [r".*owner.*(?:full\s*)?name.*", r".*rep.*name(?!.*id).*", r".*opp.*owner.*name.*"],
    ),
    _alias(
        "cre_status",
        [
            "CRE_Status", "CRE Status", "Customer_Risk", "Risk_Status", "CRE_Flag", "cre_status", "customer_risk",
            "risk_status", "cre_flag", "renewal_risk",
        ],
        [r".*cre.*status.*", r".*customer.*risk.*", r".*renewal.*risk.*"],
    ),
    _alias(
        "renewal_event_date",
        [
            "Renewal_Event_Date", "Renewal Event Date", "Contract_Renewal_Date", "Renewal_Date",
            "renewal_event_date", "contract_renewal_date", "renewal_date", "contract_expiry", "contract_end_date",
            "renewal_due_date",
        ],
        [r".*renewal.*event.*date.*", r".*contract.*renewal.*", r".*renewal.*date.*"],
    ),
    _alias(
        "net_arr",
        [
            "Net ARR (converted)", "Net_ARR_converted", "Net_ARR", "Net ARR", "Net_Annual_Recurring_Revenue", "NARR",
            "Net_Revenue", "net_arr_converted", "net_arr", "net_annual_recurring_revenue", "narr", "net_revenue",
        ],
        [r"net.*arr.*converted", r".*net.*arr.*", r".*net.*annual.*revenue.*", r".*narr.*"],
    ),
    _alias(
        "opportunity_name",
        [
            "Opportunity_Name", "Opportunity Name", "Opp_Name", "Deal_Name", "Name", "opportunity_name", "opp_name",
            "deal_name", "opportunity_title",
        ],
        [r".*opportunity.*name.*", r".*opp.*name.*", r".*deal.*name.*"],
    ),
    _alias(
        "opportunity_type",
        [
            "Opportunity_Type", "Opportunity Type", "Opp_Type", "Deal_Type", "Type", "opportunity_type", "opp_type",
            "deal_type", "opportunity_category",
        ],
        [r".*opportunity.*type.*", r".*opp.*type.*", r".*deal.*type.*"],
    ),
    _alias(
        "available_to_renew",
        [
            "Available to Renew (converted)", "Available_To_Renew", "Available To Renew", "ATR", "Renewable_Amount",
            "Renewal_Value", "available_to_renew", "atr", "renewable_amount", "renewal_value",
            "available_for_renewal",
        ],
        [r"^available.*to.*renew(?!.*currency)", r".*atr.*", r".*renewable.*amount.*"],
    ),
)

SALES_REP_FIELD_ALIASES: tuple[FieldAlias, ...] = (
    _alias(
        "rep_id",
        [
            "Rep_ID", "RepId", "Sales_Rep_ID", "Employee_ID", "User_ID", "SFDC_ID", "SFDC ID", "rep_id",
            "sales_rep_id", "employee_id", "user_id", "sfdc_id",
        ],
        [r".*rep.*id.*", r".*employee.*id.*", r".*sfdc.*id.*"],
        required=True,
    ),
    _alias(
        "name",
        [
            "Name", "Rep_Name", "Full_Name", "Sales_Rep_Name", "Employee_Name", "REP", "name", "rep_name",
            "full_name", "sales_rep_name", "employee_name", "rep",
        ],
        [r".*name.*", r"^rep$"],
        required=True,
    ),
    _alias(
        "team",
        ["Team", "Sales_Team", "Team_Name", "Department", "team", "sales_team", "team_name", "department"],
        [r".*team.*", r".*department.*"],
    ),
    _alias(
        "region",
        ["Region", "Sales_Region", "Territory", "Geographic_Region", "region", "sales_region", "territory", "geographic_region"],
        [r".*region.*", r".*territory.*"],
    ),
    _alias(
        "flm",
        [
            "FLM", "First_Level_Manager", "First Level Manager", "Direct_Manager", "Immediate_Manager", "flm",
            "first_level_manager", "direct_manager", "immediate_manager", "line_manager",
        ],
        [r".*flm.*", r".*first.*level.*manager.*", r".*direct.*manager.*"],
    ),
    _alias(
        "slm",
        [
            "SLM", "Second_Level_Manager", "Second Level Manager", "Senior_Manager", "Regional_Manager", "slm",
            "second_level_manager", "senior_manager", "regional_manager", "area_manager",
        ],
        [r".*slm.*", r".*second.*level.*manager.*", r".*senior.*manager.*"],
    ),
    _alias(
        "team_tier",
        [
            "Team_Tier", "TeamTier", "Team Tier", "Segment", "Rep_Tier", "Size_Tier", "Tier", "team_tier", "segment",
            "rep_tier", "size_tier", "tier",
        ],
        [r".*team.*tier.*", r".*size.*tier.*", r".*rep.*tier.*", r"^segment$"],
    ),
    _alias(
        "is_strategic_rep",
        [
            "Is_Strategic_Rep", "Is Strategic Rep", "Strategic_Rep", "Strategic Rep", "Is_Strategic",
            "is_strategic_rep", "strategic_rep", "is_strategic", "strategic",
        ],
        [r".*is.*strategic.*rep.*", r".*strategic.*rep.*", r"^is.*strategic$"],
    ),
    _alias(
        "is_active",
        ["Is_Active", "Is Active", "Active", "Status Active", "is_active", "active"],
        [r"^is.*active$", r"^active$"],
    ),
    _alias(
        "include_in_assignments",
        ["Include In Assignments", "Include_In_Assignments", "Assignable", "include_in_assignments", "assignable"],
        [r".*include.*assign.*", r"^assignable$"],
    ),
    _alias(
        "pe_firms",
        ["PE Firms", "PE_Firms", "Covered PE Firms", "pe_firms", "covered_pe_firms"],
        [r".*pe.*firms.*", r".*private.*equity.*"],
    ),
)

FIELD_ALIASES: dict[str, tuple[FieldAlias, ...]] = {
    "accounts": ACCOUNT_FIELD_ALIASES,
    "opportunities": OPPORTUNITY_FIELD_ALIASES,
    "sales_reps": SALES_REP_FIELD_ALIASES,
}

_NAME_SPECIFIC_RE = re.compile(r"(?:full\s*name|rep\s*name|owner\s*name)", re.IGNORECASE)
_ID_SPECIFIC_RE = re.compile(r"(?:owner.*id|rep.*id|user.*id)", re.IGNORECASE)
_ID_RE = re.compile(r"id", re.IGNORECASE)
_NAME_RE = re.compile(r"name", re.IGNORECASE)


def aliases_for(entity: str) -> tuple[FieldAlias, ...]:
    try:
        return FIELD_ALIASES[entity]
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"unsupported entity: {entity}",
        ) from None


def required_fields(entity: str) -> list[str]:
    return [alias.schema_field for alias in aliases_for(entity) if alias.required]


def similarity(left: str, right: str) -> float:
    return SequenceMatcher(None, left.lower(), right.lower()).ratio()


def _exact_matches(header: str, field_aliases: tuple[FieldAlias, ...]) -> list[MappingMatch]:
    lowered = header.lower()
    return [
        MappingMatch(field_alias.schema_field, EXACT_CONFIDENCE, "exact")
        for field_alias in field_aliases
        if any(lowered == alias.lower() for alias in field_alias.aliases)
    ]


def _pattern_matches(header: str, field_aliases: tuple[FieldAlias, ...]) -> list[MappingMatch]:
    return [
        MappingMatch(field_alias.schema_field, PATTERN_CONFIDENCE, "pattern")
        for field_alias in field_aliases
        if any(pattern.search(header) for pattern in field_alias.patterns)
    ]


def _partial_matches(header: str, field_aliases: tuple[FieldAlias, ...]) -> list[MappingMatch]:
    lowered = header.lower()
    return [
        MappingMatch(field_alias.schema_field, PARTIAL_CONFIDENCE, "partial")
        for field_alias in field_aliases
        if any(alias.lower() in lowered or lowered in alias.lower() for alias in field_alias.aliases)
    ]


def _fuzzy_matches(header: str, field_aliases: tuple[FieldAlias, ...]) -> list[MappingMatch]:
    matches: list[MappingMatch] = []
    for field_alias in field_aliases:
        best = max((similarity(header, alias) for alias in field_alias.aliases), default=0.0)
        if best >= FUZZY_THRESHOLD:
            matches.append(MappingMatch(field_alias.schema_field, best * FUZZY_SCALE, "fuzzy"))
    return sorted(matches, key=lambda item: item.confidence, reverse=True)


def _resolve_owner_ambiguity(header: str, matches: list[MappingMatch]) -> MappingMatch | None:
    by_field = {match.schema_field: match for match in matches}
    if "owner_name" not in by_field or "owner_id" not in by_field:
        return None
    if _NAME_SPECIFIC_RE.search(header) and not _ID_RE.search(header):
        return by_field["owner_name"]
    if _ID_SPECIFIC_RE.search(header) and not _NAME_RE.search(header):
        return by_field["owner_id"]
    return None


def suggest_mappings(headers: list[str], entity: str) -> dict[str, MappingMatch]:
    """Map CSV headers to schema fields.

    Three passes over the headers, each restricted to schema fields not yet
    claimed: exact alias match, regex pattern match, then partial containment
    or fuzzy similarity. A schema field is mapped to at most one header.
    """
    field_aliases = aliases_for(entity)
    mappings: dict[str, MappingMatch] = {}
    used: set[str] = set()

    def _available(matches: list[MappingMatch]) -> list[MappingMatch]:
        return [match for match in matches if match.schema_field not in used]

    for header in headers:
        candidates = _available(_exact_matches(header, field_aliases))
        if candidates:
            mappings[header] = candidates[0]
            used.add(candidates[0].schema_field)

    for header in headers:
        if header in mappings:
            continue
        candidates = _available(_pattern_matches(header, field_aliases))
        if not candidates:
            continue
        chosen = _resolve_owner_ambiguity(header, candidates) if len(candidates) > 1 else None
        chosen = chosen or candidates[0]
        mappings[header] = chosen
        used.add(chosen.schema_field)

    for header in headers:
        if header in mappings:
            continue
        candidates = _available(_partial_matches(header, field_aliases)) or _available(
            _fuzzy_matches(header, field_aliases)
        )
        if candidates and candidates[0].confidence >= MIN_ACCEPTED_CONFIDENCE:
            mappings[header] = candidates[0]
            used.add(candidates[0].schema_field)

    return mappings


def summarize_mappings(headers: list[str], mappings: dict[str, MappingMatch], entity: str) -> dict[str, Any]:
    mapped_fields = {match.schema_field for match in mappings.values()}
    required = required_fields(entity)
    confidences = [match.confidence for match in mappings.values()]
    return {
        "total_headers": len(headers),
        "total_mapped": len(mappings),
        "unmapped_headers": [header for header in headers if header not in mappings],
        "high_confidence": sum(1 for value in confidences if value >= 0.8),
        "medium_confidence": sum(1 for value in confidences if 0.6 <= value < 0.8),
        "low_confidence": sum(1 for value in confidences if value < 0.6),
        "required_fields_mapped": sum(1 for field in required if field in mapped_fields),
        "required_fields_total": len(required),
        "missing_required_fields": [field for field in required if field not in mapped_fields],
    }


def to_field_mapping(mappings: dict[str, MappingMatch]) -> dict[str, str]:
    """Schema field -> CSV header, the shape the importer consumes."""
    return {match.schema_field: header for header, match in mappings.items()}
