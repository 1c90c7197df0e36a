from __future__ import annotations

import csv
import io
import json
import uuid
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app import files_stub
from app.bookops.calculations import effective_arr
from app.bookops.geography import GEOGRAPHY_FIELDS
from app.bookops.hierarchy import flm_slm_conflicts, owner_filter, visible_rep_ids
from app.bookops.models import Account, BookOpsJob, BookOpsJobArtifact, ManagerReassignment, Opportunity, SalesRep

ERROR_REPORT_FIELDS = ["row_number", "severity", "error_code", "message", "field", "raw_row_json"]

ACCOUNT_FIELD_TYPES: dict[str, str] = {
    "sfdc_account_id": "str",
    "account_name": "str",
    "owner_id": "str",
    "owner_name": "str",
    "is_customer": "bool",
    "is_parent": "bool",
    "ultimate_parent_id": "str",
    "ultimate_parent_name": "str",
    "sales_territory": "str",
    "hq_country": "str",
    "geo": "str",
    "arr": "float",
    "hierarchy_bookings_arr_converted": "float",
    "atr": "float",
    "employees": "int",
    "renewal_date": "date",
    "risk_flag": "bool",
    "cre_risk": "bool",
    "pe_firm": "str",
    "is_strategic": "bool",
    "exclude_from_reassignment": "bool",
    "lock_reason": "str",
}

OPPORTUNITY_FIELD_TYPES: dict[str, str] = {
    "sfdc_opportunity_id": "str",
    "sfdc_account_id": "str",
    "opportunity_name": "str",
    "opportunity_type": "str",
    "owner_id": "str",
    "owner_name": "str",
    "net_arr": "float",
    "available_to_renew": "float",
    "cre_status": "str",
    "renewal_event_date": "date",
}

SALES_REP_FIELD_TYPES: dict[str, str] = {
    "rep_id": "str",
    "name": "str",
    "team": "str",
    "region": "str",
    "flm": "str",
    "slm": "str",
    "team_tier": "str",
    "is_strategic_rep": "bool",
    "is_active": "bool",
    "include_in_assignments": "bool",
    "pe_firms": "str",
}

FIELD_TYPES: dict[str, dict[str, str]] = {
    "accounts": ACCOUNT_FIELD_TYPES,
    "opportunities": OPPORTUNITY_FIELD_TYPES,
    "sales_reps": SALES_REP_FIELD_TYPES,
}

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "accounts": ("sfdc_account_id", "account_name"),
    "opportunities": ("sfdc_opportunity_id", "sfdc_account_id"),
    "sales_reps": ("rep_id", "name"),
}

BOOLEAN_DEFAULTS: dict[str, bool] = {"is_parent": True, "is_active": True, "include_in_assignments": True}
NON_NEGATIVE_FIELDS = {"arr", "hierarchy_bookings_arr_converted", "atr"}

ASSIGNMENT_EXPORT_FIELDS = [
    "sfdc_account_id",
    "account_name",
    "owner_id",
    "owner_name",
    "new_owner_id",
    "new_owner_name",
    "changed",
    "effective_arr",
    "proposal_id",
    "rule_applied",
    "approval_status",
]

_TRUE_VALUES = {"1", "true", "yes", "y", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "f"}
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d")


def _parse_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None or str(raw).strip() == "":
        return default
    value = str(raw).strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean: {raw}")


def _parse_float(raw: str | None) -> float | None:
    if raw is None or str(raw).strip() == "":
        return None
    cleaned = str(raw).strip().replace(",", "").replace("$", "")
    return float(cleaned)


def _parse_int(raw: str | None) -> int | None:
    value = _parse_float(raw)
    return int(value) if value is not None else None


def _parse_date(raw: str | None) -> date | None:
    if raw is None or str(raw).strip() == "":
        return None
    text = str(raw).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    raise ValueError(f"invalid date: {raw}")


_PARSERS: dict[str, Callable[[str | None], Any]] = {
    "float": _parse_float,
    "int": _parse_int,
    "date": _parse_date,
}

_INVALID_CODES = {"float": "INVALID_NUMBER", "int": "INVALID_NUMBER", "date": "INVALID_DATE", "bool": "INVALID_BOOLEAN"}


def _row_error(
    row_number: int,
    code: str,
    message: str,
    field: str,
    raw_row: dict[str, Any],
    *,
    severity: str = "critical",
) -> dict[str, Any]:
    return {
        "row_number": row_number,
        "severity": severity,
        "error_code": code,
        "message": message,
        "field": field,
        "raw_row_json": json.dumps(raw_row),
    }


def _warning(row_number: int, code: str, message: str, field: str, raw_row: dict[str, Any]) -> dict[str, Any]:
    return _row_error(row_number, code, message, field, raw_row, severity="warning")


def _save_error_report(session: Session, job: BookOpsJob, issues: list[dict[str, Any]]) -> uuid.UUID | None:
    if not issues:
        return None
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=ERROR_REPORT_FIELDS)
    writer.writeheader()
    for issue in sorted(issues, key=lambda item: (item["row_number"], item["severity"])):
        writer.writerow(issue)
    payload = output.getvalue().encode("utf-8")
    file_id = files_stub.store_bytes(payload, f"bookops_job_{job.id}_errors.csv", "text/csv")
    session.add(BookOpsJobArtifact(job_id=job.id, artifact_type="ERROR_REPORT_CSV", file_id=file_id))
    return file_id


def _save_export_csv(session: Session, job: BookOpsJob, rows: list[dict[str, Any]], fieldnames: list[str]) -> uuid.UUID:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    payload = output.getvalue().encode("utf-8")
    file_id = files_stub.store_bytes(payload, f"bookops_job_{job.id}_{job.entity_type}_export.csv", "text/csv")
    session.add(BookOpsJobArtifact(job_id=job.id, artifact_type="EXPORT_CSV", file_id=file_id))
    return file_id


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _read_rows(params: dict[str, Any]) -> csv.DictReader:
    source_file_id = uuid.UUID(params["source_file_id"])
    csv_text = files_stub.get_bytes(source_file_id).decode("utf-8-sig")
    return csv.DictReader(io.StringIO(csv_text))


def _validated_mapping(entity: str, params: dict[str, Any]) -> dict[str, str]:
    mapping = params.get("mapping") or {}
    if not isinstance(mapping, dict):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="mapping must be an object")
    field_types = FIELD_TYPES[entity]
    unknown = sorted(key for key in mapping if key not in field_types)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "unknown mapping fields", "fields": unknown},
        )
    for required in REQUIRED_FIELDS[entity]:
        if not mapping.get(required):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"mapping.{required} is required")
    return {key: str(value) for key, value in mapping.items() if value}


def _parse_row(
    entity: str,
    mapping: dict[str, str],
    row: dict[str, Any],
    row_number: int,
    issues: list[dict[str, Any]],
) -> dict[str, Any] | None:
    """Typed values for one CSV row, or None when the row has a critical error."""
    field_types = FIELD_TYPES[entity]
    values: dict[str, Any] = {}
    critical = False
    for field_name, column in mapping.items():
        raw = row.get(column)
        kind = field_types[field_name]
        try:
            if kind == "str":
                values[field_name] = raw if raw not in (None, "") else None
            elif kind == "bool":
                values[field_name] = _parse_bool(raw, BOOLEAN_DEFAULTS.get(field_name, False))
            else:
                values[field_name] = _PARSERS[kind](raw)
        except ValueError as exc:
            issues.append(_row_error(row_number, _INVALID_CODES[kind], str(exc), field_name, row))
            critical = True

    for required in REQUIRED_FIELDS[entity]:
        if not values.get(required):
            issues.append(_row_error(row_number, "REQUIRED", f"{required} is required", required, row))
            critical = True

    for field_name in NON_NEGATIVE_FIELDS:
        value = values.get(field_name)
        if value is not None and value < 0:
            issues.append(_warning(row_number, "NEGATIVE_ARR", f"{field_name} was negative and set to 0", field_name, row))
            values[field_name] = 0.0

    return None if critical else values


def _apply_values(target: Any, values: dict[str, Any]) -> bool:
    changed = False
    for field_name, value in values.items():
        if getattr(target, field_name) != value:
            setattr(target, field_name, value)
            changed = True
    return changed


def _result(created: int, updated: int, issues: list[dict[str, Any]], error_file_id: uuid.UUID | None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "created_count": created,
        "updated_count": updated,
        "error_count": sum(1 for issue in issues if issue["severity"] == "critical"),
        "warning_count": sum(1 for issue in issues if issue["severity"] == "warning"),
    }
    if error_file_id:
        result["error_report_file_id"] = str(error_file_id)
    return result


def _import_accounts(session: Session, job: BookOpsJob, params: dict[str, Any]) -> dict[str, Any]:
    mapping = _validated_mapping("accounts", params)
    build_id = job.build_id
    roster = set(session.scalars(select(SalesRep.rep_id).where(SalesRep.build_id == build_id)).all())
    existing = {
        account.sfdc_account_id: account
        for account in session.scalars(select(Account).where(Account.build_id == build_id)).all()
    }

    created_count = 0
    updated_count = 0
    issues: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, raw_row in enumerate(_read_rows(params), start=2):
        row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items()}
        values = _parse_row("accounts", mapping, row, index, issues)
        if values is None:
            continue
        sfdc_account_id = values["sfdc_account_id"]
        if sfdc_account_id in seen:
            issues.append(_row_error(index, "DUPLICATE", "duplicate sfdc_account_id in file", "sfdc_account_id", row))
            continue
        seen.add(sfdc_account_id)

        if all(not values.get(field_name) for field_name in GEOGRAPHY_FIELDS) and (
            sfdc_account_id not in existing
            or all(not getattr(existing[sfdc_account_id], field_name) for field_name in GEOGRAPHY_FIELDS)
        ):
            issues.append(
                _warning(index, "NO_GEOGRAPHY", "no sales territory, HQ country or geo", "sales_territory", row)
            )
        owner_id = values.get("owner_id")
        if owner_id and roster and owner_id not in roster:
            issues.append(_warning(index, "OWNER_NOT_IN_ROSTER", f"owner {owner_id} is not a rep in this build", "owner_id", row))

        account = existing.get(sfdc_account_id)
        if account is None:
            account = Account(build_id=build_id, **values)
            session.add(account)
            existing[sfdc_account_id] = account
            created_count += 1
        elif _apply_values(account, values):
            account.row_version = account.row_version + 1
            session.add(account)
            updated_count += 1

    session.flush()
    return _result(created_count, updated_count, issues, _save_error_report(session, job, issues))


def _import_opportunities(session: Session, job: BookOpsJob, params: dict[str, Any]) -> dict[str, Any]:
    mapping = _validated_mapping("opportunities", params)
    build_id = job.build_id
    roster = set(session.scalars(select(SalesRep.rep_id).where(SalesRep.build_id == build_id)).all())
    account_ids = set(session.scalars(select(Account.sfdc_account_id).where(Account.build_id == build_id)).all())
    existing = {
        opportunity.sfdc_opportunity_id: opportunity
        for opportunity in session.scalars(select(Opportunity).where(Opportunity.build_id == build_id)).all()
    }

    created_count = 0
    updated_count = 0
    issues: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, raw_row in enumerate(_read_rows(params), start=2):
        row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items()}
        values = _parse_row("opportunities", mapping, row, index, issues)
        if values is None:
            continue
        sfdc_opportunity_id = values["sfdc_opportunity_id"]
        if sfdc_opportunity_id in seen:
            issues.append(
                _row_error(index, "DUPLICATE", "duplicate sfdc_opportunity_id in file", "sfdc_opportunity_id", row)
            )
            continue
        seen.add(sfdc_opportunity_id)
        if values["sfdc_account_id"] not in account_ids:
            issues.append(
                _row_error(
                    index,
                    "UNKNOWN_ACCOUNT",
                    f"account {values['sfdc_account_id']} is not in this build",
                    "sfdc_account_id",
                    row,
                )
            )
            continue
        owner_id = values.get("owner_id")
        if owner_id and roster and owner_id not in roster:
            issues.append(_warning(index, "OWNER_NOT_IN_ROSTER", f"owner {owner_id} is not a rep in this build", "owner_id", row))

        opportunity = existing.get(sfdc_opportunity_id)
        if opportunity is None:
            opportunity = Opportunity(build_id=build_id, **values)
            session.add(opportunity)
            existing[sfdc_opportunity_id] = opportunity
            created_count += 1
        elif _apply_values(opportunity, values):
            session.add(opportunity)
            updated_count += 1

    session.flush()
    return _result(created_count, updated_count, issues, _save_error_report(session, job, issues))


def _import_sales_reps(session: Session, job: BookOpsJob, params: dict[str, Any]) -> dict[str, Any]:
    mapping = _validated_mapping("sales_reps", params)
    build_id = job.build_id
    existing = {rep.rep_id: rep for rep in session.scalars(select(SalesRep).where(SalesRep.build_id == build_id)).all()}

    created_count = 0
    updated_count = 0
    issues: list[dict[str, Any]] = []
    seen: set[str] = set()
    first_row_by_flm: dict[str, tuple[int, dict[str, Any]]] = {}
    for index, raw_row in enumerate(_read_rows(params), start=2):
        row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items()}
        values = _parse_row("sales_reps", mapping, row, index, issues)
        if values is None:
            continue
        rep_id = values["rep_id"]
        if rep_id in seen:
            issues.append(_row_error(index, "DUPLICATE", "duplicate rep_id in file", "rep_id", row))
            continue
        seen.add(rep_id)
        if values.get("flm"):
            first_row_by_flm.setdefault(values["flm"].strip(), (index, row))

        rep = existing.get(rep_id)
        if rep is None:
            rep = SalesRep(build_id=build_id, **values)
            session.add(rep)
            existing[rep_id] = rep
            created_count += 1
        elif _apply_values(rep, values):
            session.add(rep)
            updated_count += 1

    for flm, slms in flm_slm_conflicts(existing.values()).items():
        row_number, row = first_row_by_flm.get(flm, (0, {}))
        issues.append(
            _warning(row_number, "FLM_MULTIPLE_SLMS", f"FLM {flm} rolls up to several SLMs: {', '.join(slms)}", "flm", row)
        )

    session.flush()
    return _result(created_count, updated_count, issues, _save_error_report(session, job, issues))


def _export_accounts(session: Session, actor_user: Any, job: BookOpsJob, params: dict[str, Any]) -> dict[str, Any]:
    stmt: Select[tuple[Account]] = select(Account).where(Account.build_id == job.build_id)
    clause = owner_filter(visible_rep_ids(session, actor_user, job.build_id), Account.owner_id, Account.new_owner_id)
    if clause is not None:
        stmt = stmt.where(clause)
    rows = session.scalars(stmt.order_by(Account.sfdc_account_id)).all()
    fieldnames = list(ACCOUNT_FIELD_TYPES)
    export_rows = [{name: format_value(getattr(row, name)) for name in fieldnames} for row in rows]
    file_id = _save_export_csv(session, job, export_rows, fieldnames)
    return {"created_count": 0, "updated_count": 0, "error_count": 0, "export_file_id": str(file_id), "row_count": len(export_rows)}


def _export_assignments(session: Session, actor_user: Any, job: BookOpsJob, params: dict[str, Any]) -> dict[str, Any]:
    stmt: Select[tuple[Account]] = select(Account).where(Account.build_id == job.build_id)
    clause = owner_filter(visible_rep_ids(session, actor_user, job.build_id), Account.owner_id, Account.new_owner_id)
    if clause is not None:
        stmt = stmt.where(clause)
    if params.get("changed_only"):
        stmt = stmt.where(Account.new_owner_id.is_not(None))
    accounts = session.scalars(stmt.order_by(Account.sfdc_account_id)).all()
    approved = {
        proposal.sfdc_account_id: proposal
        for proposal in session.scalars(
            select(ManagerReassignment).where(
                and_(ManagerReassignment.build_id == job.build_id, ManagerReassignment.approval_status == "approved")
            )
        ).all()
    }

    export_rows: list[dict[str, Any]] = []
    for account in accounts:
        proposal = approved.get(account.sfdc_account_id)
        export_rows.append(
            {
                "sfdc_account_id": account.sfdc_account_id,
                "account_name": account.account_name,
                "owner_id": account.owner_id or "",
                "owner_name": account.owner_name or "",
                "new_owner_id": account.new_owner_id or "",
                "new_owner_name": account.new_owner_name or "",
                "changed": format_value(bool(account.new_owner_id) and account.new_owner_id != account.owner_id),
                "effective_arr": format_value(effective_arr(account)),
                "proposal_id": str(proposal.id) if proposal else "",
                "rule_applied": (proposal.rule_applied or proposal.source) if proposal else "",
                "approval_status": proposal.approval_status if proposal else "",
            }
        )
    file_id = _save_export_csv(session, job, export_rows, ASSIGNMENT_EXPORT_FIELDS)
    return {"created_count": 0, "updated_count": 0, "error_count": 0, "export_file_id": str(file_id), "row_count": len(export_rows)}


def execute_job(session: Session, actor_user: Any, job: BookOpsJob) -> dict[str, Any]:
    params = json.loads(job.params_json)

    if job.job_type == "CSV_IMPORT" and job.entity_type == "accounts":
        return _import_accounts(session, job, params)
    if job.job_type == "CSV_IMPORT" and job.entity_type == "opportunities":
        return _import_opportunities(session, job, params)
    if job.job_type == "CSV_IMPORT" and job.entity_type == "sales_reps":
        return _import_sales_reps(session, job, params)
    if job.job_type == "CSV_EXPORT" and job.entity_type == "accounts":
        return _export_accounts(session, actor_user, job, params)
    if job.job_type == "CSV_EXPORT" and job.entity_type == "assignments":
        return _export_assignments(session, actor_user, job, params)

    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported job type/entity")
