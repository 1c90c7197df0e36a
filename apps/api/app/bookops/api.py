from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app import files_stub
from app.bookops.approvals import ApprovalService
from app.bookops.conflicts import detect_conflicts
from app.bookops.engine import AssignmentEngine
from app.bookops.field_mapping import suggest_mappings, summarize_mappings, to_field_mapping
from app.bookops.hierarchy import visible_rep_ids
from app.bookops.jobs import JobService
from app.bookops.models import BookOpsJob
from app.bookops.reporting import ReportingService
from app.bookops.schemas import (
    AccountRead,
    AssignmentApplyRequest,
    AssignmentApplyResponse,
    AssignmentGenerateResponse,
    BuildCreate,
    BuildRead,
    BuildSummaryRead,
    BuildUpdate,
    BulkApproveResponse,
    ConflictRead,
    ManagerSummaryRead,
    MappingSuggestionRead,
    MappingSuggestionRequest,
    MappingSuggestionResponse,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    OpportunityRead,
    OwnerReportResponse,
    ReassignmentCreate,
    ReassignmentDecision,
    ReassignmentRead,
    ReassignmentReject,
    SalesRepRead,
)
from app.bookops.service import (
    ActorUser,
    BuildService,
    NoteService,
    RosterService,
    get_build_or_404,
    require_capability,
)
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rbac import Capability, resolve_role

builds_router = APIRouter(prefix="/api/bookops", tags=["bookops.builds"])
import_router = APIRouter(prefix="/api/bookops", tags=["bookops.import"])
roster_router = APIRouter(prefix="/api/bookops", tags=["bookops.roster"])
assignments_router = APIRouter(prefix="/api/bookops", tags=["bookops.assignments"])
reassignments_router = APIRouter(prefix="/api/bookops", tags=["bookops.reassignments"])
notes_router = APIRouter(prefix="/api/bookops", tags=["bookops.notes"])
reports_router = APIRouter(prefix="/api/bookops", tags=["bookops.reports"])
jobs_router = APIRouter(prefix="/api/bookops", tags=["bookops.jobs"])
build_service = BuildService()
roster_service = RosterService()
engine = AssignmentEngine()
approval_service = ApprovalService()
note_service = NoteService()
reporting_service = ReportingService()
job_service = JobService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    manager_name = request.headers.get("x-manager-name") or auth_user.manager_name
    region = getattr(getattr(request.state, "context", None), "region", None)
    return ActorUser(
        user_id=auth_user.sub,
        role=resolve_role(auth_user.roles),
        manager_name=manager_name.strip() if manager_name else None,
        region=region if isinstance(region, str) and region.lower() != "global" else None,
        correlation_id=correlation_id,
    )


def require_read(user: ActorUser) -> None:
    if not (user.can(Capability.VIEW_ALL_DATA) or user.can(Capability.VIEW_OWN_HIERARCHY)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing capability: view_own_hierarchy")


def _dispatch_job(db: Session, user: ActorUser, job: BookOpsJob, *, sync: bool) -> BookOpsJob:
    if sync:
        return job_service.run_job_sync(db, user, job.id)
    if get_settings().auto_run_jobs:
        from app.core.celery_app import run_bookops_job

        run_bookops_job.delay(str(job.id), user.user_id, user.role.value, user.manager_name)
    return job


@builds_router.post("/builds", response_model=BuildRead, status_code=status.HTTP_201_CREATED)
def create_build(
    request: Request,
    dto: BuildCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BuildRead | JSONResponse:
    try:
        require_capability(user, Capability.MANAGE_BUILDS)
        return build_service.create_build(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_build_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@builds_router.get("/builds", response_model=list[BuildRead])
def list_builds(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[BuildRead] | JSONResponse:
    try:
        require_read(user)
        return build_service.list_builds(db, user, status_filter=status_filter)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_build_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@builds_router.get("/builds/{build_id}", response_model=BuildRead)
def get_build(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BuildRead | JSONResponse:
    try:
        require_read(user)
        return build_service.get_build(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_build_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@builds_router.patch("/builds/{build_id}", response_model=BuildRead)
def update_build(
    request: Request,
    build_id: uuid.UUID,
    dto: BuildUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BuildRead | JSONResponse:
    try:
        require_capability(user, Capability.MANAGE_BUILDS)
        return build_service.update_build(db, user, build_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_build_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/builds/{build_id}/import/mapping-suggestions", response_model=MappingSuggestionResponse)
def suggest_import_mapping(
    request: Request,
    build_id: uuid.UUID,
    dto: MappingSuggestionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MappingSuggestionResponse | JSONResponse:
    try:
        require_capability(user, Capability.IMPORT_DATA)
        get_build_or_404(db, build_id)
        mappings = suggest_mappings(dto.headers, dto.entity)
        return MappingSuggestionResponse(
            entity=dto.entity,
            suggestions=[
                MappingSuggestionRead(
                    header=header,
                    schema_field=match.schema_field,
                    confidence=match.confidence,
                    match_type=match.match_type,
                )
                for header, match in mappings.items()
            ],
            mapping=to_field_mapping(mappings),
            summary=summarize_mappings(dto.headers, mappings, dto.entity),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_mapping_suggest_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/builds/{build_id}/import/{entity}", response_model=dict[str, Any])
def import_csv(
    request: Request,
    build_id: uuid.UUID,
    entity: str,
    file: UploadFile = File(...),
    mapping: str = Form(...),
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_capability(user, Capability.IMPORT_DATA)
        mapping_payload = json.loads(mapping)
        content = file.file.read()
        source_file_id = files_stub.store_bytes(content, file.filename or "import.csv", file.content_type or "text/csv")

        job = job_service.create_job(
            db,
            user,
            job_type="CSV_IMPORT",
            entity_type=entity,
            build_id=build_id,
            params={"mapping": mapping_payload, "source_file_id": str(source_file_id)},
        )
        job = _dispatch_job(db, user, job, sync=sync)
        return job_service.to_response(job)
    except (ValueError, json.JSONDecodeError) as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="bookops_import_failed",
            message=str(exc),
            details=str(exc),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_import_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@roster_router.get("/builds/{build_id}/accounts", response_model=list[AccountRead])
def list_accounts(
    request: Request,
    build_id: uuid.UUID,
    owner_id: str | None = Query(default=None),
    search: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AccountRead] | JSONResponse:
    try:
        require_read(user)
        return roster_service.list_accounts(
            db, user, build_id, owner_id=owner_id, search=search, cursor=cursor, limit=limit
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_account_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@roster_router.get("/builds/{build_id}/reps", response_model=list[SalesRepRead])
def list_reps(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SalesRepRead] | JSONResponse:
    try:
        require_read(user)
        return roster_service.list_reps(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_rep_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@roster_router.get("/builds/{build_id}/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    build_id: uuid.UUID,
    sfdc_account_id: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_read(user)
        return roster_service.list_opportunities(
            db, user, build_id, sfdc_account_id=sfdc_account_id, cursor=cursor, limit=limit
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_opportunity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@assignments_router.post("/builds/{build_id}/assignments/generate", response_model=AssignmentGenerateResponse)
def generate_assignments(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentGenerateResponse | JSONResponse:
    try:
        require_capability(user, Capability.RUN_ASSIGNMENTS)
        return engine.generate(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_assignments_generate_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@assignments_router.post("/builds/{build_id}/assignments/apply", response_model=AssignmentApplyResponse)
def apply_assignments(
    request: Request,
    build_id: uuid.UUID,
    dto: AssignmentApplyRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentApplyResponse | JSONResponse:
    try:
        require_capability(user, Capability.RUN_ASSIGNMENTS)
        return engine.apply(db, user, build_id, dto or AssignmentApplyRequest())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_assignments_apply_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.post(
    "/builds/{build_id}/reassignments",
    response_model=ReassignmentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_reassignment(
    request: Request,
    build_id: uuid.UUID,
    dto: ReassignmentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReassignmentRead | JSONResponse:
    try:
        require_capability(user, Capability.CREATE_REASSIGNMENTS)
        return approval_service.create_reassignment(db, user, build_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.get("/builds/{build_id}/reassignments", response_model=list[ReassignmentRead])
def list_reassignments(
    request: Request,
    build_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    sfdc_account_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ReassignmentRead] | JSONResponse:
    try:
        require_read(user)
        return approval_service.list_reassignments(
            db, user, build_id, status_filter=status_filter, sfdc_account_id=sfdc_account_id
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.post("/builds/{build_id}/reassignments/approve-all", response_model=BulkApproveResponse)
def approve_all_reassignments(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkApproveResponse | JSONResponse:
    try:
        require_capability(user, Capability.APPROVE_REASSIGNMENTS)
        return approval_service.approve_all(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_approve_all_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.get("/reassignments/{proposal_id}", response_model=ReassignmentRead)
def get_reassignment(
    request: Request,
    proposal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReassignmentRead | JSONResponse:
    try:
        require_read(user)
        return approval_service.get_reassignment(db, user, proposal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.post("/reassignments/{proposal_id}/approve", response_model=ReassignmentRead)
def approve_reassignment(
    request: Request,
    proposal_id: uuid.UUID,
    dto: ReassignmentDecision,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReassignmentRead | JSONResponse:
    try:
        require_capability(user, Capability.APPROVE_REASSIGNMENTS)
        return approval_service.approve(db, user, proposal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_approve_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.post("/reassignments/{proposal_id}/reject", response_model=ReassignmentRead)
def reject_reassignment(
    request: Request,
    proposal_id: uuid.UUID,
    dto: ReassignmentReject,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReassignmentRead | JSONResponse:
    try:
        require_capability(user, Capability.APPROVE_REASSIGNMENTS)
        return approval_service.reject(db, user, proposal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_reassignment_reject_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reassignments_router.get("/builds/{build_id}/conflicts", response_model=list[ConflictRead])
def list_conflicts(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ConflictRead] | JSONResponse:
    try:
        require_read(user)
        get_build_or_404(db, build_id)
        return detect_conflicts(db, build_id, visible_rep_ids(db, user, build_id))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_conflict_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notes_router.get("/builds/{build_id}/accounts/{sfdc_account_id}/notes", response_model=list[NoteRead])
def list_notes(
    request: Request,
    build_id: uuid.UUID,
    sfdc_account_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        require_read(user)
        return note_service.list_notes(db, user, build_id, sfdc_account_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_note_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notes_router.post(
    "/builds/{build_id}/accounts/{sfdc_account_id}/notes",
    response_model=NoteRead,
    status_code=status.HTTP_201_CREATED,
)
def create_note(
    request: Request,
    build_id: uuid.UUID,
    sfdc_account_id: str,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        require_capability(user, Capability.CREATE_NOTES)
        return note_service.create_note(db, user, build_id, sfdc_account_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_note_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notes_router.patch("/notes/{note_id}", response_model=NoteRead)
def update_note(
    request: Request,
    note_id: uuid.UUID,
    dto: NoteUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        require_capability(user, Capability.CREATE_NOTES)
        return note_service.update_note(db, user, note_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_note_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reports_router.get("/builds/{build_id}/reports/owners", response_model=OwnerReportResponse)
def owner_report(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OwnerReportResponse | JSONResponse:
    try:
        return reporting_service.owner_report(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_report_owners_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reports_router.get("/builds/{build_id}/reports/managers", response_model=list[ManagerSummaryRead])
def manager_report(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ManagerSummaryRead] | JSONResponse:
    try:
        return reporting_service.manager_summary(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_report_managers_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@reports_router.get("/builds/{build_id}/reports/summary", response_model=BuildSummaryRead)
def build_summary_report(
    request: Request,
    build_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BuildSummaryRead | JSONResponse:
    try:
        return reporting_service.build_summary(db, user, build_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_report_summary_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.post("/builds/{build_id}/export/{entity}", response_model=dict[str, Any])
def export_csv(
    request: Request,
    build_id: uuid.UUID,
    entity: str,
    filters: dict[str, Any] | None = Body(default=None),
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_capability(user, Capability.EXPORT_DATA)
        job = job_service.create_job(
            db,
            user,
            job_type="CSV_EXPORT",
            entity_type=entity,
            build_id=build_id,
            params={"changed_only": bool((filters or {}).get("changed_only", False))},
        )
        job = _dispatch_job(db, user, job, sync=sync)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_export_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.post("/builds/{build_id}/reset", response_model=dict[str, Any])
def reset_build(
    request: Request,
    build_id: uuid.UUID,
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_capability(user, Capability.RESET_BUILD)
        job = job_service.create_job(
            db,
            user,
            job_type="BUILD_RESET",
            entity_type="build",
            build_id=build_id,
            params={},
        )
        job = _dispatch_job(db, user, job, sync=sync)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_build_reset_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("/jobs/{job_id}", response_model=dict[str, Any])
def get_job_status(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        job = job_service.get_job(db, user, job_id)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_job_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.post("/jobs/{job_id}/cancel", response_model=dict[str, Any])
def cancel_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        job = job_service.cancel_job(db, user, job_id)
        return job_service.to_response(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_job_cancel_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@jobs_router.get("/jobs/{job_id}/download/{artifact_type}", response_model=None)
def download_job_artifact(
    request: Request,
    job_id: uuid.UUID,
    artifact_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        artifact = job_service.get_job_artifact(db, user, job_id, artifact_type)
        stored = files_stub.get_metadata(artifact.file_id)
        return Response(
            content=files_stub.get_bytes(artifact.file_id),
            media_type=stored.content_type,
            headers={"Content-Disposition": f'attachment; filename="{stored.filename}"'},
        )
    except FileNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="bookops_job_download_failed",
            message=str(exc),
            details=str(exc),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="bookops_job_download_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


routers = [
    builds_router,
    import_router,
    roster_router,
    assignments_router,
    reassignments_router,
    notes_router,
    reports_router,
    jobs_router,
]
