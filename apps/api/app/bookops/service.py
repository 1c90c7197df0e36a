from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.bookops.hierarchy import can_see_owner, owner_filter, visible_rep_ids
from app.bookops.models import (
    BUILD_STATUSES,
    Account,
    Build,
    ManagerNote,
    ManagerReassignment,
    Opportunity,
    SalesRep,
    utcnow,
)
from app.bookops.rules import resolve_priority_order
from app.bookops.schemas import (
    AccountRead,
    BuildCreate,
    BuildRead,
    BuildUpdate,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    OpportunityRead,
    SalesRepRead,
)
from app.core.config import get_settings
from app.core.rbac import Capability, Role, capabilities_for

logger = logging.getLogger("app.bookops.service")


@dataclass
class ActorUser:
    user_id: str
    role: Role
    manager_name: str | None = None
    region: str | None = None
    correlation_id: str | None = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        return capabilities_for(self.role)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def actor_with_correlation_id(actor_user: ActorUser, correlation_id: str | None) -> ActorUser:
    return ActorUser(
        user_id=actor_user.user_id,
        role=actor_user.role,
        manager_name=actor_user.manager_name,
        region=actor_user.region,
        correlation_id=correlation_id,
    )


def require_capability(actor_user: ActorUser, capability: Capability) -> None:
    if not actor_user.can(capability):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing capability: {capability.value}")


def build_event(
    actor_user: ActorUser,
    event_type: str,
    build_id: uuid.UUID | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": actor_user.user_id,
        "build_id": str(build_id) if build_id else None,
        "correlation_id": actor_user.correlation_id,
        "version": 1,
        "payload": payload,
    }


def publish_all(envelopes: list[dict[str, Any]]) -> None:
    for envelope in envelopes:
        events.publish(envelope)


def get_build_or_404(session: Session, build_id: uuid.UUID) -> Build:
    build = session.get(Build, build_id)
    if build is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="build not found")
    return build


def ensure_build_mutable(build: Build) -> None:
    if build.status == "FINALIZED":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="build is finalized")


def set_build_status(
    session: Session,
    actor_user: ActorUser,
    build: Build,
    new_status: str,
) -> dict[str, Any] | None:
    """Move a build to ``new_status`` without committing.

    Returns the ``bookops.build.status_changed`` envelope for the caller to
    publish after commit, or None when the status is unchanged.
    """
    if new_status not in BUILD_STATUSES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid build status")
    previous = build.status
    if previous == new_status:
        return None

    build.status = new_status
    build.updated_at = utcnow()
    build.row_version = build.row_version + 1
    session.add(build)
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type="bookops.build",
        entity_id=str(build.id),
        action="status_change",
        before={"status": previous},
        after={"status": new_status},
        correlation_id=actor_user.correlation_id,
        build_id=str(build.id),
    )
    logger.info(
        "build.status_changed",
        extra={"build_id": str(build.id), "status": new_status, "user_id": actor_user.user_id},
    )
    return build_event(
        actor_user,
        "bookops.build.status_changed",
        build.id,
        {"build_id": str(build.id), "build_name": build.name, "from_status": previous, "to_status": new_status},
    )


class BuildService:
    entity_type = "bookops.build"

    def create_build(self, session: Session, actor_user: ActorUser, dto: BuildCreate) -> BuildRead:
        settings = get_settings()
        if not dto.name.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
        priority = resolve_priority_order(dto.priority_config) if dto.priority_config else None
        target_arr = dto.customer_target_arr or settings.customer_target_arr
        max_arr = dto.customer_max_arr or settings.customer_max_arr
        if target_arr > max_arr:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="customer_target_arr cannot exceed customer_max_arr",
            )

        build = Build(
            name=dto.name.strip(),
            description=dto.description,
            region=dto.region.strip().upper() if dto.region else None,
            status="DRAFT",
            owner_user_id=actor_user.user_id,
            priority_config=priority,
            customer_target_arr=target_arr,
            customer_max_arr=max_arr,
        )
        session.add(build)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="build name already exists") from None

        after = BuildRead.model_validate(build).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(build.id),
            action="create",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
            build_id=str(build.id),
        )
        envelope = build_event(actor_user, "bookops.build.created", build.id, {"build_id": str(build.id)})
        session.commit()
        events.publish(envelope)
        return BuildRead.model_validate(build)

    def list_builds(self, session: Session, actor_user: ActorUser, *, status_filter: str | None = None) -> list[BuildRead]:
        stmt: Select[tuple[Build]] = select(Build)
        if status_filter:
            stmt = stmt.where(Build.status == status_filter)
        rows = session.scalars(stmt.order_by(Build.created_at.desc())).all()
        return [BuildRead.model_validate(row) for row in rows]

    def get_build(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> BuildRead:
        return BuildRead.model_validate(get_build_or_404(session, build_id))

    def update_build(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID, dto: BuildUpdate) -> BuildRead:
        existing = get_build_or_404(session, build_id)
        before = BuildRead.model_validate(existing).model_dump(mode="json")

        changes: dict[str, Any] = {}
        if dto.name is not None:
            if not dto.name.strip():
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
            changes["name"] = dto.name.strip()
        if dto.description is not None:
            changes["description"] = dto.description
        if dto.region is not None:
            changes["region"] = dto.region.strip().upper() or None
        if "priority_config" in dto.model_fields_set:
            changes["priority_config"] = resolve_priority_order(dto.priority_config) if dto.priority_config else None
        if dto.customer_target_arr is not None:
            changes["customer_target_arr"] = dto.customer_target_arr
        if dto.customer_max_arr is not None:
            changes["customer_max_arr"] = dto.customer_max_arr

        target_arr = changes.get("customer_target_arr", existing.customer_target_arr)
        max_arr = changes.get("customer_max_arr", existing.customer_max_arr)
        if target_arr > max_arr:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="customer_target_arr cannot exceed customer_max_arr",
            )
        if changes and existing.status == "FINALIZED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="build is finalized")

        status_changed = dto.status is not None and dto.status != existing.status
        if status_changed:
            changes["status"] = dto.status
        if not changes:
            return BuildRead.model_validate(existing)

        changes["updated_at"] = utcnow()
        changes["row_version"] = Build.row_version + 1
        try:
            result = session.execute(
                update(Build)
                .where(and_(Build.id == build_id, Build.row_version == dto.row_version))
                .values(**changes)
            )
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="build name already exists") from None
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.expire(existing)
        updated = get_build_or_404(session, build_id)
        after = BuildRead.model_validate(updated).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(updated.id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            build_id=str(updated.id),
        )
        envelopes = [build_event(actor_user, "bookops.build.updated", updated.id, {"build_id": str(updated.id)})]
        if status_changed:
            envelopes.append(
                build_event(
                    actor_user,
                    "bookops.build.status_changed",
                    updated.id,
                    {
                        "build_id": str(updated.id),
                        "build_name": updated.name,
                        "from_status": before["status"],
                        "to_status": updated.status,
                    },
                )
            )
        session.commit()
        publish_all(envelopes)
        return BuildRead.model_validate(updated)


class RosterService:
    """Read access to the imported accounts, reps and opportunities of a build."""

    def list_accounts(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        *,
        owner_id: str | None = None,
        search: str | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> list[AccountRead]:
        get_build_or_404(session, build_id)
        stmt: Select[tuple[Account]] = select(Account).where(Account.build_id == build_id)
        clause = owner_filter(visible_rep_ids(session, actor_user, build_id), Account.owner_id, Account.new_owner_id)
        if clause is not None:
            stmt = stmt.where(clause)
        if owner_id:
            stmt = stmt.where(func.coalesce(Account.new_owner_id, Account.owner_id) == owner_id)
        if search:
            stmt = stmt.where(Account.account_name.ilike(f"%{search}%"))
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        rows = session.scalars(stmt.order_by(Account.account_name, Account.sfdc_account_id).offset(offset).limit(limit)).all()
        return [AccountRead.model_validate(row) for row in rows]

    def list_reps(self, session: Session, actor_user: ActorUser, build_id: uuid.UUID) -> list[SalesRepRead]:
        get_build_or_404(session, build_id)
        stmt: Select[tuple[SalesRep]] = select(SalesRep).where(SalesRep.build_id == build_id)
        clause = owner_filter(visible_rep_ids(session, actor_user, build_id), SalesRep.rep_id)
        if clause is not None:
            stmt = stmt.where(clause)
        rows = session.scalars(stmt.order_by(SalesRep.name, SalesRep.rep_id)).all()
        return [SalesRepRead.model_validate(row) for row in rows]

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        *,
        sfdc_account_id: str | None = None,
        cursor: str | None = None,
        limit: int = 100,
    ) -> list[OpportunityRead]:
        get_build_or_404(session, build_id)
        stmt: Select[tuple[Opportunity]] = select(Opportunity).where(Opportunity.build_id == build_id)
        clause = owner_filter(
            visible_rep_ids(session, actor_user, build_id),
            Opportunity.owner_id,
            Opportunity.new_owner_id,
        )
        if clause is not None:
            stmt = stmt.where(clause)
        if sfdc_account_id:
            stmt = stmt.where(Opportunity.sfdc_account_id == sfdc_account_id)
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        rows = session.scalars(stmt.order_by(Opportunity.sfdc_opportunity_id).offset(offset).limit(limit)).all()
        return [OpportunityRead.model_validate(row) for row in rows]


def get_visible_account(session: Session, actor_user: ActorUser, build_id: uuid.UUID, sfdc_account_id: str) -> Account:
    account = session.scalar(
        select(Account).where(and_(Account.build_id == build_id, Account.sfdc_account_id == sfdc_account_id))
    )
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    visible = visible_rep_ids(session, actor_user, build_id)
    if not (can_see_owner(visible, account.owner_id) or can_see_owner(visible, account.new_owner_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return account


class NoteService:
    entity_type = "bookops.note"
    valid_categories = {"concern", "question", "approval", "general"}
    valid_statuses = {"open", "resolved", "escalated"}

    def list_notes(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        sfdc_account_id: str,
    ) -> list[NoteRead]:
        get_build_or_404(session, build_id)
        get_visible_account(session, actor_user, build_id, sfdc_account_id)
        rows = session.scalars(
            select(ManagerNote)
            .where(and_(ManagerNote.build_id == build_id, ManagerNote.sfdc_account_id == sfdc_account_id))
            .order_by(ManagerNote.created_at.desc())
        ).all()
        return [NoteRead.model_validate(row) for row in rows]

    def create_note(
        self,
        session: Session,
        actor_user: ActorUser,
        build_id: uuid.UUID,
        sfdc_account_id: str,
        dto: NoteCreate,
    ) -> NoteRead:
        get_build_or_404(session, build_id)
        get_visible_account(session, actor_user, build_id, sfdc_account_id)
        if not dto.note_text.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="note_text is required")
        if dto.reassignment_id is not None:
            linked = session.get(ManagerReassignment, dto.reassignment_id)
            if linked is None or linked.build_id != build_id or linked.sfdc_account_id != sfdc_account_id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid reassignment_id")

        note = ManagerNote(
            build_id=build_id,
            sfdc_account_id=sfdc_account_id,
            manager_user_id=actor_user.user_id,
            note_text=dto.note_text.strip(),
            category=dto.category,
            status=dto.status,
            tags=dto.tags,
            reassignment_id=dto.reassignment_id,
        )
        session.add(note)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(note.id),
            action="create",
            before=None,
            after=NoteRead.model_validate(note).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            build_id=str(build_id),
        )
        envelope = build_event(
            actor_user,
            "bookops.note.created",
            build_id,
            {"note_id": str(note.id), "sfdc_account_id": sfdc_account_id, "category": note.category},
        )
        session.commit()
        events.publish(envelope)
        return NoteRead.model_validate(note)

    def update_note(self, session: Session, actor_user: ActorUser, note_id: uuid.UUID, dto: NoteUpdate) -> NoteRead:
        note = session.get(ManagerNote, note_id)
        if note is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="note not found")
        get_visible_account(session, actor_user, note.build_id, note.sfdc_account_id)
        if note.manager_user_id != actor_user.user_id and actor_user.role != Role.REVOPS:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the author or RevOps can edit a note")

        before = NoteRead.model_validate(note).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)
        payload.pop("row_version", None)
        if "note_text" in payload:
            if payload["note_text"] is None or not str(payload["note_text"]).strip():
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="note_text is required")
            payload["note_text"] = str(payload["note_text"]).strip()
        for key in ("category", "status"):
            if key in payload and payload[key] is None:
                payload.pop(key)

        payload["updated_at"] = utcnow()
        payload["row_version"] = ManagerNote.row_version + 1
        result = session.execute(
            update(ManagerNote)
            .where(and_(ManagerNote.id == note.id, ManagerNote.row_version == dto.row_version))
            .values(**payload)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.expire(note)
        updated = session.get(ManagerNote, note_id)
        if updated is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="note not found")
        after = NoteRead.model_validate(updated).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(updated.id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            build_id=str(updated.build_id),
        )
        envelope = build_event(
            actor_user,
            "bookops.note.updated",
            updated.build_id,
            {"note_id": str(updated.id), "status": updated.status, "row_version": updated.row_version},
        )
        session.commit()
        events.publish(envelope)
        return NoteRead.model_validate(updated)
