from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class Role(StrEnum):
    REVOPS = "REVOPS"
    LEADERSHIP = "LEADERSHIP"
    SLM = "SLM"
    FLM = "FLM"
    DEFAULT = "DEFAULT"


class Capability(StrEnum):
    VIEW_ALL_DATA = "view_all_data"
    VIEW_OWN_HIERARCHY = "view_own_hierarchy"
    MANAGE_BUILDS = "manage_builds"
    IMPORT_DATA = "import_data"
    RUN_ASSIGNMENTS = "run_assignments"
    CREATE_REASSIGNMENTS = "create_reassignments"
    APPROVE_REASSIGNMENTS = "approve_reassignments"
    FINALIZE_REASSIGNMENTS = "finalize_reassignments"
    CREATE_NOTES = "create_notes"
    VIEW_REPORTS = "view_reports"
    EXPORT_DATA = "export_data"
    RESET_BUILD = "reset_build"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.REVOPS: frozenset(Capability),
    Role.LEADERSHIP: frozenset(
        {
            Capability.VIEW_ALL_DATA,
            Capability.VIEW_REPORTS,
            Capability.EXPORT_DATA,
            Capability.CREATE_NOTES,
        }
    ),
    Role.SLM: frozenset(
        {
            Capability.VIEW_OWN_HIERARCHY,
            Capability.CREATE_REASSIGNMENTS,
            Capability.APPROVE_REASSIGNMENTS,
            Capability.CREATE_NOTES,
            Capability.VIEW_REPORTS,
        }
    ),
    # FLMs approve only where the build's chain starts at pending_flm (EMEA).
    Role.FLM: frozenset(
        {
            Capability.VIEW_OWN_HIERARCHY,
            Capability.CREATE_REASSIGNMENTS,
            Capability.APPROVE_REASSIGNMENTS,
            Capability.CREATE_NOTES,
            Capability.VIEW_REPORTS,
        }
    ),
    Role.DEFAULT: frozenset(),
}

# Most privileged first; a token carrying several roles resolves to the first match.
_ROLE_PRECEDENCE = [Role.REVOPS, Role.LEADERSHIP, Role.SLM, Role.FLM]

_ROLE_ALIASES = {
    "revops": Role.REVOPS,
    "rev_ops": Role.REVOPS,
    "admin": Role.REVOPS,
    "leadership": Role.LEADERSHIP,
    "slm": Role.SLM,
    "flm": Role.FLM,
}


def resolve_role(raw_roles: Iterable[str]) -> Role:
    matched = {_ROLE_ALIASES[name] for name in (str(role).strip().lower() for role in raw_roles) if name in _ROLE_ALIASES}
    for role in _ROLE_PRECEDENCE:
        if role in matched:
            return role
    return Role.DEFAULT


def capabilities_for(role: Role) -> frozenset[Capability]:
    return ROLE_CAPABILITIES.get(role, frozenset())


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in capabilities_for(role)
