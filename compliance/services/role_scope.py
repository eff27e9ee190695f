"""
Role scopes: which records a caller sees and which operations they may run.

One class per role. A scope is resolved once per request from the caller's
user id and passed into the list/queue services, which apply
``filter_audits`` / ``filter_capas`` to their queries. The engine's
state-machine logic never branches on role.

Usage:
    from compliance.core.exceptions import PermissionDenied
    from compliance.services.role_scope import resolve_scope

    scope = resolve_scope(user_id)
    scope.require("capa_verify")          # raises PermissionDenied
    audits = list_audits(scope).all()
"""

from sqlalchemy import and_, false, or_

from compliance.core.exceptions import PermissionDenied, ValidationError
from compliance.models.audit import Audit
from compliance.models.directory import BCK, Branch
from compliance.models.finding import CAPA
from compliance.services import directory

OPERATIONS = {
    "plan_manage",
    "audit_create",
    "audit_execute",
    "capa_work",
    "subtask_work",
    "capa_verify",
    "audit_verify",
    "health_recalculate",
    "sweep_run",
    "job_manage",
}


class RoleScope:
    """Base scope: sees nothing, may do nothing."""

    role = None
    operations = frozenset()

    def __init__(self, user):
        self.user = user

    @property
    def user_id(self):
        return self.user.id

    def filter_audits(self, query):
        return query.filter(false())

    def filter_capas(self, query):
        return query.filter(false())

    def can_act(self, operation):
        return operation in self.operations

    def require(self, operation):
        if not self.can_act(operation):
            raise PermissionDenied(self.user_id, self.role, operation)

    def __repr__(self):
        return f"<{type(self).__name__} user={self.user_id}>"


class _UnrestrictedScope(RoleScope):
    operations = frozenset(OPERATIONS)

    def filter_audits(self, query):
        return query

    def filter_capas(self, query):
        return query


class SuperAdminScope(_UnrestrictedScope):
    role = "super_admin"


class AuditManagerScope(_UnrestrictedScope):
    role = "audit_manager"


def _entity_clause(model, entity_ids_by_type):
    clauses = [
        and_(model.entity_type == entity_type, model.entity_id.in_(ids))
        for entity_type, ids in entity_ids_by_type.items() if ids
    ]
    return or_(*clauses) if clauses else false()


class RegionalManagerScope(RoleScope):
    """Branches and BCKs in the manager's assigned regions."""

    role = "regional_manager"
    operations = frozenset({"capa_verify", "audit_verify", "health_recalculate"})

    def _entities(self):
        regions = directory.get_region_assignments(self.user_id)
        return {
            "branch": directory.entity_ids_in_regions("branch", regions),
            "bck": directory.entity_ids_in_regions("bck", regions),
        }

    def filter_audits(self, query):
        return query.filter(_entity_clause(Audit, self._entities()))

    def filter_capas(self, query):
        return query.filter(_entity_clause(CAPA, self._entities()))


class AuditorScope(RoleScope):
    """Audits the auditor is assigned to, and the CAPAs they produced."""

    role = "auditor"
    operations = frozenset({"audit_execute"})

    def filter_audits(self, query):
        return query.filter(Audit.auditor_id == self.user_id)

    def filter_capas(self, query):
        return query.filter(CAPA.audit.has(Audit.auditor_id == self.user_id))


class _SiteManagerScope(RoleScope):
    """Entities the manager runs (``manager_id``) or is assigned to."""

    entity_type = None
    model = None
    operations = frozenset({"capa_work", "subtask_work"})

    def _entity_ids(self):
        managed = [
            row[0] for row in
            self.model.query.with_entities(self.model.id).filter_by(manager_id=self.user_id)
        ]
        assigned = directory.get_entity_assignments(self.user_id, self.entity_type)
        return sorted(set(managed) | set(assigned))

    def filter_audits(self, query):
        return query.filter(_entity_clause(Audit, {self.entity_type: self._entity_ids()}))

    def filter_capas(self, query):
        return query.filter(_entity_clause(CAPA, {self.entity_type: self._entity_ids()}))


class BranchManagerScope(_SiteManagerScope):
    role = "branch_manager"
    entity_type = "branch"
    model = Branch


class BCKManagerScope(_SiteManagerScope):
    role = "bck_manager"
    entity_type = "bck"
    model = BCK


class StaffScope(RoleScope):
    """CAPAs assigned to the user or at an entity they are assigned to."""

    role = "staff"
    operations = frozenset({"subtask_work"})

    def filter_capas(self, query):
        assigned = {
            entity_type: directory.get_entity_assignments(self.user_id, entity_type)
            for entity_type in ("branch", "bck")
        }
        return query.filter(or_(CAPA.assigned_to == self.user_id,
                                _entity_clause(CAPA, assigned)))


SCOPES = {
    cls.role: cls
    for cls in (SuperAdminScope, AuditManagerScope, RegionalManagerScope, AuditorScope,
                BranchManagerScope, BCKManagerScope, StaffScope)
}


def scope_for_user(user):
    scope_cls = SCOPES.get(user.role)
    if scope_cls is None:
        raise ValidationError(f"Unknown role: {user.role}")
    return scope_cls(user)


def resolve_scope(user_id):
    """Resolve the caller's scope. Inactive users get an empty scope."""
    user = directory.get_user(user_id)
    if user.status != "active":
        return RoleScope(user)
    return scope_for_user(user)
