"""
Directory lookups: identity, role and entity resolution.

Read-only: nothing here writes to the session. Callers that need a stable
"first" user (e.g. supplier CAPA assignment) get users ordered by id.
"""

import logging

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.directory import BCK, Branch, Supplier, User, UserAssignment

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "branch": Branch,
    "bck": BCK,
    "supplier": Supplier,
}

ENTITY_LABELS = {
    "branch": "Branch",
    "bck": "BCK",
    "supplier": "Supplier",
}


def get_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def get_users_by_role(role, *, active_only=True):
    """Users holding ``role``, ordered by id."""
    q = User.query.filter_by(role=role)
    if active_only:
        q = q.filter(User.status == "active")
    return q.order_by(User.id.asc()).all()


def get_region_assignments(user_id):
    """Region ids the user is assigned to."""
    rows = (
        UserAssignment.query
        .filter_by(user_id=user_id, assigned_type="region")
        .order_by(UserAssignment.assigned_id.asc())
        .all()
    )
    return [r.assigned_id for r in rows]


def get_entity_assignments(user_id, entity_type):
    """Entity ids of ``entity_type`` the user is directly assigned to."""
    rows = UserAssignment.query.filter_by(user_id=user_id, assigned_type=entity_type).all()
    return [r.assigned_id for r in rows]


def entity_model(entity_type):
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValidationError(
            f"Unknown entity type: {entity_type}",
            details={"entity_type": f"Must be one of {sorted(ENTITY_MODELS)}"},
        )
    return model


def get_entity(entity_type, entity_id):
    """Load a branch / bck / supplier or raise NotFoundError."""
    model = entity_model(entity_type)
    entity = db.session.get(model, entity_id)
    if not entity:
        raise NotFoundError(resource=ENTITY_LABELS[entity_type], resource_id=entity_id)
    return entity


def active_entity_ids(entity_type):
    """Ids of every active entity of ``entity_type``, ascending."""
    model = entity_model(entity_type)
    rows = (
        db.session.query(model.id)
        .filter(model.status == "active")
        .order_by(model.id.asc())
        .all()
    )
    return [r[0] for r in rows]


def entity_ids_in_regions(entity_type, region_ids):
    """Ids of branches / BCKs located in any of ``region_ids``."""
    if entity_type == "supplier" or not region_ids:
        return []
    model = entity_model(entity_type)
    rows = db.session.query(model.id).filter(model.region_id.in_(region_ids)).all()
    return [r[0] for r in rows]


def regional_managers_for_region(region_id):
    """Active regional managers whose region assignment covers ``region_id``."""
    if region_id is None:
        return []
    return (
        User.query
        .join(UserAssignment, UserAssignment.user_id == User.id)
        .filter(
            User.role == "regional_manager",
            User.status == "active",
            UserAssignment.assigned_type == "region",
            UserAssignment.assigned_id == region_id,
        )
        .order_by(User.id.asc())
        .all()
    )


def verifiers_for_entity(entity_type, entity_id):
    """Users who verify work for an entity.

    Branches and BCKs are verified by the regional managers of their region;
    suppliers by every audit manager.
    """
    if entity_type == "supplier":
        return get_users_by_role("audit_manager")
    entity = get_entity(entity_type, entity_id)
    return regional_managers_for_region(entity.region_id)


def responsible_user_id(entity_type, entity_id):
    """The user accountable for an entity's corrective actions.

    Branch / BCK: the entity's manager. Supplier: the first active audit
    manager by id. Returns None when nobody qualifies.
    """
    if entity_type == "supplier":
        managers = get_users_by_role("audit_manager")
        return managers[0].id if managers else None
    entity = get_entity(entity_type, entity_id)
    return entity.manager_id


def entity_display_name(entity_type, entity_id):
    try:
        return get_entity(entity_type, entity_id).name
    except NotFoundError:
        return f"{ENTITY_LABELS.get(entity_type, entity_type)} #{entity_id}"
