"""
CAPA activity log: append-only writer and readers.

Every CAPA state change goes through ``log_activity``. Entries are added to
the caller's session and committed with the transition they describe.
"""

from compliance.models import db
from compliance.models.finding import SYSTEM_USER, CAPAActivity
from compliance.utils.helpers import utcnow


def actor_id(user_id):
    """Activity ``user_id`` column value: the id as a string, or ``system``."""
    return SYSTEM_USER if user_id is None else str(user_id)


def log_activity(capa, user_id, action, details="", *, now=None):
    entry = CAPAActivity(
        capa_id=capa.id,
        user_id=actor_id(user_id),
        action=action,
        details=details or "",
        created_at=now or utcnow(),
    )
    db.session.add(entry)
    return entry


def activities_for(capa_id, actions=None):
    """Activity entries for a CAPA in insertion order, optionally filtered by action."""
    q = CAPAActivity.query.filter_by(capa_id=capa_id)
    if actions:
        q = q.filter(CAPAActivity.action.in_(list(actions)))
    return q.order_by(CAPAActivity.created_at.asc(), CAPAActivity.id.asc()).all()
