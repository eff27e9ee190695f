"""
Health / Quality Scoring Engine.

Recomputes a weighted 0-100 score for one entity from its recent history and
stores it as the single current HealthScoreRecord for that entity.

    branch    audit_performance 40% · capa_completion 25% · repeat_findings 15%
              · incident_rate 10% · verification_pass 10%
    bck       haccp_compliance 50% · production_audit_perf 25%
              · supplier_quality 15% · capa_completion 10%
    supplier  audit_performance 40% · product_quality 30% · compliance 20%
              · delivery_perf 10%

Every component is clamped to [0, 100] before weighting; the final score is
rounded to one decimal. The computed score is also cached onto the entity
(``health_score`` for branches / BCKs, ``quality_score`` for suppliers); a
supplier falling below the suspension threshold is suspended and audit
managers are notified.

Verification calls into this module; nothing here imports verification.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from compliance.core.exceptions import NotFoundError
from compliance.models import db
from compliance.models.audit import Audit
from compliance.models.directory import BCK, Branch, Supplier
from compliance.models.finding import CAPA, CAPA_CLOSED_STATUSES, CAPAActivity, Finding
from compliance.models.health_score import HealthScoreRecord
from compliance.services import directory
from compliance.services.notification import NotificationService
from compliance.utils.helpers import end_of_day, ensure_utc, utcnow

logger = logging.getLogger(__name__)

COMPONENT_WEIGHTS = {
    "branch": {
        "audit_performance": 0.40,
        "capa_completion": 0.25,
        "repeat_findings": 0.15,
        "incident_rate": 0.10,
        "verification_pass": 0.10,
    },
    "bck": {
        "haccp_compliance": 0.50,
        "production_audit_perf": 0.25,
        "supplier_quality": 0.15,
        "capa_completion": 0.10,
    },
    "supplier": {
        "audit_performance": 0.40,
        "product_quality": 0.30,
        "compliance": 0.20,
        "delivery_perf": 0.10,
    },
}

COMPONENT_LABELS = {
    "audit_performance": "Audit Performance",
    "capa_completion": "CAPA Completion",
    "repeat_findings": "Repeat Findings",
    "incident_rate": "Incident Rate",
    "verification_pass": "Verification Pass",
    "haccp_compliance": "HACCP Compliance",
    "production_audit_perf": "Production Audit",
    "supplier_quality": "Supplier Quality",
    "product_quality": "Product Quality",
    "compliance": "Compliance",
    "delivery_perf": "Delivery Performance",
}

BRANCH_THRESHOLDS = [
    (85, "Excellent"),
    (70, "Good"),
    (50, "Needs Improvement"),
    (0, "Critical"),
]

SUPPLIER_THRESHOLDS = [
    (90, "Approved"),
    (75, "Conditional"),
    (60, "Under Review"),
    (0, "Suspended"),
]

# Activities that mark the moment a CAPA was closed
CLOSING_ACTIONS = ("approved", "auto_approved", "audit_finalized")


def threshold_label(score, entity_type):
    thresholds = SUPPLIER_THRESHOLDS if entity_type == "supplier" else BRANCH_THRESHOLDS
    for minimum, label in thresholds:
        if score >= minimum:
            return label
    return thresholds[-1][1]


def clamp(value, low=0.0, high=100.0):
    return max(low, min(high, float(value)))


def round_score(value):
    return round(value, 1)


# ═════════════════════════════════════════════════════════════════════════════
# Inputs
# ═════════════════════════════════════════════════════════════════════════════


def _audit_completed(audit):
    return ensure_utc(audit.completed_at or audit.updated_at or audit.created_at)


def _approved_audits(entity_type, entity_id, since):
    """Approved audits of the entity completed on or after ``since``, newest first."""
    audits = Audit.query.filter_by(
        entity_type=entity_type, entity_id=entity_id, status="approved",
    ).all()
    recent = [a for a in audits if _audit_completed(a) and _audit_completed(a) >= since]
    recent.sort(key=lambda a: (_audit_completed(a), a.id), reverse=True)
    return recent


def _mean_audit_score(audits):
    if not audits:
        return 0.0
    return sum(a.score or 0 for a in audits) / len(audits)


def _closed_capas(entity_type, entity_id):
    return (
        CAPA.query
        .filter(CAPA.entity_type == entity_type, CAPA.entity_id == entity_id,
                CAPA.status.in_(sorted(CAPA_CLOSED_STATUSES)))
        .order_by(CAPA.id.asc())
        .all()
    )


def _closed_on_time(capa):
    """On time if the first closing activity falls on or before the due date.

    A closed CAPA with no closing activity on record counts as on time.
    """
    closing = (
        CAPAActivity.query
        .filter(CAPAActivity.capa_id == capa.id, CAPAActivity.action.in_(CLOSING_ACTIONS))
        .order_by(CAPAActivity.created_at.asc(), CAPAActivity.id.asc())
        .first()
    )
    if closing is None:
        return True
    return ensure_utc(closing.created_at) <= end_of_day(capa.due_date)


def _never_rejected(capa):
    return not capa.activities.filter(CAPAActivity.action == "rejected").count()


def _pct(part, whole, default=100.0):
    if whole == 0:
        return default
    return part / whole * 100


def capa_completion(closed_capas):
    return _pct(sum(1 for c in closed_capas if _closed_on_time(c)), len(closed_capas))


def verification_pass(closed_capas):
    return _pct(sum(1 for c in closed_capas if _never_rejected(c)), len(closed_capas))


def _finding_count(entity_type, entity_id, since=None):
    q = (
        db.session.query(func.count(Finding.id))
        .join(Audit, Audit.id == Finding.audit_id)
        .filter(Audit.entity_type == entity_type, Audit.entity_id == entity_id)
    )
    if since is not None:
        q = q.filter(Finding.created_at >= since)
    return q.scalar() or 0


# ═════════════════════════════════════════════════════════════════════════════
# Components
# ═════════════════════════════════════════════════════════════════════════════


def _branch_components(entity_id, now, window_days, repeat_days):
    audits = _approved_audits("branch", entity_id, now - timedelta(days=window_days))
    closed = _closed_capas("branch", entity_id)
    recent_findings = _finding_count("branch", entity_id, since=now - timedelta(days=repeat_days))
    return {
        "audit_performance": _mean_audit_score(audits),
        "capa_completion": capa_completion(closed),
        "repeat_findings": 100 - min(50, 10 * recent_findings),
        # incident data is not wired in yet
        "incident_rate": 100.0,
        "verification_pass": verification_pass(closed),
    }


def _bck_components(entity_id, now, window_days, repeat_days):
    audits = _approved_audits("bck", entity_id, now - timedelta(days=window_days))
    closed = _closed_capas("bck", entity_id)

    supplier_scores = [
        s.quality_score if s.quality_score is not None else 100.0
        for s in Supplier.query.order_by(Supplier.id.asc())
        if entity_id in (s.supplies_to_bck_ids or [])
    ]
    supplier_quality = (
        sum(supplier_scores) / len(supplier_scores) if supplier_scores else 100.0
    )
    return {
        "haccp_compliance": (audits[0].score or 0) if audits else 0.0,
        "production_audit_perf": _mean_audit_score(audits),
        "supplier_quality": supplier_quality,
        "capa_completion": capa_completion(closed),
    }


def _supplier_components(entity_id, now, window_days, repeat_days):
    supplier = directory.get_entity("supplier", entity_id)
    audits = _approved_audits("supplier", entity_id, now - timedelta(days=window_days))
    return {
        "audit_performance": _mean_audit_score(audits),
        "product_quality": max(0, 100 - 10 * _finding_count("supplier", entity_id)),
        "compliance": 100.0 if supplier.certifications else 75.0,
        # delivery data is not tracked yet
        "delivery_perf": 100.0,
    }


_COMPONENT_BUILDERS = {
    "branch": _branch_components,
    "bck": _bck_components,
    "supplier": _supplier_components,
}


def calculate_health_score(entity_type, entity_id, *, now=None):
    """Compute (but do not store) the score for one entity.

    Returns ``{"score", "components"}``.
    """
    now = now or utcnow()
    directory.get_entity(entity_type, entity_id)
    cfg = current_app.config
    raw = _COMPONENT_BUILDERS[entity_type](
        entity_id, now,
        cfg.get("HEALTH_SCORE_WINDOW_DAYS", 90),
        cfg.get("REPEAT_FINDING_WINDOW_DAYS", 60),
    )
    components = {name: round_score(clamp(value)) for name, value in raw.items()}
    weights = COMPONENT_WEIGHTS[entity_type]
    score = sum(clamp(raw[name]) * weight for name, weight in weights.items())
    return {"score": round_score(clamp(score)), "components": components}


# ═════════════════════════════════════════════════════════════════════════════
# Persistence
# ═════════════════════════════════════════════════════════════════════════════


def _upsert_record(entity_type, entity_id, score, components, now):
    record = HealthScoreRecord.query.filter_by(
        entity_type=entity_type, entity_id=entity_id,
    ).first()
    if record is None:
        record = HealthScoreRecord(entity_type=entity_type, entity_id=entity_id)
        db.session.add(record)
    record.score = score
    record.components = components
    record.calculated_at = now
    return record


def _cache_on_entity(entity_type, entity_id, score):
    entity = directory.get_entity(entity_type, entity_id)
    if entity_type == "supplier":
        entity.quality_score = score
    else:
        entity.health_score = score
    return entity


def _check_supplier_suspension(supplier, score):
    """Suspend a supplier below the threshold. Returns True if it was suspended now."""
    threshold = current_app.config.get("SUPPLIER_SUSPENSION_THRESHOLD", 60.0)
    if score >= threshold or supplier.status == "suspended":
        return False
    supplier.status = "suspended"
    return True


def recalculate_health_score(entity_type, entity_id, *, now=None):
    """Recompute, store and cache the score for one entity. Returns the record."""
    now = now or utcnow()
    result = calculate_health_score(entity_type, entity_id, now=now)

    for attempt in (1, 2):
        try:
            record = _upsert_record(entity_type, entity_id, result["score"],
                                    result["components"], now)
            entity = _cache_on_entity(entity_type, entity_id, result["score"])
            suspended = (
                entity_type == "supplier"
                and _check_supplier_suspension(entity, result["score"])
            )
            db.session.commit()
            break
        except IntegrityError:
            # a concurrent recalculation inserted the record first
            db.session.rollback()
            if attempt == 2:
                raise

    logger.info("Health score %s:%s = %.1f", entity_type, entity_id, result["score"],
                extra={"entity_type": entity_type, "entity_id": entity_id})

    if suspended:
        logger.warning("Supplier %s auto-suspended (score %.1f)", entity.name, result["score"],
                       extra={"entity_type": "supplier", "entity_id": entity_id})
        threshold = current_app.config.get("SUPPLIER_SUSPENSION_THRESHOLD", 60.0)
        NotificationService.notify_users(
            [u.id for u in directory.get_users_by_role("audit_manager")],
            type="supplier_suspended",
            title="Supplier Auto-Suspended",
            message=f"Supplier {entity.name} has been auto-suspended. Quality score dropped "
                    f"to {result['score']}. Orders should be stopped until the score recovers "
                    f"above {threshold:g}.",
            link_to="/suppliers",
        )
    return record


def get_health_score(entity_type, entity_id):
    """Current stored record as a dict with its threshold label."""
    directory.entity_model(entity_type)
    record = HealthScoreRecord.query.filter_by(
        entity_type=entity_type, entity_id=entity_id,
    ).first()
    if record is None:
        raise NotFoundError(resource="HealthScore", resource_id=f"{entity_type}:{entity_id}")
    d = record.to_dict()
    d["label"] = threshold_label(record.score, entity_type)
    d["weights"] = COMPONENT_WEIGHTS[entity_type]
    return d


def recalculate_all(*, now=None):
    """Batch recalculation: suppliers first (BCKs read their scores), then BCKs, then branches.

    Returns ``{"supplier": n, "bck": n, "branch": n, "failed": n}``.
    """
    now = now or utcnow()
    stats = {"supplier": 0, "bck": 0, "branch": 0, "failed": 0}
    for entity_type, model in (("supplier", Supplier), ("bck", BCK), ("branch", Branch)):
        ids = [row[0] for row in db.session.query(model.id).order_by(model.id.asc())]
        for entity_id in ids:
            try:
                recalculate_health_score(entity_type, entity_id, now=now)
                stats[entity_type] += 1
            except Exception:
                db.session.rollback()
                stats["failed"] += 1
                logger.exception("Health score recalculation failed",
                                 extra={"entity_type": entity_type, "entity_id": entity_id})
    logger.info("Health score batch: %s", stats)
    return stats
