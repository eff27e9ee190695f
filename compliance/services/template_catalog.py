"""
Template catalog: read-only access to audit templates.
"""

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.template import DEFAULT_SCORING_CONFIG, AuditTemplate


def get_template(template_id):
    template = db.session.get(AuditTemplate, template_id)
    if not template:
        raise NotFoundError(resource="AuditTemplate", resource_id=template_id)
    return template


def get_active_template(template_id, entity_type=None):
    """Template usable for new audits: active and matching ``entity_type``."""
    template = get_template(template_id)
    if template.status != "active":
        raise ValidationError(f"Template {template.code} is not active")
    if entity_type and template.entity_type != entity_type:
        raise ValidationError(
            f"Template {template.code} is for {template.entity_type} audits, not {entity_type}",
        )
    return template


def scoring_config(template):
    """Template scoring config with defaults filled in."""
    cfg = dict(DEFAULT_SCORING_CONFIG)
    cfg.update(template.scoring_config or {})
    return cfg


def item_index(template):
    """Map item id → (section, item)."""
    return {item["id"]: (section, item) for section, item in template.iter_items()}
