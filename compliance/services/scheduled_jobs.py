"""
Compliance Workflow & Scoring Engine
Scheduled Jobs.

Concrete job implementations run by the SchedulerService.

Jobs:
    - capa_escalation_sweep: escalates overdue open / in-progress CAPAs (hourly)
    - capa_auto_approval_sweep: closes low-risk CAPAs awaiting verification (hourly)
    - audit_overdue_sweep: marks past-date scheduled audits overdue and
      expands active plans over the horizon (daily)
    - health_score_batch: recalculates every entity's score (6-hourly)
"""

from __future__ import annotations

import logging
from typing import Any

from compliance.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: CAPA Escalation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("capa_escalation_sweep")
def capa_escalation_sweep(app) -> dict[str, Any]:
    """Escalate CAPAs overdue by the configured threshold and notify managers."""
    from compliance.services.escalation import run_escalation_sweep

    return run_escalation_sweep()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: CAPA Auto-Approval
# ═══════════════════════════════════════════════════════════════════════════

@register_job("capa_auto_approval_sweep")
def capa_auto_approval_sweep(app) -> dict[str, Any]:
    """Close low / medium priority CAPAs with evidence and advance ready audits."""
    from compliance.services.auto_approval import run_auto_approval_sweep

    return run_auto_approval_sweep()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Overdue Audits + Plan Expansion
# ═══════════════════════════════════════════════════════════════════════════

@register_job("audit_overdue_sweep")
def audit_overdue_sweep(app) -> dict[str, Any]:
    """Mark past-date scheduled audits overdue and expand active plans."""
    from compliance.services.audit_scheduler import expand_active_plans
    from compliance.services.audit_service import mark_overdue_audits

    results = mark_overdue_audits()
    results["plans"] = expand_active_plans()
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Health Score Batch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("health_score_batch")
def health_score_batch(app) -> dict[str, Any]:
    """Recalculate health scores: suppliers, then BCKs, then branches."""
    from compliance.services.health_score import recalculate_all

    return recalculate_all()
