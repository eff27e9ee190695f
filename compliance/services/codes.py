"""
Human-facing code allocation.

Codes look like ``AUD-2025-00042``: a type prefix, the calendar year and a
five-digit sequence. The sequence is the highest existing number under the
same ``PREFIX-YEAR-`` plus one, so numbering restarts each year without a
hard reset.
"""

from compliance.models.audit import Audit
from compliance.models.finding import CAPA, Finding
from compliance.utils.helpers import utcnow

AUDIT_PREFIX = "AUD"
FINDING_PREFIX = "FND"
CAPA_PREFIX = "CPA"


def _next_code(model_class, prefix: str, year: int) -> str:
    """
    Generate the next sequential code for ``model_class``.

    Locks the current highest row (SELECT ... FOR UPDATE where supported).
    Codes are zero-padded to a fixed width, so ordering by the code string
    orders by number. Callers rely on the unique constraint on ``code`` to
    surface a lost race as IntegrityError.
    """
    full_prefix = f"{prefix}-{year}-"
    last = (
        model_class.query
        .filter(model_class.code.like(f"{full_prefix}%"))
        .order_by(model_class.code.desc())
        .with_for_update()
        .first()
    )
    num = 1
    if last:
        try:
            num = int(last.code.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            num = 1
    return f"{full_prefix}{num:05d}"


def next_audit_code(now=None) -> str:
    return _next_code(Audit, AUDIT_PREFIX, (now or utcnow()).year)


def next_finding_code(now=None) -> str:
    return _next_code(Finding, FINDING_PREFIX, (now or utcnow()).year)


def next_capa_code(now=None) -> str:
    return _next_code(CAPA, CAPA_PREFIX, (now or utcnow()).year)
