"""
Tests: human-facing code allocation (AUD / FND / CPA-YYYY-NNNNN).
"""

from datetime import date, datetime, timezone

import pytest

from compliance.models import db as _db
from compliance.models.audit import Audit
from compliance.services.codes import next_audit_code, next_capa_code, next_finding_code

JAN_2025 = datetime(2025, 1, 15, tzinfo=timezone.utc)


def _audit_with_code(code, template):
    audit = Audit(code=code, template_id=template.id, entity_type="branch", entity_id=1,
                  scheduled_date=date(2025, 1, 1), status="scheduled")
    _db.session.add(audit)
    _db.session.commit()
    return audit


@pytest.mark.unit
def test_first_code_of_the_year_starts_at_one(org):
    assert next_audit_code(JAN_2025) == "AUD-2025-00001"
    assert next_finding_code(JAN_2025) == "FND-2025-00001"
    assert next_capa_code(JAN_2025) == "CPA-2025-00001"


@pytest.mark.unit
def test_code_follows_highest_existing_number(template):
    _audit_with_code("AUD-2025-00007", template)
    _audit_with_code("AUD-2025-00041", template)
    assert next_audit_code(JAN_2025) == "AUD-2025-00042"


@pytest.mark.unit
def test_sequence_restarts_for_a_new_year(template):
    _audit_with_code("AUD-2024-00099", template)
    assert next_audit_code(JAN_2025) == "AUD-2025-00001"
    assert next_audit_code(datetime(2024, 6, 1, tzinfo=timezone.utc)) == "AUD-2024-00100"
