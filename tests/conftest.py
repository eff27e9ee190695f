"""
Shared pytest fixtures for the compliance engine test suite.

Provides:
    - app: Flask application (session-scoped, evidence under a tmp dir)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: a small seeded directory (region, users, branch, bck, supplier)
    - template: an active branch checklist template
    - make_audit / make_capa: ORM builders for audits and CAPAs
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from compliance import create_app
from compliance.models import db as _db
from compliance.models.audit import Audit
from compliance.models.directory import BCK, Branch, Region, Supplier, User, UserAssignment
from compliance.models.finding import CAPA, SEVERITY_DUE_DAYS, Finding
from compliance.models.template import AuditTemplate
from compliance.services.activity import log_activity

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

CHECKLIST = {
    "sections": [
        {
            "id": "s1", "name": "Food Safety", "weight": 60,
            "items": [
                {"id": "i1", "text": "Fridge below 5C", "type": "pass_fail",
                 "points": 10, "critical": True, "evidence_required": "none"},
                {"id": "i2", "text": "Cleanliness", "type": "rating",
                 "points": 10, "critical": False, "evidence_required": "none"},
            ],
        },
        {
            "id": "s2", "name": "Front of House", "weight": 40,
            "items": [
                {"id": "i3", "text": "Signage", "type": "pass_fail",
                 "points": 10, "critical": False, "evidence_required": "none"},
                {"id": "i4", "text": "Opening checks", "type": "checklist",
                 "points": 10, "critical": False, "evidence_required": "none"},
            ],
        },
    ],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["EVIDENCE_ROOT"] = str(tmp_path_factory.mktemp("evidence"))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM helpers ───────────────────────────────────────────────────────────


def _make_user(role, name, status="active"):
    user = User(full_name=name, email=f"{name.lower().replace(' ', '.')}@example.com",
                role=role, status=status)
    _db.session.add(user)
    _db.session.flush()
    return user


def _assign(user, assigned_type, assigned_id):
    _db.session.add(UserAssignment(user_id=user.id, assigned_type=assigned_type,
                                   assigned_id=assigned_id))
    _db.session.flush()


class Directory:
    """Handle on the seeded directory records."""

    def __init__(self):
        self.region = Region(code="R-IST", name="Istanbul")
        self.other_region = Region(code="R-ANK", name="Ankara")
        _db.session.add_all([self.region, self.other_region])
        _db.session.flush()

        self.admin = _make_user("super_admin", "Ada Admin")
        self.audit_manager = _make_user("audit_manager", "Mina Manager")
        self.regional_manager = _make_user("regional_manager", "Rana Regional")
        self.other_regional = _make_user("regional_manager", "Oz Other")
        self.auditor = _make_user("auditor", "Aylin Auditor")
        self.second_auditor = _make_user("auditor", "Burak Auditor")
        self.branch_manager = _make_user("branch_manager", "Bora Branch")
        self.bck_manager = _make_user("bck_manager", "Kaan Kitchen")
        self.staff = _make_user("staff", "Sena Staff")

        self.branch = Branch(code="BR-001", name="Kadikoy", region_id=self.region.id,
                             manager_id=self.branch_manager.id)
        self.other_branch = Branch(code="BR-900", name="Cankaya",
                                   region_id=self.other_region.id)
        self.bck = BCK(code="BCK-01", name="Central Kitchen", region_id=self.region.id,
                       manager_id=self.bck_manager.id)
        _db.session.add_all([self.branch, self.other_branch, self.bck])
        _db.session.flush()

        self.supplier = Supplier(supplier_code="SUP-01", name="Fresh Farms",
                                 certifications=[{"name": "ISO 22000"}],
                                 supplies_to_bck_ids=[self.bck.id])
        _db.session.add(self.supplier)
        _db.session.flush()

        _assign(self.regional_manager, "region", self.region.id)
        _assign(self.other_regional, "region", self.other_region.id)
        _assign(self.staff, "branch", self.branch.id)
        _db.session.commit()


@pytest.fixture()
def org():
    return Directory()


def _make_template(entity_type="branch", code="TPL-BR", checklist=None, scoring=None,
                   status="active"):
    template = AuditTemplate(
        code=code,
        name=f"{entity_type.title()} Checklist",
        entity_type=entity_type,
        status=status,
        checklist_json=checklist or CHECKLIST,
        scoring_config=scoring or {"pass_threshold": 70, "critical_fail_rule": True,
                                   "weighted": True},
    )
    _db.session.add(template)
    _db.session.commit()
    return template


@pytest.fixture()
def template(org):
    return _make_template()


@pytest.fixture()
def make_template(org):
    return _make_template


_counter = {"audit": 0, "capa": 0}


def _next(kind):
    _counter[kind] += 1
    return _counter[kind]


@pytest.fixture()
def make_audit(org, template):
    """Build an Audit row directly, bypassing the scheduler."""

    def _make(entity_type="branch", entity_id=None, status="scheduled",
              auditor_id=None, scheduled_date=date(2025, 1, 10), template_id=None,
              **fields):
        entity_id = entity_id or {
            "branch": org.branch.id,
            "bck": org.bck.id,
            "supplier": org.supplier.id,
        }[entity_type]
        audit = Audit(
            code=f"AUD-T-{_next('audit'):05d}",
            template_id=template_id or template.id,
            entity_type=entity_type,
            entity_id=entity_id,
            auditor_id=auditor_id if auditor_id is not None else org.auditor.id,
            scheduled_date=scheduled_date,
            status=status,
            **fields,
        )
        _db.session.add(audit)
        _db.session.commit()
        return audit

    return _make


@pytest.fixture()
def make_capa(org, make_audit):
    """Build a Finding + CAPA pair directly. Returns the CAPA."""

    def _make(priority="medium", status="open", audit=None, created_at=NOW,
              evidence=None, sub_tasks=None, assigned_to=None, due_date=None, **fields):
        audit = audit or make_audit(status="submitted")
        n = _next("capa")
        finding = Finding(
            code=f"FND-T-{n:05d}",
            audit_id=audit.id,
            item_id=f"item-{n}",
            severity=priority,
            description=f"Finding {n}",
            status="open",
            created_at=created_at,
        )
        _db.session.add(finding)
        _db.session.flush()
        capa = CAPA(
            code=f"CPA-T-{n:05d}",
            finding_id=finding.id,
            audit_id=audit.id,
            entity_type=audit.entity_type,
            entity_id=audit.entity_id,
            description=f"Fix finding {n}",
            assigned_to=assigned_to or org.branch_manager.id,
            due_date=due_date or (created_at.date() + _days(priority)),
            status=status,
            priority=priority,
            evidence_urls=list(evidence or []),
            sub_tasks=list(sub_tasks or []),
            created_at=created_at,
            **fields,
        )
        _db.session.add(capa)
        _db.session.flush()
        log_activity(capa, None, "created", f"Created from finding {finding.code}",
                     now=created_at)
        _db.session.commit()
        return capa

    return _make


def _days(priority):
    return timedelta(days=SEVERITY_DUE_DAYS[priority])


def auth(user):
    """Request headers identifying ``user`` as the caller."""
    return {"X-User-Id": str(user.id)}


@pytest.fixture()
def headers():
    return auth
