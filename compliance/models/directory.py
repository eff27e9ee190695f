"""
Compliance Workflow & Scoring Engine
Directory models: the read-only collaborators the engine consumes.

Models:
    - User: identity + single role
    - UserAssignment: user → region / branch / bck / supplier coverage
    - Region: grouping of branches and BCKs
    - Branch: retail branch (audited entity)
    - BCK: central kitchen (audited entity)
    - Supplier: supplier (audited entity)
"""

from datetime import datetime, timezone

from compliance.models import db


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {
    "super_admin",
    "audit_manager",
    "regional_manager",
    "auditor",
    "branch_manager",
    "bck_manager",
    "staff",
}
USER_STATUSES = {"active", "inactive"}
ASSIGNMENT_TYPES = {"region", "branch", "bck", "supplier"}
ENTITY_STATUSES = {"active", "inactive", "under_review"}
SUPPLIER_STATUSES = {"active", "inactive", "suspended", "under_review"}


class User(db.Model):
    """Directory user. The engine only reads role and status."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(db.String(30), nullable=False, index=True,
                     comment="super_admin, audit_manager, regional_manager, auditor, "
                             "branch_manager, bck_manager, staff")
    status = db.Column(db.String(20), default="active", comment="active, inactive")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "status": self.status,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.full_name} [{self.role}]>"


class UserAssignment(db.Model):
    """Which region or entity a user covers."""

    __tablename__ = "user_assignments"
    __table_args__ = (
        db.UniqueConstraint("user_id", "assigned_type", "assigned_id", name="uq_user_assignment"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    assigned_type = db.Column(db.String(20), nullable=False, comment="region, branch, bck, supplier")
    assigned_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "assigned_type": self.assigned_type,
            "assigned_id": self.assigned_id,
        }


class Region(db.Model):
    __tablename__ = "regions"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), default="active")

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name, "status": self.status}


class _ManagedSiteMixin:
    """Columns shared by branches and central kitchens."""

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    city = db.Column(db.String(100), default="")
    status = db.Column(db.String(20), default="active", comment="active, inactive, under_review")
    health_score = db.Column(db.Float, nullable=True,
                             comment="Cached copy of the current HealthScoreRecord score")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "city": self.city,
            "region_id": self.region_id,
            "manager_id": self.manager_id,
            "status": self.status,
            "health_score": self.health_score,
        }


class Branch(_ManagedSiteMixin, db.Model):
    __tablename__ = "branches"

    region_id = db.Column(db.Integer, db.ForeignKey("regions.id", ondelete="SET NULL"),
                          nullable=True, index=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<Branch {self.code}>"


class BCK(_ManagedSiteMixin, db.Model):
    """Central kitchen."""

    __tablename__ = "bcks"

    region_id = db.Column(db.Integer, db.ForeignKey("regions.id", ondelete="SET NULL"),
                          nullable=True, index=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<BCK {self.code}>"


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)
    supplier_code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    city = db.Column(db.String(100), default="")
    status = db.Column(db.String(20), default="active",
                       comment="active, inactive, suspended, under_review")
    quality_score = db.Column(db.Float, nullable=True,
                              comment="Cached copy of the current HealthScoreRecord score")
    certifications = db.Column(db.JSON, default=list,
                               comment="List of {name, expiry_date} certificates on file")
    supplies_to_bck_ids = db.Column(db.JSON, default=list,
                                    comment="BCK ids this supplier delivers to")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "supplier_code": self.supplier_code,
            "name": self.name,
            "city": self.city,
            "status": self.status,
            "quality_score": self.quality_score,
            "certifications": self.certifications or [],
            "supplies_to_bck_ids": self.supplies_to_bck_ids or [],
        }

    def __repr__(self):
        return f"<Supplier {self.supplier_code}>"
