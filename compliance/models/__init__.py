"""
Compliance Workflow & Scoring Engine
SQLAlchemy extension instance shared by every model module.

Model modules:
    - directory:    users, assignments, regions, branches, BCKs, suppliers
    - template:     audit templates (checklist + scoring config)
    - audit:        audit plans, audits, checklist results
    - finding:      findings, CAPAs (with embedded sub-tasks), CAPA activity log
    - health_score: current health/quality score snapshot per entity
    - notification: in-app notifications
    - scheduling:   scheduled job registry
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
