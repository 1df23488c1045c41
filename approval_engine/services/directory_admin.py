"""
Directory administration — loading an org chart into the employees table.

The engine itself never writes the directory; this module is used by the
``flask seed-directory`` command and scripts/seed_directory.py.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import select

from approval_engine.core.exceptions import ValidationError
from approval_engine.models import db
from approval_engine.models.directory import APPROVAL_CAPACITIES, Employee
from approval_engine.services.directory import load_org_chart, normalise_key

logger = logging.getLogger(__name__)

SAMPLE_ORG_CHART = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "scripts", "seed_data", "org_chart.json",
)


def _validate(records: list) -> None:
    seen = set()
    for i, row in enumerate(records, 1):
        key = normalise_key(row.get("email"))
        if not key:
            raise ValidationError(f"Record #{i} has no email", details={"record": i})
        if key in seen:
            raise ValidationError(f"Duplicate email {key}", details={"email": key})
        seen.add(key)
        unknown = set(row.get("capacities") or ()) - APPROVAL_CAPACITIES
        if unknown:
            raise ValidationError(
                f"Unknown capacities for {key}: {sorted(unknown)}",
                details={"capacities": sorted(unknown)},
            )


def seed_employees(source=None) -> int:
    """Upsert employees from a path or a list of org-chart records.

    Reporting lines are resolved in a second pass so records may reference
    people defined later in the file. Returns the number of records written.
    """
    if source is None:
        source = SAMPLE_ORG_CHART
    records = load_org_chart(source) if isinstance(source, str) else list(source)
    _validate(records)

    by_key: dict[str, Employee] = {}
    for row in records:
        key = normalise_key(row["email"])
        emp = db.session.execute(
            select(Employee).where(Employee.email == key)
        ).scalar_one_or_none()
        if emp is None:
            emp = Employee(email=key)
            db.session.add(emp)
        emp.full_name = row.get("name") or key
        emp.department = row.get("department") or ""
        emp.position = row.get("position") or ""
        emp.is_active = bool(row.get("active", True))
        emp.approval_capacities = list(row.get("capacities") or [])
        by_key[key] = emp
    db.session.flush()

    heads = {}
    for key, emp in by_key.items():
        if "department_head" in (emp.approval_capacities or []) and emp.department:
            heads.setdefault(emp.department, emp)

    for row in records:
        emp = by_key[normalise_key(row["email"])]
        sup = by_key.get(normalise_key(row.get("supervisor")))
        head = by_key.get(normalise_key(row.get("department_head"))) or heads.get(emp.department)
        emp.supervisor_id = sup.id if sup else None
        emp.department_head_id = head.id if head else None
        if row.get("supervisor") and sup is None:
            logger.warning("Supervisor %s of %s is not in the org chart", row["supervisor"], emp.email)

    db.session.commit()
    logger.info("Seeded %d employees", len(by_key))
    return len(by_key)
