"""
Directory adapters — read-only organizational lookups for the engine.

The engine never mutates the directory. Two adapters share one interface:

    SqlDirectory     backed by the ``employees`` table (Employee model)
    StaticDirectory  backed by an in-memory org chart, optionally loaded
                     from a JSON file (APPROVAL_DIRECTORY_FILE)

Usage:
    from approval_engine.services.directory import SqlDirectory
    directory = SqlDirectory()
    boss = directory.supervisor_of("jane@corp.example")
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import select

from approval_engine.models import db
from approval_engine.models.directory import Employee

logger = logging.getLogger(__name__)


def normalise_key(key: str | None) -> str:
    """Identity keys are contact addresses compared case-insensitively."""
    return (key or "").strip().lower()


@dataclass(frozen=True)
class Identity:
    """A person as seen by the engine. Capacities are read-only tags."""

    key: str
    display_name: str
    department: str = ""
    id: Any = None
    is_active: bool = True
    capacities: frozenset = field(default_factory=frozenset)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "display_name": self.display_name,
            "department": self.department,
            "is_active": self.is_active,
            "capacities": sorted(self.capacities),
        }


def load_org_chart(path: str) -> list:
    """Read an org chart file: ``{"people": [...]}`` or a bare list of records."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    return data.get("people", []) if isinstance(data, dict) else list(data)


class Directory(ABC):
    """Read-only lookup of identities and reporting lines.

    Every method returns ``None`` (or an empty set) for unknown keys rather
    than raising; deciding whether absence is fatal belongs to the caller.
    """

    @abstractmethod
    def resolve(self, key: str) -> Identity | None:
        """Return the identity for ``key`` or None."""

    @abstractmethod
    def supervisor_of(self, key: str) -> Identity | None:
        """Return the direct supervisor of ``key`` or None."""

    @abstractmethod
    def department_head_of(self, key: str) -> Identity | None:
        """Return the department head of ``key`` or None."""

    def capacities_of(self, key: str) -> frozenset:
        identity = self.resolve(key)
        return identity.capacities if identity else frozenset()


# ═════════════════════════════════════════════════════════════════════════════
# SQL-backed directory
# ═════════════════════════════════════════════════════════════════════════════


def _identity_from_employee(emp: Employee | None) -> Identity | None:
    if emp is None:
        return None
    return Identity(
        key=emp.email,
        display_name=emp.full_name,
        department=emp.department or "",
        id=emp.id,
        is_active=bool(emp.is_active),
        capacities=frozenset(emp.approval_capacities or ()),
    )


class SqlDirectory(Directory):
    """Directory over the Employee table. Needs an application context."""

    def _employee(self, key: str) -> Employee | None:
        return db.session.execute(
            select(Employee).where(Employee.email == normalise_key(key))
        ).scalar_one_or_none()

    def resolve(self, key: str) -> Identity | None:
        return _identity_from_employee(self._employee(key))

    def supervisor_of(self, key: str) -> Identity | None:
        emp = self._employee(key)
        if emp is None or emp.supervisor_id is None:
            return None
        return _identity_from_employee(db.session.get(Employee, emp.supervisor_id))

    def department_head_of(self, key: str) -> Identity | None:
        emp = self._employee(key)
        if emp is None or emp.department_head_id is None:
            return None
        return _identity_from_employee(db.session.get(Employee, emp.department_head_id))


# ═════════════════════════════════════════════════════════════════════════════
# In-memory directory
# ═════════════════════════════════════════════════════════════════════════════


class StaticDirectory(Directory):
    """Directory over a fixed org chart.

    Each record is a mapping with keys: ``email`` (required), ``name``,
    ``department``, ``supervisor`` (email), ``department_head`` (email),
    ``capacities`` (list) and ``active`` (bool, default True). When a record
    has no ``department_head`` the head of its department is taken from the
    first record of that department holding the ``department_head`` capacity.
    """

    def __init__(self, records: Iterable[dict]):
        self._people: dict[str, Identity] = {}
        self._supervisor: dict[str, str] = {}
        self._department_head: dict[str, str] = {}
        heads_by_department: dict[str, str] = {}

        rows = list(records)
        for i, row in enumerate(rows, 1):
            key = normalise_key(row.get("email"))
            if not key:
                raise ValueError(f"Directory record #{i} has no email")
            capacities = frozenset(row.get("capacities") or ())
            department = row.get("department") or ""
            self._people[key] = Identity(
                key=key,
                display_name=row.get("name") or key,
                department=department,
                id=row.get("id", key),
                is_active=bool(row.get("active", True)),
                capacities=capacities,
            )
            if row.get("supervisor"):
                self._supervisor[key] = normalise_key(row["supervisor"])
            if row.get("department_head"):
                self._department_head[key] = normalise_key(row["department_head"])
            if "department_head" in capacities and department:
                heads_by_department.setdefault(department, key)

        for key, identity in self._people.items():
            if key not in self._department_head and identity.department in heads_by_department:
                self._department_head[key] = heads_by_department[identity.department]

        logger.debug("StaticDirectory loaded %d identities", len(self._people))

    @classmethod
    def from_json_file(cls, path: str) -> "StaticDirectory":
        return cls(load_org_chart(path))

    def __len__(self) -> int:
        return len(self._people)

    def resolve(self, key: str) -> Identity | None:
        return self._people.get(normalise_key(key))

    def supervisor_of(self, key: str) -> Identity | None:
        sup = self._supervisor.get(normalise_key(key))
        return self._people.get(sup) if sup else None

    def department_head_of(self, key: str) -> Identity | None:
        head = self._department_head.get(normalise_key(key))
        return self._people.get(head) if head else None
