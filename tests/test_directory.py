"""
Directory adapter and org-chart seeding tests.

Tests cover:
  - StaticDirectory lookups, key normalisation, department-head fallback
  - SqlDirectory over seeded employees (same answers as StaticDirectory)
  - seed_employees validation, upsert and the bundled sample org chart
  - Loading an org chart from a JSON file
"""

import json

import pytest
from sqlalchemy import func, select

from approval_engine.core.exceptions import ValidationError
from approval_engine.models import db
from approval_engine.models.directory import Employee
from approval_engine.services.directory import SqlDirectory, StaticDirectory, load_org_chart
from approval_engine.services.directory_admin import seed_employees

from conftest import ALICE, BOB, FINANCE, HANA, JANE, ORG_CHART, PRESIDENT


def _employee_count():
    return db.session.execute(select(func.count(Employee.id))).scalar()


class TestStaticDirectory:
    def test_resolve(self, static_directory):
        jane = static_directory.resolve(JANE)
        assert jane.key == JANE
        assert jane.display_name == "Jane Adeyemi"
        assert jane.department == "Engineering"
        assert jane.is_active is True
        assert jane.capacities == frozenset()

    def test_keys_are_case_insensitive(self, static_directory):
        assert static_directory.resolve("  JANE@Corp.Example ").key == JANE

    def test_unknown_key_is_none(self, static_directory):
        assert static_directory.resolve("ghost@corp.example") is None
        assert static_directory.supervisor_of("ghost@corp.example") is None
        assert static_directory.department_head_of("ghost@corp.example") is None
        assert static_directory.capacities_of("ghost@corp.example") == frozenset()

    def test_supervisor_of(self, static_directory):
        assert static_directory.supervisor_of(JANE).key == ALICE
        assert static_directory.supervisor_of(PRESIDENT) is None

    def test_department_head_falls_back_to_department(self, static_directory):
        assert static_directory.department_head_of(JANE).key == HANA
        assert static_directory.department_head_of(BOB).key == FINANCE

    def test_explicit_department_head_wins(self):
        directory = StaticDirectory([
            {"email": "a@x.example", "department": "Ops", "department_head": "c@x.example"},
            {"email": "b@x.example", "department": "Ops", "capacities": ["department_head"]},
            {"email": "c@x.example", "department": "Ops"},
        ])
        assert directory.department_head_of("a@x.example").key == "c@x.example"
        assert directory.department_head_of("c@x.example").key == "b@x.example"

    def test_capacities(self, static_directory):
        assert static_directory.capacities_of(FINANCE) == {"finance_officer", "department_head"}

    def test_inactive_flag(self):
        directory = StaticDirectory([{"email": "old@x.example", "active": False}])
        assert directory.resolve("old@x.example").is_active is False

    def test_record_without_email_rejected(self):
        with pytest.raises(ValueError):
            StaticDirectory([{"name": "Nobody"}])

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "org.json"
        path.write_text(json.dumps({"people": ORG_CHART}), encoding="utf-8")
        directory = StaticDirectory.from_json_file(str(path))
        assert len(directory) == len(ORG_CHART)
        assert directory.supervisor_of(ALICE).key == HANA

    def test_bare_list_file(self, tmp_path):
        path = tmp_path / "org.json"
        path.write_text(json.dumps(ORG_CHART[:2]), encoding="utf-8")
        assert [r["email"] for r in load_org_chart(str(path))] == [PRESIDENT, FINANCE]


class TestSqlDirectory:
    def test_matches_static_directory(self, org, static_directory):
        sql = SqlDirectory()
        for row in ORG_CHART:
            key = row["email"]
            for lookup in ("resolve", "supervisor_of", "department_head_of"):
                expected = getattr(static_directory, lookup)(key)
                got = getattr(sql, lookup)(key)
                assert (got.key if got else None) == (expected.key if expected else None), (lookup, key)

    def test_identity_fields(self, org):
        finance = SqlDirectory().resolve("Finance@Corp.Example")
        assert finance.key == FINANCE
        assert finance.display_name == "Frank Mbeki"
        assert finance.capacities == {"finance_officer", "department_head"}
        assert finance.id is not None

    def test_unknown_key(self, org):
        assert SqlDirectory().resolve("ghost@corp.example") is None
        assert SqlDirectory().supervisor_of("ghost@corp.example") is None


class TestSeedEmployees:
    def test_seeds_org_chart(self, org):
        assert _employee_count() == len(ORG_CHART)
        jane = db.session.execute(select(Employee).where(Employee.email == JANE)).scalar_one()
        assert jane.supervisor.email == ALICE
        assert jane.department_head.email == HANA

    def test_reseeding_updates_in_place(self, org):
        changed = [dict(row) for row in ORG_CHART]
        changed[-1]["name"] = "Jane A. Adeyemi"
        changed[-1]["supervisor"] = HANA
        assert seed_employees(changed) == len(ORG_CHART)
        assert _employee_count() == len(ORG_CHART)
        jane = SqlDirectory()
        assert jane.resolve(JANE).display_name == "Jane A. Adeyemi"
        assert jane.supervisor_of(JANE).key == HANA

    def test_forward_references(self):
        seed_employees([
            {"email": "junior@x.example", "supervisor": "senior@x.example"},
            {"email": "senior@x.example"},
        ])
        assert SqlDirectory().supervisor_of("junior@x.example").key == "senior@x.example"

    @pytest.mark.parametrize("records", [
        [{"name": "No Email"}],
        [{"email": "a@x.example"}, {"email": "A@x.example"}],
        [{"email": "a@x.example", "capacities": ["chief_wizard"]}],
    ])
    def test_invalid_records_write_nothing(self, records):
        with pytest.raises(ValidationError):
            seed_employees(records)
        assert _employee_count() == 0

    def test_sample_org_chart(self):
        assert seed_employees() == 7
        sql = SqlDirectory()
        assert sql.supervisor_of(JANE).key == ALICE
        assert "finance_officer" in sql.capacities_of(FINANCE)
