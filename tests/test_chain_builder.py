"""
ChainBuilder unit tests.

Tests cover:
  - Dynamic walk: dedup of multi-role approvers, department head merge
  - Finance step: appended last, merged and moved when already present
  - Walk recovery: cycles, max_levels, inactive supervisors
  - skip_levels escalation and empty-chain errors
  - Fixed shapes: invoice (finance always last) and customer onboarding
  - Graded chains: level roles, skipped level 3, substitution policy
  - Preview and duration estimate
"""

import pytest

from approval_engine.core.exceptions import EmptyChainError, NotFoundError, ValidationError
from approval_engine.services.chain_builder import ChainBuilder, primary_capacity
from approval_engine.services.directory import StaticDirectory

from conftest import ALICE, BOB, FINANCE, HANA, JANE, PRESIDENT, ROLE_HOLDERS, SUPPLY


def _keys(chain):
    return [s.approver_key for s in chain.steps]


def _small_org(*records, **role_holders):
    return ChainBuilder(StaticDirectory(records), role_holders)


# ═════════════════════════════════════════════════════════════════════════
# DYNAMIC WALK
# ═════════════════════════════════════════════════════════════════════════

class TestDynamicWalk:
    def test_supervisor_who_is_department_head_appears_once(self):
        builder = _small_org(
            {"email": "r@x.example", "department": "Ops", "supervisor": "a@x.example"},
            {"email": "a@x.example", "department": "Ops", "supervisor": "b@x.example"},
            {"email": "b@x.example", "department": "Ops", "capacities": ["department_head"]},
        )
        chain = builder.build("r@x.example", "general")

        assert [(s.level, s.approver_key, s.capacity) for s in chain.steps] == [
            (1, "a@x.example", "direct_supervisor"),
            (2, "b@x.example", "direct_supervisor"),
        ]
        assert chain.steps[1].capacities == ["direct_supervisor", "department_head"]

    def test_general_chain_walks_to_the_top(self, builder):
        chain = builder.build(JANE, "general")
        assert _keys(chain) == [ALICE, HANA, PRESIDENT]
        assert chain.steps[2].capacities == ["direct_supervisor", "department_head"]
        assert chain.current_level == 1
        assert all(s.status == "pending" for s in chain.steps)

    def test_levels_are_contiguous(self, builder):
        chain = builder.build(JANE, "purchase")
        assert [s.level for s in chain.steps] == list(range(1, len(chain) + 1))

    def test_department_head_outside_walk_is_added(self):
        builder = _small_org(
            {"email": "r@x.example", "department": "Ops", "supervisor": "a@x.example"},
            {"email": "a@x.example", "department": "Ops", "department_head": "h@x.example"},
            {"email": "h@x.example", "department": "Ops"},
        )
        chain = builder.build("r@x.example")
        assert _keys(chain) == ["a@x.example", "h@x.example"]
        assert chain.steps[1].capacity == "department_head"

    def test_requester_is_never_their_own_approver(self, builder):
        # hana heads Engineering; the walk ends at the president
        chain = builder.build(HANA, "general")
        assert HANA not in _keys(chain)
        assert _keys(chain) == [PRESIDENT]

    def test_requester_key_is_case_insensitive(self, builder):
        assert _keys(builder.build("Jane@Corp.Example")) == [ALICE, HANA, PRESIDENT]


class TestFinanceStep:
    def test_purchase_appends_finance_last(self, builder):
        chain = builder.build(JANE, "purchase")
        assert _keys(chain) == [ALICE, HANA, PRESIDENT, FINANCE]
        assert chain.steps[-1].capacity == "finance_officer"

    def test_department_head_who_is_finance_officer_is_merged(self):
        builder = _small_org(
            {"email": "r@x.example", "supervisor": "a@x.example", "department_head": "f@x.example"},
            {"email": "a@x.example", "department_head": "f@x.example"},
            {"email": "f@x.example", "capacities": ["finance_officer"]},
            finance_officer="f@x.example",
        )
        chain = builder.build("r@x.example", "purchase")

        assert len(chain) == 2
        assert chain.steps[1].approver_key == "f@x.example"
        assert chain.steps[1].capacities == ["department_head", "finance_officer"]

    def test_finance_already_in_walk_moves_to_last_level(self, builder):
        # bob → finance → president; finance was level 1
        chain = builder.build(BOB, "purchase")
        assert _keys(chain) == [PRESIDENT, FINANCE]
        assert chain.steps[-1].capacities == ["direct_supervisor", "finance_officer"]

    @pytest.mark.parametrize("requester", [JANE, BOB, ALICE, HANA, SUPPLY])
    def test_finance_appears_exactly_once_at_highest_level(self, builder, requester):
        chain = builder.build(requester, "purchase")
        finance_steps = [s for s in chain.steps if "finance_officer" in s.capacities]
        assert len(finance_steps) == 1
        assert finance_steps[0].level == len(chain)
        assert finance_steps[0].approver_key == FINANCE

    def test_require_finance_flag_on_general(self, builder):
        chain = builder.build(JANE, "general", require_finance=True)
        assert _keys(chain)[-1] == FINANCE

    def test_budget_requires_finance(self, builder):
        assert _keys(builder.build(JANE, "budget"))[-1] == FINANCE

    def test_unresolvable_finance_officer_is_skipped_for_purchase(self, static_directory):
        builder = ChainBuilder(static_directory, {"finance_officer": "ghost@corp.example"})
        chain = builder.build(JANE, "purchase")
        assert _keys(chain) == [ALICE, HANA, PRESIDENT]

    def test_top_requester_gets_finance_only(self, builder):
        chain = builder.build(PRESIDENT, "purchase")
        assert _keys(chain) == [FINANCE]


class TestWalkRecovery:
    def test_cycle_truncates_walk(self):
        builder = _small_org(
            {"email": "x@x.example", "supervisor": "y@x.example"},
            {"email": "y@x.example", "supervisor": "x@x.example"},
        )
        chain = builder.build("x@x.example")
        assert _keys(chain) == ["y@x.example"]

    def test_max_levels_bounds_the_walk(self, static_directory):
        builder = ChainBuilder(static_directory, ROLE_HOLDERS, max_levels=2)
        chain = builder.build(JANE)
        # walk stops at hana; hana is also the Engineering head
        assert _keys(chain) == [ALICE, HANA]
        assert chain.steps[1].capacities == ["direct_supervisor", "department_head"]

    def test_inactive_supervisor_stops_walk(self):
        builder = _small_org(
            {"email": "r@x.example", "department": "Ops", "supervisor": "a@x.example"},
            {"email": "a@x.example", "department": "Ops", "supervisor": "b@x.example", "active": False},
            {"email": "b@x.example", "department": "Ops", "capacities": ["department_head"]},
        )
        chain = builder.build("r@x.example")
        assert _keys(chain) == ["b@x.example"]
        assert chain.steps[0].capacity == "department_head"

    def test_max_levels_must_be_positive(self, static_directory):
        with pytest.raises(ValueError):
            ChainBuilder(static_directory, max_levels=0)


class TestSkipLevels:
    def test_skip_drops_first_levels_and_renumbers(self, builder):
        chain = builder.build(JANE, "general", skip_levels=1)
        assert _keys(chain) == [HANA, PRESIDENT]
        assert [s.level for s in chain.steps] == [1, 2]

    def test_finance_survives_skip(self, builder):
        chain = builder.build(JANE, "purchase", skip_levels=10)
        assert _keys(chain) == [FINANCE]

    def test_skipping_everything_is_empty(self, builder):
        with pytest.raises(EmptyChainError):
            builder.build(JANE, "general", skip_levels=3)

    def test_negative_skip_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build(JANE, "general", skip_levels=-1)


class TestBuildErrors:
    def test_unknown_requester(self, builder):
        with pytest.raises(NotFoundError) as exc:
            builder.build("nobody@corp.example")
        assert "nobody@corp.example" in str(exc.value)

    def test_no_approver_is_empty_chain(self, builder):
        with pytest.raises(EmptyChainError):
            builder.build(PRESIDENT, "general")

    def test_unknown_workflow_kind(self, builder):
        with pytest.raises(ValidationError):
            builder.build(JANE, "holiday")

    def test_task_completion_needs_build_graded(self, builder):
        with pytest.raises(ValidationError):
            builder.build(JANE, "task_completion")


# ═════════════════════════════════════════════════════════════════════════
# FIXED SHAPES
# ═════════════════════════════════════════════════════════════════════════

class TestInvoiceChain:
    def test_full_invoice_chain(self, builder):
        chain = builder.build(JANE, "invoice")
        assert _keys(chain) == [ALICE, HANA, PRESIDENT, FINANCE]
        assert [s.capacity for s in chain.steps] == [
            "direct_supervisor", "department_head", "business_head", "finance_officer",
        ]

    def test_supervisor_who_is_department_head_merges(self, builder):
        chain = builder.build(ALICE, "invoice")
        assert _keys(chain) == [HANA, PRESIDENT, FINANCE]
        assert chain.steps[0].capacities == ["direct_supervisor", "department_head"]

    def test_finance_is_last_even_when_it_is_the_supervisor(self, builder):
        chain = builder.build(BOB, "invoice")
        assert _keys(chain) == [PRESIDENT, FINANCE]
        assert chain.steps[-1].capacities == ["direct_supervisor", "department_head", "finance_officer"]

    def test_finance_appended_when_every_other_role_is_missing(self):
        builder = _small_org(
            {"email": "solo@x.example"},
            {"email": "f@x.example", "capacities": ["finance_officer"]},
            finance_officer="f@x.example",
        )
        assert _keys(builder.build("solo@x.example", "invoice")) == ["f@x.example"]

    def test_unresolvable_finance_officer_fails(self, static_directory):
        builder = ChainBuilder(static_directory, {"finance_officer": "ghost@corp.example"})
        with pytest.raises(NotFoundError):
            builder.build(JANE, "invoice")

    def test_finance_officer_cannot_approve_own_invoice(self, builder):
        with pytest.raises(ValidationError):
            builder.build(FINANCE, "invoice")


class TestCustomerOnboardingChain:
    def test_fixed_order(self, builder):
        chain = builder.build(JANE, "customer_onboarding")
        assert _keys(chain) == [SUPPLY, FINANCE, PRESIDENT]
        assert [s.capacity for s in chain.steps] == [
            "supply_chain_coordinator", "finance_officer", "business_head",
        ]

    def test_requester_role_is_skipped(self, builder):
        assert _keys(builder.build(SUPPLY, "customer_onboarding")) == [FINANCE, PRESIDENT]


# ═════════════════════════════════════════════════════════════════════════
# GRADED CHAINS
# ═════════════════════════════════════════════════════════════════════════

class TestGradedBuild:
    def test_standalone_item_skips_level_three(self, builder):
        chain = builder.build_graded(JANE, None, task_weight=20)
        assert [s.level_role for s in chain.steps] == [
            "immediate_supervisor", "supervisor_of_supervisor", "originating_creator",
        ]
        assert _keys(chain) == [ALICE, HANA, None]
        assert chain.steps[2].status == "skipped"
        assert chain.current_level == 1

    def test_originator_holds_level_three(self, builder):
        chain = builder.build_graded(JANE, PRESIDENT, task_weight=20)
        assert _keys(chain) == [ALICE, HANA, PRESIDENT]
        assert chain.steps[2].capacity == "project_creator"

    def test_originator_in_supervisor_line_is_substituted(self, builder):
        # hana would be level 2 and level 3; level 2 moves up to the president
        chain = builder.build_graded(JANE, HANA, task_weight=20)
        assert _keys(chain) == [ALICE, PRESIDENT, HANA]

    def test_no_identity_occupies_two_graded_levels(self, builder):
        for assignee in (JANE, ALICE, BOB):
            for originator in (None, HANA, PRESIDENT, FINANCE):
                keys = [k for k in _keys(builder.build_graded(assignee, originator)) if k]
                assert len(keys) == len(set(keys))
                assert assignee not in keys

    def test_level_without_candidate_is_skipped(self, builder):
        chain = builder.build_graded(ALICE, HANA)
        assert _keys(chain) == [PRESIDENT, None, HANA]
        assert chain.steps[1].status == "skipped"

    def test_top_level_assignee_with_originator(self, builder):
        chain = builder.build_graded(PRESIDENT, HANA)
        assert [s.status for s in chain.steps] == ["skipped", "skipped", "pending"]
        assert chain.current_level == 3

    def test_nobody_to_grade_is_empty(self, builder):
        with pytest.raises(EmptyChainError):
            builder.build_graded(PRESIDENT, None)

    def test_originator_equal_to_assignee_is_dropped(self, builder):
        chain = builder.build_graded(JANE, JANE)
        assert chain.steps[2].status == "skipped"

    def test_unknown_assignee(self, builder):
        with pytest.raises(NotFoundError):
            builder.build_graded("ghost@corp.example")

    def test_fallback_capacity_comes_from_directory(self):
        class AuditedDirectory(StaticDirectory):
            def capacities_of(self, key):
                if key == "controller@x.example":
                    return frozenset({"finance_officer"})
                return super().capacities_of(key)

        directory = AuditedDirectory([
            {"email": "lead@x.example"},
            {"email": "dev@x.example", "supervisor": "lead@x.example"},
            {"email": "controller@x.example"},
        ])
        builder = ChainBuilder(directory, {}, grading_fallback_key="controller@x.example")
        chain = builder.build_graded("dev@x.example", None)
        assert _keys(chain) == ["lead@x.example", "controller@x.example", None]
        assert chain.steps[1].capacity == "finance_officer"


# ═════════════════════════════════════════════════════════════════════════
# PREVIEW & HELPERS
# ═════════════════════════════════════════════════════════════════════════

class TestPreview:
    def test_preview_purchase(self, builder):
        preview = builder.preview(JANE, "purchase")
        assert preview["total_steps"] == 4
        assert preview["estimated_time"] == {
            "hours": 96, "business_days": 12, "display_text": "12-14 business days",
        }
        assert preview["steps"][-1]["approver_key"] == FINANCE
        assert preview["steps"][2]["all_capacities"] == ["direct_supervisor", "department_head"]

    def test_preview_graded_counts_active_levels(self, builder):
        preview = builder.preview(JANE, "task_completion", task_weight=10)
        assert preview["total_steps"] == 2
        assert preview["steps"][2]["status"] == "skipped"

    def test_estimate_rounds_up_business_days(self, static_directory):
        builder = ChainBuilder(static_directory, hours_per_level=4)
        assert builder.estimate_duration(3)["business_days"] == 2


class TestPrimaryCapacity:
    def test_priority_order(self):
        assert primary_capacity(["finance_officer", "department_head"]) == "department_head"
        assert primary_capacity(["business_head", "technical_director"]) == "technical_director"

    def test_fallback_to_first_held(self):
        assert primary_capacity(["project_creator"]) == "project_creator"
        assert primary_capacity([]) == "direct_supervisor"
