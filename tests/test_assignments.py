"""Tests for the assignment store: placement, ranks, moves and soft delete."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import MONDAY, SATURDAY, TUESDAY, slot_ranks
from planner.domain.scheduling.schemas import (
    AssignmentCreate,
    AssignmentMove,
    AssignmentUpdate,
)
from planner.errors import (
    CapacityError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from planner.models import Assignment, Employee, ProjectTask


class TestCreate:
    def test_items_append_at_end_of_slot(self, assignments, place, seed):
        first = place(seed.alice)
        second = place(seed.alice)
        third = place(seed.alice)

        ranks = slot_ranks(assignments, seed.alice)
        assert [r[0] for r in ranks] == [first.id, second.id, third.id]
        assert [r[1] for r in ranks] == [0, 1, 2]
        # Three items: two halves on top, one full-width below
        assert [r[2] for r in ranks] == [0, 2, 0]

    def test_fifth_item_is_rejected_and_slot_unchanged(self, assignments, place, seed):
        """Four items fill a slot; the fifth create fails with CapacityError."""
        for _ in range(4):
            place(seed.alice)
        before = slot_ranks(assignments, seed.alice)

        with pytest.raises(CapacityError):
            place(seed.alice)

        assert slot_ranks(assignments, seed.alice) == before
        assert len(before) == 4

    def test_admin_override_allows_overbooking(self, assignments, place, seed):
        for _ in range(4):
            place(seed.alice)
        extra = place(seed.alice, allowOverbook=True)
        assert extra.slot_order == 4
        assert assignments.ledger.capacity_of(seed.alice.id, MONDAY, "morning").overbooked

    def test_team_member_cannot_override(self, assignments, seed):
        data = AssignmentCreate(
            employeeId=seed.alice.id,
            date=MONDAY,
            slot="morning",
            taskId=seed.task.id,
            allowOverbook=True,
        )
        with pytest.raises(PermissionDeniedError):
            assignments.create_assignment(data, seed.member)

    def test_weekend_date_rejected(self, place, seed):
        with pytest.raises(ValidationError):
            place(seed.alice, day=SATURDAY)

    def test_unknown_task_is_not_found(self, assignments, seed):
        data = AssignmentCreate(employeeId=seed.alice.id, date=MONDAY, slot="morning", taskId=999)
        with pytest.raises(NotFoundError):
            assignments.create_assignment(data, seed.admin)

    def test_inline_task_is_created(self, assignments, db, seed):
        data = AssignmentCreate(
            employeeId=seed.alice.id,
            date=MONDAY,
            slot="afternoon",
            projectId=seed.project.id,
            taskTypeId=seed.task_type.id,
            title="Elevations",
        )
        assignment = assignments.create_assignment(data, seed.admin)
        task = db.query(ProjectTask).filter(ProjectTask.id == assignment.task_id).one()
        assert task.title == "Elevations"

    def test_member_may_only_schedule_themselves(self, assignments, seed):
        data = AssignmentCreate(employeeId=seed.bob.id, date=MONDAY, slot="morning", taskId=seed.task.id)
        with pytest.raises(PermissionDeniedError):
            assignments.create_assignment(data, seed.member)

    def test_manager_cannot_schedule_other_team(self, assignments, seed):
        data = AssignmentCreate(employeeId=seed.carol.id, date=MONDAY, slot="morning", taskId=seed.task.id)
        with pytest.raises(PermissionDeniedError):
            assignments.create_assignment(data, seed.manager)

    def test_create_publishes_event(self, place, seed, notifier):
        from planner.domain.events.notifier import Scope

        subscription = notifier.subscribe(Scope.teams(seed.design.id))
        created = place(seed.alice)
        event = subscription.get(timeout=0)
        assert event.event_type == "assignment_created"
        assert event.data["assignmentId"] == created.id
        assert event.slot == "morning"


class TestDelete:
    def test_delete_middle_item_closes_gap(self, assignments, place, seed):
        """Deleting rank 1 of three re-ranks the others to {0, 1} in halves."""
        first, middle, last = place(seed.alice), place(seed.alice), place(seed.alice)

        assignments.delete_assignment(middle.id, seed.admin)

        ranks = slot_ranks(assignments, seed.alice)
        assert [(r[0], r[1]) for r in ranks] == [(first.id, 0), (last.id, 1)]
        assert [r[2] for r in ranks] == [0, 2]

    def test_delete_is_soft(self, assignments, db, place, seed):
        created = place(seed.alice)
        assignments.delete_assignment(created.id, seed.admin)
        db.expire_all()
        row = db.query(Assignment).filter(Assignment.id == created.id).one()
        assert row.is_active is False

    def test_second_delete_is_not_found_and_siblings_unchanged(self, assignments, place, seed):
        first, second = place(seed.alice), place(seed.alice)
        assignments.delete_assignment(first.id, seed.admin)
        before = slot_ranks(assignments, seed.alice)

        with pytest.raises(NotFoundError):
            assignments.delete_assignment(first.id, seed.admin)

        assert slot_ranks(assignments, seed.alice) == before
        assert before == [(second.id, 0, 0)]

    def test_freed_capacity_can_be_reused(self, place, assignments, seed):
        items = [place(seed.alice) for _ in range(4)]
        assignments.delete_assignment(items[0].id, seed.admin)
        assert place(seed.alice).slot_order == 3


class TestMove:
    def test_move_rebalances_both_slots(self, assignments, place, seed):
        a, b, c = place(seed.alice), place(seed.alice), place(seed.alice)
        target = place(seed.bob, day=TUESDAY, slot="afternoon")

        moved = assignments.move_assignment(
            a.id, AssignmentMove(employeeId=seed.bob.id, date=TUESDAY, slot="afternoon"), seed.admin
        )

        assert moved.employee_id == seed.bob.id
        assert [(r[0], r[1]) for r in slot_ranks(assignments, seed.alice)] == [(b.id, 0), (c.id, 1)]
        destination = slot_ranks(assignments, seed.bob, TUESDAY, "afternoon")
        assert [(r[0], r[1], r[2]) for r in destination] == [(target.id, 0, 0), (a.id, 1, 2)]

    def test_failed_move_leaves_both_slots_untouched(self, assignments, place, seed):
        source = [place(seed.alice) for _ in range(2)]
        for _ in range(4):
            place(seed.bob)
        before_source = slot_ranks(assignments, seed.alice)
        before_target = slot_ranks(assignments, seed.bob)

        with pytest.raises(CapacityError):
            assignments.move_assignment(
                source[0].id,
                AssignmentMove(employeeId=seed.bob.id, date=MONDAY, slot="morning"),
                seed.admin,
            )

        assert slot_ranks(assignments, seed.alice) == before_source
        assert slot_ranks(assignments, seed.bob) == before_target

    def test_move_within_full_slot_reenters_at_end(self, assignments, place, seed):
        items = [place(seed.alice) for _ in range(4)]

        assignments.move_assignment(
            items[0].id,
            AssignmentMove(employeeId=seed.alice.id, date=MONDAY, slot="morning"),
            seed.admin,
        )

        order = [r[0] for r in slot_ranks(assignments, seed.alice)]
        assert order == [items[1].id, items[2].id, items[3].id, items[0].id]

    def test_move_of_deleted_assignment_is_not_found(self, assignments, place, seed):
        created = place(seed.alice)
        assignments.delete_assignment(created.id, seed.admin)
        with pytest.raises(NotFoundError):
            assignments.move_assignment(
                created.id,
                AssignmentMove(employeeId=seed.alice.id, date=TUESDAY, slot="morning"),
                seed.admin,
            )

    def test_work_can_leave_deactivated_employee(self, assignments, db, place, seed):
        created = place(seed.alice)
        db.query(Employee).filter(Employee.id == seed.alice.id).update({"is_active": False})
        db.commit()

        moved = assignments.move_assignment(
            created.id, AssignmentMove(employeeId=seed.bob.id, date=MONDAY, slot="morning"), seed.admin
        )

        assert moved.employee_id == seed.bob.id
        assert slot_ranks(assignments, seed.alice) == []

    def test_cannot_move_onto_deactivated_employee(self, assignments, db, place, seed):
        created = place(seed.alice)
        db.query(Employee).filter(Employee.id == seed.bob.id).update({"is_active": False})
        db.commit()

        with pytest.raises(NotFoundError):
            assignments.move_assignment(
                created.id, AssignmentMove(employeeId=seed.bob.id, date=MONDAY, slot="morning"), seed.admin
            )
        assert [r[0] for r in slot_ranks(assignments, seed.alice)] == [created.id]


class TestReorder:
    def test_reorder_to_explicit_rank(self, assignments, place, seed):
        a, b, c = place(seed.alice), place(seed.alice), place(seed.alice)
        assignments.reorder_assignment(c.id, 0, seed.admin)
        assert [(r[0], r[1]) for r in slot_ranks(assignments, seed.alice)] == [
            (c.id, 0),
            (a.id, 1),
            (b.id, 2),
        ]

    def test_rank_outside_slot_rejected(self, assignments, place, seed):
        created = place(seed.alice)
        with pytest.raises(ValidationError):
            assignments.reorder_assignment(created.id, 1, seed.admin)


class TestUpdate:
    def test_payload_change_keeps_placement(self, assignments, place, seed):
        place(seed.alice)
        second = place(seed.alice)
        before = slot_ranks(assignments, seed.alice)

        updated = assignments.update_assignment(
            second.id, AssignmentUpdate(status="in_progress", notes="Check with client", hours=3), seed.admin
        )

        assert updated.status == "in_progress"
        assert updated.notes == "Check with client"
        assert updated.hours == 3
        assert slot_ranks(assignments, seed.alice) == before

    def test_invalid_hours_rejected_by_schema(self):
        with pytest.raises(ValueError):
            AssignmentUpdate(hours=5)

    def test_bulk_update_collects_per_item_errors(self, assignments, place, seed):
        first, second = place(seed.alice), place(seed.alice)
        assignments.delete_assignment(second.id, seed.admin)

        result = assignments.bulk_update(
            [first.id, second.id, 4242], AssignmentUpdate(priority="high"), seed.admin
        )

        assert [a.id for a in result.updated] == [first.id]
        assert result.updated[0].priority == "high"
        assert {e["assignmentId"] for e in result.errors} == {second.id, 4242}
        assert all(e["error"] == "not_found" for e in result.errors)

    def test_bulk_update_with_no_ids_rejected(self, assignments, seed):
        with pytest.raises(ValidationError):
            assignments.bulk_update([], AssignmentUpdate(priority="low"), seed.admin)


class TestBulkCreate:
    def item(self, seed, employee=None, day=MONDAY, slot="morning", **fields):
        return AssignmentCreate(
            employeeId=(employee or seed.alice).id, date=day, slot=slot, taskId=seed.task.id, **fields
        )

    def test_items_placed_in_order_with_per_item_errors(self, assignments, seed):
        result = assignments.bulk_create(
            [
                self.item(seed),
                self.item(seed, day=SATURDAY),
                self.item(seed),
                self.item(seed, employee=seed.bob, slot="afternoon"),
            ],
            seed.admin,
        )

        assert [a.slot_order for a in result.created] == [0, 1, 0]
        assert result.errors == [
            {"index": 1, "error": "validation_error", "detail": result.errors[0]["detail"]}
        ]
        assert "weekend" in result.errors[0]["detail"]

    def test_items_beyond_capacity_fail_alone(self, assignments, place, seed):
        for _ in range(3):
            place(seed.alice)

        result = assignments.bulk_create([self.item(seed), self.item(seed)], seed.admin)

        assert len(result.created) == 1
        assert [(e["index"], e["error"]) for e in result.errors] == [(1, "capacity_exceeded")]
        assert [r[1] for r in slot_ranks(assignments, seed.alice)] == [0, 1, 2, 3]

    def test_validated_batch_is_refused_whole(self, assignments, place, seed):
        for _ in range(3):
            place(seed.alice)

        with pytest.raises(CapacityError) as exc:
            assignments.bulk_create(
                [self.item(seed, employee=seed.bob), self.item(seed), self.item(seed)],
                seed.admin,
                validate_conflicts=True,
            )

        assert exc.value.extra["indexes"] == [2]
        assert len(slot_ranks(assignments, seed.alice)) == 3
        assert slot_ranks(assignments, seed.bob) == []

    def test_validated_batch_honours_overbook_flag(self, assignments, place, seed):
        for _ in range(4):
            place(seed.alice)

        result = assignments.bulk_create(
            [self.item(seed, allowOverbook=True)], seed.admin, validate_conflicts=True
        )

        assert result.errors == []
        assert len(slot_ranks(assignments, seed.alice)) == 5

    def test_empty_batch_rejected(self, assignments, seed):
        with pytest.raises(ValidationError):
            assignments.bulk_create([], seed.admin)


class TestConcurrencyGuards:
    def test_rank_conflict_is_retried_once(self, assignments, seed, place):
        original = assignments.repo.apply_ranks
        calls = {"n": 0}

        def flaky(db, ordered):
            calls["n"] += 1
            if calls["n"] == 1:
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
            return original(db, ordered)

        with patch.object(assignments.repo, "apply_ranks", side_effect=flaky):
            created = place(seed.alice)

        assert calls["n"] == 2
        assert created.slot_order == 0

    def test_second_conflict_surfaces_conflict_error(self, assignments, seed, place):
        def always_conflict(db, ordered):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with patch.object(assignments.repo, "apply_ranks", side_effect=always_conflict):
            with pytest.raises(ConflictError):
                place(seed.alice)

        assert slot_ranks(assignments, seed.alice) == []

    def test_gap_in_ranks_aborts_operation(self, assignments, db, place, seed):
        place(seed.alice)
        second = place(seed.alice)
        db.query(Assignment).filter(Assignment.id == second.id).update({"slot_order": 5})
        db.commit()

        with pytest.raises(InvariantViolation):
            place(seed.alice)

    def test_locks_are_released_after_operations(self, assignments, place, seed, locks):
        place(seed.alice)
        with pytest.raises(ValidationError):
            place(seed.alice, day=SATURDAY)
        assert locks.active_keys() == 0


class TestQueries:
    def test_list_in_range_ordered_by_rank(self, assignments, place, seed):
        first, second = place(seed.alice), place(seed.alice)
        listed = assignments.list_assignments(MONDAY, TUESDAY, seed.admin, seed.alice.id)
        assert [a.id for a in listed] == [first.id, second.id]

    def test_views_use_automatic_hours_when_unset(self, assignments, place, seed):
        place(seed.alice)
        place(seed.alice, hours=3)
        views = assignments.to_views(assignments.list_assignments(MONDAY, MONDAY, seed.admin))
        assert [v["hours"] for v in views] == [2.0, 3]
        assert views[0]["clientColor"] == "#FF8800"

    def test_overdue_and_deadlines(self, assignments, place, seed):
        late = place(seed.alice, dueDate=MONDAY)
        soon = place(seed.alice, dueDate=TUESDAY)
        place(seed.alice, dueDate=TUESDAY, status="done")

        overdue = assignments.get_overdue(seed.admin, today=TUESDAY)
        upcoming = assignments.get_upcoming_deadlines(seed.admin, days=7, today=TUESDAY)

        assert [a.id for a in overdue] == [late.id]
        assert [a.id for a in upcoming] == [soon.id]

    def test_member_does_not_see_other_teams(self, assignments, place, seed):
        place(seed.carol)
        with pytest.raises(PermissionDeniedError):
            assignments.list_assignments(MONDAY, MONDAY, seed.member, seed.carol.id)
        assert assignments.list_assignments(MONDAY, MONDAY, seed.member) == []
