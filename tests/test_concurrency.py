"""Writers racing from real threads, each with its own session, sharing one lock arena."""

import threading

import pytest
from conftest import MONDAY, TUESDAY, slot_ranks
from planner.database import Base, build_engine
from planner.domain.leave.schemas import AllocationUpdate, LeaveCreate
from planner.domain.leave.service import LeaveService
from planner.domain.scheduling.locks import AllocationKey, SlotKey, lock_order
from planner.domain.scheduling.schemas import AssignmentCreate, AssignmentMove
from planner.domain.scheduling.service import AssignmentService
from planner.errors import PlannerError
from planner.models import Assignment, LeaveAllocation, LeaveRecord, User


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session gets its own connection and transaction"""
    engine = build_engine(f"sqlite:///{tmp_path / 'planner.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def run_together(session_factory, count, work):
    """Start `count` workers at once; each gets its index and a fresh session"""
    barrier = threading.Barrier(count)
    outcomes = [None] * count

    def runner(index):
        session = session_factory()
        try:
            barrier.wait()
            outcomes[index] = work(index, session)
        except PlannerError as e:
            outcomes[index] = e.code
        except Exception as e:
            outcomes[index] = e
        finally:
            session.close()

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert not any(thread.is_alive() for thread in threads), "workers deadlocked"
    return outcomes


class TestLockOrder:
    def test_allocation_keys_sort_after_slot_keys(self):
        keys = [
            AllocationKey(1, 2026),
            SlotKey(2, MONDAY, "morning"),
            SlotKey(1, TUESDAY, "afternoon"),
            AllocationKey(0, 2027),
        ]
        assert sorted(keys, key=lock_order) == [
            SlotKey(1, TUESDAY, "afternoon"),
            SlotKey(2, MONDAY, "morning"),
            AllocationKey(0, 2027),
            AllocationKey(1, 2026),
        ]


class TestRacingAssignments:
    def test_only_four_of_many_creates_fit_one_slot(self, session_factory, seed, notifier, locks):
        admin_id, alice_id, task_id = seed.admin.id, seed.alice.id, seed.task.id

        def create(index, session):
            service = AssignmentService(session, notifier, locks)
            data = AssignmentCreate(employeeId=alice_id, date=MONDAY, slot="morning", taskId=task_id)
            return service.create_assignment(data, session.get(User, admin_id)).slot_order

        outcomes = run_together(session_factory, 8, create)

        placed = sorted(o for o in outcomes if isinstance(o, int))
        assert placed == [0, 1, 2, 3]
        assert outcomes.count("capacity_exceeded") == 4

        check = session_factory()
        try:
            ranks = slot_ranks(AssignmentService(check, notifier, locks), seed.alice)
            assert [r[1] for r in ranks] == [0, 1, 2, 3]
        finally:
            check.close()
        assert locks.active_keys() == 0

    def test_crossing_moves_do_not_deadlock(self, session_factory, seed, place, notifier, locks):
        admin_id = seed.admin.id
        owners = {place(seed.alice).id: seed.alice.id, place(seed.bob).id: seed.bob.id}
        first, second = owners

        for _ in range(5):
            targets = {first: owners[second], second: owners[first]}
            ids = [first, second]

            def move(index, session):
                service = AssignmentService(session, notifier, locks)
                assignment_id = ids[index]
                data = AssignmentMove(employeeId=targets[assignment_id], date=MONDAY, slot="morning")
                return service.move_assignment(assignment_id, data, session.get(User, admin_id)).employee_id

            outcomes = run_together(session_factory, 2, move)

            assert outcomes == [targets[first], targets[second]]
            owners = targets

        check = session_factory()
        try:
            rows = (
                check.query(Assignment)
                .filter(Assignment.is_active.is_(True))
                .order_by(Assignment.id)
                .all()
            )
            assert {(a.id, a.employee_id, a.slot_order) for a in rows} == {
                (first, owners[first], 0),
                (second, owners[second], 0),
            }
        finally:
            check.close()


class TestRacingLeaveApprovals:
    def test_last_remaining_day_is_granted_once(self, session_factory, db, seed, leave, notifier, locks):
        """Two one-day requests on different days compete for one remaining day"""
        alice_id, manager_id = seed.alice.id, seed.manager.id
        leave.update_allocation(alice_id, 2026, AllocationUpdate(annualTotal=25), seed.manager)
        db.query(LeaveAllocation).filter(LeaveAllocation.employee_id == alice_id).update(
            {"annual_used": 24}
        )
        db.commit()
        record_ids = [
            leave.submit(
                LeaveCreate(employeeId=alice_id, startDate=day, endDate=day, leaveType="annual"),
                seed.member,
            )[0].id
            for day in (MONDAY, TUESDAY)
        ]

        def approve(index, session):
            service = LeaveService(session, notifier, locks)
            return service.approve(record_ids[index], session.get(User, manager_id)).status

        outcomes = run_together(session_factory, 2, approve)

        assert sorted(outcomes) == ["approved", "balance_exceeded"]
        db.expire_all()
        allocation = leave.repo.get_allocation(db, alice_id, 2026)
        assert (allocation.annual_used, allocation.annual_total) == (25, 25)
        approved = db.query(LeaveRecord).filter(LeaveRecord.status == "approved").count()
        assert approved == 1

    def test_refunds_and_approvals_keep_used_days_exact(self, session_factory, db, seed, leave, notifier, locks):
        alice_id, manager_id = seed.alice.id, seed.manager.id
        approved, _ = leave.submit(
            LeaveCreate(employeeId=alice_id, startDate=MONDAY, endDate=MONDAY, leaveType="annual"),
            seed.member,
        )
        leave.approve(approved.id, seed.manager)
        pending, _ = leave.submit(
            LeaveCreate(employeeId=alice_id, startDate=TUESDAY, endDate=TUESDAY, leaveType="annual"),
            seed.member,
        )
        approved_id, pending_id = approved.id, pending.id

        def work(index, session):
            service = LeaveService(session, notifier, locks)
            reviewer = session.get(User, manager_id)
            if index == 0:
                return service.delete(approved_id, reviewer)["id"]
            return service.approve(pending_id, reviewer).status

        outcomes = run_together(session_factory, 2, work)

        assert outcomes == [approved_id, "approved"]
        db.expire_all()
        assert leave.repo.get_allocation(db, alice_id, 2026).annual_used == 1
