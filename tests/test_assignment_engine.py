"""
Assignment engine: load balancing, the assign/unassign mutation, ownership
indexes, the audit log and store failure handling.
Run: pytest tests/test_assignment_engine.py -v
"""

import threading

import pytest

from dispatch.errors import AssignmentWriteFailed, StoreUnavailable, TicketNotFound
from dispatch.models import AgentStatus, AssignmentReason
from dispatch.notifier import TICKET_ASSIGNED
from dispatch.store import TicketStore

from tests.conftest import FlakyRedis


def _online(engine, *agent_ids):
    for agent_id in agent_ids:
        engine.presence.set_personal_status(agent_id, "online")


class TestSelection:
    def test_least_loaded_wins(self, engine):
        engine.modes.set_mode("off")
        _online(engine, "alice", "bob")
        for i in range(3):
            engine.assignment.open_ticket(f"t{i}")
            engine.assignment.assign(f"t{i}", "bob")
        assert engine.assignment.best_available_agent().agent_id == "alice"

    def test_tie_goes_to_most_recent_activity(self, engine, clock):
        _online(engine, "alice")
        clock.advance(5)
        _online(engine, "bob")
        assert engine.assignment.best_available_agent().agent_id == "bob"

    def test_full_tie_is_deterministic(self, engine):
        _online(engine, "bob", "alice")
        assert engine.assignment.best_available_agent().agent_id == "alice"

    def test_none_when_nobody_available(self, engine, clock):
        engine.presence.set_personal_status("alice", "afk")
        engine.presence.set_personal_status("bob", "offline")
        _online(engine, "carol")
        clock.advance(120)
        assert engine.assignment.best_available_agent() is None

    def test_exclude(self, engine):
        _online(engine, "alice", "bob")
        assert engine.assignment.best_available_agent(exclude={"alice"}).agent_id == "bob"

    def test_ranked_reports_load(self, engine):
        _online(engine, "alice", "bob")
        engine.assignment.open_ticket("t1")
        ranked = engine.assignment.ranked_available_agents()
        assert [(a.agent_id, load) for a, load in ranked] == [("bob", 0), ("alice", 1)]


class TestOpenTicket:
    def test_auto_assigns_to_best_agent(self, engine, notifier):
        _online(engine, "alice")
        ticket = engine.assignment.open_ticket("t1")
        assert ticket.assigned_agent_id == "alice"
        assert ticket.original_agent_id == "alice"
        assert notifier.of(TICKET_ASSIGNED)[0]["to_agent_id"] == "alice"

    def test_stays_orphaned_without_agents(self, engine):
        ticket = engine.assignment.open_ticket("t1")
        assert ticket.is_orphaned
        assert [t.ticket_id for t in engine.assignment.orphaned_tickets()] == ["t1"]

    def test_off_mode_disables_auto_assignment(self, engine):
        _online(engine, "alice")
        engine.modes.set_mode("off")
        assert engine.assignment.open_ticket("t1").is_orphaned

    def test_autopilot_assigns(self, engine):
        _online(engine, "alice")
        engine.modes.set_mode("autopilot")
        assert engine.assignment.open_ticket("t1").assigned_agent_id == "alice"

    def test_reopen_is_idempotent(self, engine):
        _online(engine, "alice", "bob")
        first = engine.assignment.open_ticket("t1")
        again = engine.assignment.open_ticket("t1")
        assert again.assigned_agent_id == first.assigned_agent_id
        assert len(engine.assignment.history("t1")) == 1


class TestAssign:
    def test_unknown_ticket(self, engine):
        with pytest.raises(TicketNotFound):
            engine.assignment.assign("missing", "alice")

    def test_unknown_agent_is_provisioned(self, engine):
        engine.assignment.open_ticket("t1")
        ticket = engine.assignment.assign("t1", "ghost")
        assert ticket.assigned_agent_id == "ghost"
        assert engine.presence.get_agent("ghost").status == AgentStatus.OFFLINE

    def test_reason_and_original_owner(self, engine):
        engine.assignment.open_ticket("t1")
        engine.assignment.assign("t1", "alice", actor="alice")
        ticket = engine.assignment.assign("t1", "bob", actor="bob")
        assert ticket.original_agent_id == "alice"
        history = engine.assignment.history("t1")
        assert [h.reason for h in history] == [AssignmentReason.ASSIGNED, AssignmentReason.REASSIGNED]
        assert (history[1].from_agent_id, history[1].to_agent_id, history[1].actor) == ("alice", "bob", "bob")

    def test_single_owner_after_moves(self, engine):
        engine.assignment.open_ticket("t1")
        for agent_id in ("alice", "bob", "carol", "bob"):
            engine.assignment.assign("t1", agent_id)
        owners = [a for a in ("alice", "bob", "carol") if engine.assignment.tickets_for_agent(a)]
        assert owners == ["bob"]
        assert engine.assignment.orphaned_tickets() == []

    def test_reassigning_current_owner_is_noop(self, engine):
        engine.assignment.open_ticket("t1")
        engine.assignment.assign("t1", "alice")
        engine.assignment.assign("t1", "alice")
        assert len(engine.assignment.history("t1")) == 1

    def test_expected_owner_mismatch_is_noop(self, engine):
        engine.assignment.open_ticket("t1")
        engine.assignment.assign("t1", "bob")
        ticket = engine.assignment.assign("t1", "carol", expected_owner="alice")
        assert ticket.assigned_agent_id == "bob"

    def test_concurrent_assignment_ends_with_one_owner(self, engine):
        engine.assignment.open_ticket("t1")
        barrier = threading.Barrier(4)
        errors = []

        def claim(agent_id):
            barrier.wait()
            try:
                engine.assignment.assign("t1", agent_id)
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=claim, args=(f"agent{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        owner = engine.assignment.get_ticket("t1").assigned_agent_id
        holders = [f"agent{i}" for i in range(4) if engine.assignment.tickets_for_agent(f"agent{i}")]
        assert holders == [owner]


class TestUnassign:
    def test_unassign_orphans_ticket(self, engine):
        engine.assignment.open_ticket("t1")
        engine.assignment.assign("t1", "alice")
        ticket = engine.assignment.unassign("t1", actor="alice")
        assert ticket.is_orphaned
        assert ticket.original_agent_id == "alice"
        assert engine.assignment.tickets_for_agent("alice") == []
        assert engine.assignment.history("t1")[-1].reason == AssignmentReason.ORPHANED

    def test_unassign_is_idempotent(self, engine):
        engine.assignment.open_ticket("t1")
        engine.assignment.assign("t1", "alice")
        engine.assignment.unassign("t1")
        engine.assignment.unassign("t1")
        assert len(engine.assignment.history("t1")) == 2

    def test_unassign_unknown_ticket(self, engine):
        with pytest.raises(TicketNotFound):
            engine.assignment.unassign("missing")


class TestTicketActivity:
    def test_touch_updates_activity(self, engine, clock):
        engine.assignment.open_ticket("t1")
        clock.advance(30)
        assert engine.assignment.touch_ticket("t1").last_activity_at == clock.now
        assert engine.assignment.get_ticket("t1").last_activity_at == clock.now

    def test_touch_unknown_ticket(self, engine):
        with pytest.raises(TicketNotFound):
            engine.assignment.touch_ticket("missing")


class TestStoreFailures:
    def test_transient_write_failure_is_retried(self, r, clock):
        TicketStore(r).create("t1", now=clock.now)
        flaky = FlakyRedis(r, failures=1)
        ticket, action = TicketStore(flaky, attempts=2).set_owner("t1", "alice", now=clock.now, actor="system")
        assert ticket.assigned_agent_id == "alice"
        assert action.reason == AssignmentReason.ASSIGNED
        assert flaky.calls == 2

    def test_persistent_write_failure_leaves_state(self, r, clock):
        store = TicketStore(r)
        store.create("t1", now=clock.now)
        flaky = FlakyRedis(r, failures=5)
        with pytest.raises(AssignmentWriteFailed):
            TicketStore(flaky, attempts=2).set_owner("t1", "alice", now=clock.now, actor="system")
        assert flaky.calls == 2
        assert store.get("t1").is_orphaned
        assert store.history("t1") == []

    def test_read_failure_raises_unavailable(self, r):
        flaky = FlakyRedis(r, failures=5, method="hgetall")
        with pytest.raises(StoreUnavailable):
            TicketStore(flaky).get("t1")
