"""
AFK detection: inactivity sweep and auto-restore on the next interaction.
Run: pytest tests/test_afk_detection.py -v
"""

import pytest

from dispatch.engine import build_engine
from dispatch.models import AgentStatus, AssignmentReason, PersonalStatus
from dispatch.store import AFK_TIMEOUT_KEY

MINUTE = 60


class TestConfig:
    def test_defaults(self, engine):
        config = engine.afk.get_config()
        assert config["afk_timeout_minutes"] == 15
        assert config["enabled"] is True

    @pytest.mark.parametrize("minutes", [0, 121])
    def test_timeout_out_of_range(self, engine, minutes):
        with pytest.raises(ValueError):
            engine.afk.set_timeout(minutes)
        assert engine.afk.timeout_minutes == 15

    def test_set_timeout(self, engine):
        engine.afk.set_timeout(30)
        assert engine.afk.get_config()["afk_timeout_minutes"] == 30


class TestSweep:
    def test_idle_agent_goes_afk_and_hands_off(self, engine, clock):
        engine.change_personal_status("alice", "online")
        engine.assignment.open_ticket("t1")
        clock.advance(16 * MINUTE)
        engine.change_personal_status("bob", "online")

        assert engine.afk.check_for_inactive_agents() == ["alice"]
        alice = engine.presence.get_agent("alice")
        assert alice.personal_status == PersonalStatus.AFK
        assert alice.status == AgentStatus.BUSY
        assert alice.auto_afk is True
        assert engine.assignment.get_ticket("t1").assigned_agent_id == "bob"

    def test_recent_interaction_keeps_agent_online(self, engine, clock):
        engine.change_personal_status("alice", "online")
        clock.advance(14 * MINUTE)
        assert engine.afk.check_for_inactive_agents() == []

    def test_heartbeats_do_not_prevent_afk(self, engine, clock):
        engine.change_personal_status("alice", "online")
        clock.advance(10 * MINUTE)
        engine.presence.heartbeat("alice")
        clock.advance(6 * MINUTE)
        assert engine.afk.check_for_inactive_agents() == ["alice"]

    def test_interaction_resets_timer(self, engine, clock):
        engine.change_personal_status("alice", "online")
        clock.advance(10 * MINUTE)
        engine.afk.record_activity("alice")
        clock.advance(10 * MINUTE)
        assert engine.afk.check_for_inactive_agents() == []

    def test_only_online_agents_are_swept(self, engine, clock):
        engine.change_personal_status("alice", "afk")
        engine.change_personal_status("bob", "offline")
        clock.advance(60 * MINUTE)
        assert engine.afk.check_for_inactive_agents() == []
        assert engine.presence.get_agent("alice").auto_afk is False

    def test_shorter_timeout(self, engine, clock):
        engine.afk.set_timeout(1)
        engine.change_personal_status("alice", "online")
        clock.advance(2 * MINUTE)
        assert engine.afk.check_for_inactive_agents() == ["alice"]


class TestAutoRestore:
    def test_activity_restores_auto_afk_agent(self, engine, clock):
        engine.change_personal_status("alice", "online")
        engine.assignment.open_ticket("t1")
        clock.advance(16 * MINUTE)
        engine.change_personal_status("bob", "online")
        engine.afk.check_for_inactive_agents()

        agent, outcomes = engine.afk.record_activity("alice")
        assert agent.personal_status == PersonalStatus.ONLINE
        assert agent.auto_afk is False
        # t1 was handed to bob and has been quiet since it was opened
        assert [(o.ticket_id, o.reason) for o in outcomes] == [("t1", AssignmentReason.RECLAIMED)]
        assert engine.assignment.get_ticket("t1").assigned_agent_id == "alice"

    def test_manual_afk_is_not_restored(self, engine):
        engine.change_personal_status("alice", "afk")
        agent, outcomes = engine.afk.record_activity("alice")
        assert agent.personal_status == PersonalStatus.AFK
        assert outcomes == []

    def test_unknown_agent(self, engine):
        assert engine.afk.record_activity("ghost") == (None, [])


class TestSharedTimeout:
    def test_timeout_set_in_one_process_applies_in_another(self, r, clock, notifier, engine):
        worker_engine = build_engine(r, clock=clock, notifier=notifier)
        engine.afk.set_timeout(1)
        assert worker_engine.afk.get_config()["afk_timeout_minutes"] == 1

        engine.change_personal_status("alice", "online")
        clock.advance(5 * MINUTE)
        assert worker_engine.afk.check_for_inactive_agents() == ["alice"]

    def test_invalid_stored_timeout_uses_default(self, r, engine):
        r.set(AFK_TIMEOUT_KEY, "soon")
        assert engine.afk.timeout_minutes == 15
        r.set(AFK_TIMEOUT_KEY, "500")
        assert engine.afk.timeout_minutes == 15
