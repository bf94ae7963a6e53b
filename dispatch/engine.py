"""Wires the stores and services together over one Redis client."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from dispatch.config import (
    ACTIVITY_TIMEOUT_SECONDS,
    AFK_TIMEOUT_MINUTES,
    REBALANCING_ENABLED,
    RECLAIM_IDLE_SECONDS,
    REDISTRIBUTION_CAP,
    STORE_WRITE_ATTEMPTS,
)
from dispatch.models import PresenceTransition, ReassignmentOutcome
from dispatch.notifier import CONNECTED_AGENTS_UPDATE, Notifier
from dispatch.services.afk_detection import AfkDetector
from dispatch.services.assignment_engine import AssignmentEngine
from dispatch.services.mode_controller import ModeController
from dispatch.services.presence_tracker import PresenceTracker
from dispatch.services.rebalancing import RebalancingWorkflow
from dispatch.store import ModeStore, PresenceStore, SettingsStore, TicketStore, get_redis


@dataclass
class Engine:
    presence: PresenceTracker
    modes: ModeController
    assignment: AssignmentEngine
    rebalancing: RebalancingWorkflow
    afk: AfkDetector
    notifier: Notifier

    def change_personal_status(self, agent_id: str, personal_status) -> tuple[PresenceTransition, list[ReassignmentOutcome]]:
        """Write the status, run rebalancing on a real edge, then broadcast connected agents."""
        transition = self.presence.transition_personal_status(agent_id, personal_status)
        outcomes = self.rebalancing.apply_transition(transition)
        self.publish_connected_agents()
        return transition, outcomes

    def connect_agent(self, agent_id: str) -> tuple[PresenceTransition, list[ReassignmentOutcome]]:
        transition = self.presence.mark_connected(agent_id)
        outcomes = self.rebalancing.apply_transition(transition)
        self.publish_connected_agents()
        return transition, outcomes

    def disconnect_agent(self, agent_id: str) -> tuple[PresenceTransition, list[ReassignmentOutcome]]:
        transition = self.presence.disconnect(agent_id)
        outcomes = self.rebalancing.apply_transition(transition)
        self.publish_connected_agents()
        return transition, outcomes

    def publish_connected_agents(self) -> None:
        agents = self.presence.list_connected()
        self.notifier.publish(
            CONNECTED_AGENTS_UPDATE,
            {"agents": [a.model_dump(mode="json") for a in agents]},
        )


def build_engine(
    r=None,
    clock: Callable[[], float] = time.time,
    activity_timeout: float = ACTIVITY_TIMEOUT_SECONDS,
    rebalancing_enabled: bool = REBALANCING_ENABLED,
    redistribution_cap: int = REDISTRIBUTION_CAP,
    reclaim_idle_seconds: float = RECLAIM_IDLE_SECONDS,
    afk_timeout_minutes: int = AFK_TIMEOUT_MINUTES,
    store_attempts: int = STORE_WRITE_ATTEMPTS,
    notifier: Optional[Notifier] = None,
) -> Engine:
    r = r if r is not None else get_redis()
    notifier = notifier or Notifier(r)
    presence = PresenceTracker(PresenceStore(r, store_attempts), activity_timeout=activity_timeout, clock=clock)
    modes = ModeController(ModeStore(r, store_attempts), notifier=notifier)
    assignment = AssignmentEngine(
        TicketStore(r, store_attempts),
        presence,
        mode=modes.accessor(),
        notifier=notifier,
    )
    rebalancing = RebalancingWorkflow(
        assignment,
        notifier=notifier,
        enabled=rebalancing_enabled,
        redistribution_cap=redistribution_cap,
        reclaim_idle_seconds=reclaim_idle_seconds,
    )
    afk = AfkDetector(
        presence,
        rebalancing,
        SettingsStore(r, store_attempts),
        default_timeout_minutes=afk_timeout_minutes,
    )
    return Engine(
        presence=presence,
        modes=modes,
        assignment=assignment,
        rebalancing=rebalancing,
        afk=afk,
        notifier=notifier,
    )
