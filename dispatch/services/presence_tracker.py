"""
Presence tracker: authoritative agent -> availability mapping.

Staleness is evaluated at read time from `last_activity_at`; there is no expiry
job. The tracker only writes presence. Rebalancing after a status change is the
caller's job (see RebalancingWorkflow.apply_transition).
"""

import logging
import time
from typing import Callable, Optional

from dispatch.config import ACTIVITY_TIMEOUT_SECONDS
from dispatch.errors import InvalidStatus
from dispatch.models import (
    STATUS_MAP,
    Agent,
    AgentStats,
    AgentStatus,
    PersonalStatus,
    PresenceTransition,
)
from dispatch.store import PresenceStore

logger = logging.getLogger(__name__)


def parse_personal_status(value) -> PersonalStatus:
    """Validate a personal status at the boundary."""
    if isinstance(value, PersonalStatus):
        return value
    try:
        return PersonalStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidStatus(value) from None


def _new_agent(agent_id: str) -> Agent:
    return Agent(agent_id=agent_id, display_name=agent_id)


class PresenceTracker:
    def __init__(
        self,
        store: PresenceStore,
        activity_timeout: float = ACTIVITY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.activity_timeout = activity_timeout
        self.clock = clock

    # --- writes ---

    def ensure_agent(self, agent_id: str) -> Agent:
        """Idempotent upsert: unknown agents are provisioned offline."""
        before, after = self.store.update(
            agent_id, lambda current: None if current is not None else _new_agent(agent_id)
        )
        if after is not None:
            logger.info("Provisioned agent %s.", agent_id)
            return after
        return before

    def transition_personal_status(self, agent_id: str, personal_status) -> PresenceTransition:
        """Write a personal status and return it together with the previous one."""
        personal = parse_personal_status(personal_status)
        now = self.clock()

        def _mutate(current: Optional[Agent]) -> Agent:
            base = current or _new_agent(agent_id)
            return base.model_copy(update={
                "personal_status": personal,
                "status": STATUS_MAP[personal],
                "last_activity_at": now,
                "last_interaction_at": now,
                "connected": True,
                "auto_afk": False,
            })

        before, after = self.store.update(agent_id, _mutate)
        previous = before.personal_status if before is not None else None
        logger.info(
            "Agent %s personal status %s -> %s (status=%s).",
            agent_id, previous.value if previous else None, personal.value, after.status.value,
        )
        return PresenceTransition(agent=after, previous=previous)

    def set_personal_status(self, agent_id: str, personal_status) -> Agent:
        """Validate, map to system status, stamp activity and upsert. Returns the updated agent."""
        return self.transition_personal_status(agent_id, personal_status).agent

    def mark_auto_afk(self, agent_id: str) -> Optional[PresenceTransition]:
        """
        AFK set by the inactivity sweep. Only applies while the agent is still
        `online`, so a concurrent manual change wins.
        """
        def _mutate(current: Optional[Agent]) -> Optional[Agent]:
            if current is None or current.personal_status != PersonalStatus.ONLINE:
                return None
            return current.model_copy(update={
                "personal_status": PersonalStatus.AFK,
                "status": STATUS_MAP[PersonalStatus.AFK],
                "auto_afk": True,
            })

        before, after = self.store.update(agent_id, _mutate)
        if after is None:
            return None
        return PresenceTransition(agent=after, previous=before.personal_status)

    def heartbeat(self, agent_id: str, interaction: bool = False) -> Optional[Agent]:
        """Refresh last_activity_at (and last_interaction_at when interaction=True). Unknown agents are ignored."""
        now = self.clock()

        def _mutate(current: Optional[Agent]) -> Optional[Agent]:
            if current is None:
                return None
            update = {"last_activity_at": now}
            if interaction:
                update["last_interaction_at"] = now
            return current.model_copy(update=update)

        _, after = self.store.update(agent_id, _mutate)
        if after is None:
            logger.debug("Heartbeat for unknown agent %s ignored.", agent_id)
        return after

    def mark_connected(self, agent_id: str) -> PresenceTransition:
        """Agent opened the dashboard: online and connected."""
        return self.transition_personal_status(agent_id, PersonalStatus.ONLINE)

    def mark_disconnected(self, agent_id: str) -> Agent:
        """Transport-level disconnect: force offline. Idempotent."""
        return self.disconnect(agent_id).agent

    def disconnect(self, agent_id: str) -> PresenceTransition:
        now = self.clock()

        def _mutate(current: Optional[Agent]) -> Optional[Agent]:
            base = current or _new_agent(agent_id)
            if (
                current is not None
                and base.status == AgentStatus.OFFLINE
                and base.personal_status == PersonalStatus.OFFLINE
                and not base.connected
            ):
                return None
            return base.model_copy(update={
                "status": AgentStatus.OFFLINE,
                "personal_status": PersonalStatus.OFFLINE,
                "connected": False,
                "auto_afk": False,
                "last_activity_at": now,
            })

        before, after = self.store.update(agent_id, _mutate)
        if after is None:
            return PresenceTransition(agent=before, previous=before.personal_status)
        logger.info("Agent %s disconnected.", agent_id)
        return PresenceTransition(agent=after, previous=before.personal_status if before else None)

    # --- reads ---

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.store.get(agent_id)

    def list_agents(self) -> list[Agent]:
        return self.store.list_all()

    def is_stale(self, agent: Agent, now: Optional[float] = None) -> bool:
        return agent.is_stale(self.clock() if now is None else now, self.activity_timeout)

    def _fresh(self, predicate: Callable[[Agent], bool]) -> list[Agent]:
        now = self.clock()
        return [a for a in self.store.list_all() if predicate(a) and not self.is_stale(a, now)]

    def list_available(self) -> list[Agent]:
        """Online and not stale: eligible for new assignments."""
        return self._fresh(lambda a: a.status == AgentStatus.ONLINE)

    def list_online(self) -> list[Agent]:
        """Online or busy, not stale."""
        return self._fresh(lambda a: a.status in (AgentStatus.ONLINE, AgentStatus.BUSY))

    def list_connected(self) -> list[Agent]:
        """Every agent with a live connection, whatever its status (UI view)."""
        return self._fresh(lambda a: a.connected)

    def is_available(self, agent_id: str) -> bool:
        agent = self.store.get(agent_id)
        return (
            agent is not None
            and agent.status == AgentStatus.ONLINE
            and not self.is_stale(agent)
        )

    def agent_stats(self, load_counts: Optional[dict[str, int]] = None) -> AgentStats:
        now = self.clock()
        agents = self.store.list_all()
        stats = AgentStats(total=len(agents))
        for agent in agents:
            if self.is_stale(agent, now) or agent.status == AgentStatus.OFFLINE:
                stats.offline += 1
            elif agent.status == AgentStatus.ONLINE:
                stats.online += 1
            else:
                stats.busy += 1
        if load_counts:
            stats.total_assigned_tickets = sum(load_counts.values())
        return stats
