"""
AFK detection: agents with no interaction for AFK_TIMEOUT_MINUTES are switched to
`afk` automatically (and their tickets handed off); the next interaction from an
auto-AFK agent switches them back to `online`.

Distinct from staleness: heartbeats keep an agent connected but do not count as
interaction, so an open-but-unattended dashboard still goes AFK.
"""

import logging
from typing import Optional

from dispatch.config import AFK_CHECK_INTERVAL_MINUTES, AFK_TIMEOUT_MINUTES
from dispatch.errors import DispatchError
from dispatch.models import Agent, PersonalStatus, ReassignmentOutcome
from dispatch.services.presence_tracker import PresenceTracker
from dispatch.services.rebalancing import RebalancingWorkflow
from dispatch.store import SettingsStore

logger = logging.getLogger(__name__)

MIN_TIMEOUT_MINUTES = 1
MAX_TIMEOUT_MINUTES = 120


def _in_range(minutes: int) -> bool:
    return MIN_TIMEOUT_MINUTES <= minutes <= MAX_TIMEOUT_MINUTES


class AfkDetector:
    """
    The timeout lives in Redis (SettingsStore) so a change made through the API
    is picked up by the worker's next sweep. `default_timeout_minutes` applies
    until someone sets one.
    """

    def __init__(
        self,
        presence: PresenceTracker,
        workflow: RebalancingWorkflow,
        settings: SettingsStore,
        default_timeout_minutes: int = AFK_TIMEOUT_MINUTES,
        check_interval_minutes: int = AFK_CHECK_INTERVAL_MINUTES,
    ):
        self.presence = presence
        self.workflow = workflow
        self.settings = settings
        self.default_timeout_minutes = default_timeout_minutes
        self.check_interval_minutes = check_interval_minutes

    @property
    def timeout_minutes(self) -> int:
        raw = self.settings.get_afk_timeout()
        if raw is None:
            return self.default_timeout_minutes
        try:
            minutes = int(raw)
        except ValueError:
            minutes = None
        if minutes is None or not _in_range(minutes):
            logger.error("Stored AFK timeout %r is invalid; using %d.", raw, self.default_timeout_minutes)
            return self.default_timeout_minutes
        return minutes

    def set_timeout(self, minutes: int) -> None:
        if not _in_range(minutes):
            raise ValueError(
                f"AFK timeout must be between {MIN_TIMEOUT_MINUTES} and {MAX_TIMEOUT_MINUTES} minutes"
            )
        self.settings.set_afk_timeout(minutes)
        logger.info("AFK timeout updated to %d minutes.", minutes)

    def get_config(self) -> dict:
        return {
            "afk_timeout_minutes": self.timeout_minutes,
            "check_interval_minutes": self.check_interval_minutes,
            "enabled": True,
        }

    def record_activity(self, agent_id: str) -> tuple[Optional[Agent], list[ReassignmentOutcome]]:
        """Agent did something (typed, replied). Restores auto-AFK agents to online."""
        agent = self.presence.heartbeat(agent_id, interaction=True)
        if agent is None or not (agent.auto_afk and agent.personal_status == PersonalStatus.AFK):
            return agent, []
        transition = self.presence.transition_personal_status(agent_id, PersonalStatus.ONLINE)
        logger.info("Auto-restored %s from AFK due to activity.", agent_id)
        return transition.agent, self.workflow.apply_transition(transition)

    def check_for_inactive_agents(self) -> list[str]:
        """Switch inactive online agents to AFK. Returns the ids that were switched."""
        now = self.presence.clock()
        timeout = self.timeout_minutes * 60
        switched = []
        for agent in self.presence.list_agents():
            if agent.personal_status != PersonalStatus.ONLINE:
                continue
            idle_for = now - agent.last_interaction_at
            if idle_for <= timeout:
                continue
            try:
                transition = self.presence.mark_auto_afk(agent.agent_id)
            except DispatchError as e:
                logger.error("Error setting agent %s to AFK: %s", agent.agent_id, e)
                continue
            if transition is None:
                continue
            switched.append(agent.agent_id)
            logger.info("Auto-AFK: set %s to AFK after %d min inactivity.", agent.agent_id, round(idle_for / 60))
            self.workflow.apply_transition(transition)
        return switched
