"""
Rebalancing workflow: bulk ticket movement on agent presence transitions.

Two-state machine per agent, present (personal status `online`) and idle (`afk`
or `offline`):
  - present -> idle: hand each owned ticket to the best other agent, or flag it
    for hand-off when nobody is available.
  - idle -> present: reclaim the agent's original tickets that went quiet, then
    redistribute orphaned tickets a few at a time per agent.

Bulk loops are not atomic. Each per-ticket move is an independent compare-and-swap,
so an interrupted run can simply be repeated. Failures are reported per ticket.
"""

import logging
from typing import Optional

from dispatch.config import REBALANCING_ENABLED, RECLAIM_IDLE_SECONDS, REDISTRIBUTION_CAP
from dispatch.errors import DispatchError
from dispatch.models import AssignmentReason, PresenceTransition, ReassignmentOutcome, Ticket
from dispatch.notifier import TICKETS_REASSIGNED, Notifier
from dispatch.services.assignment_engine import SYSTEM_ACTOR, AssignmentEngine

logger = logging.getLogger(__name__)


class RebalancingWorkflow:
    def __init__(
        self,
        engine: AssignmentEngine,
        notifier: Optional[Notifier] = None,
        enabled: bool = REBALANCING_ENABLED,
        redistribution_cap: int = REDISTRIBUTION_CAP,
        reclaim_idle_seconds: float = RECLAIM_IDLE_SECONDS,
    ):
        self.engine = engine
        self.notifier = notifier
        self.enabled = enabled
        self.redistribution_cap = redistribution_cap
        self.reclaim_idle_seconds = reclaim_idle_seconds

    def apply_transition(self, transition: PresenceTransition) -> list[ReassignmentOutcome]:
        """Run the flow matching a personal-status edge; no-op when the agent stayed on the same side."""
        agent_id = transition.agent.agent_id
        if transition.went_idle:
            return self.handle_agent_going_idle(agent_id)
        if transition.came_back:
            return self.handle_agent_coming_back(agent_id)
        return []

    # --- present -> idle ---

    def handle_agent_going_idle(self, agent_id: str) -> list[ReassignmentOutcome]:
        if not self.enabled:
            return []
        owned = self.engine.tickets_for_agent(agent_id)
        if not owned:
            return []
        auto = self.engine.mode().allows_auto_assignment
        outcomes = [self._hand_off(ticket, agent_id, auto) for ticket in owned]
        moved = sum(1 for o in outcomes if o.ok and o.to_agent_id)
        logger.info(
            "Agent %s went idle: %d/%d tickets reassigned, %d flagged for hand-off.",
            agent_id, moved, len(outcomes),
            sum(1 for o in outcomes if o.reason == AssignmentReason.ORPHANED and o.ok),
        )
        self._publish(outcomes, "agent_idle")
        return outcomes

    def _hand_off(self, ticket: Ticket, agent_id: str, auto: bool) -> ReassignmentOutcome:
        candidate = None
        try:
            candidate = self.engine.best_available_agent(exclude={agent_id}) if auto else None
            if candidate is not None:
                return self._move(ticket, agent_id, candidate.agent_id, AssignmentReason.REASSIGNED)
            self.engine.flag_orphaned_intent(ticket.ticket_id)
            return ReassignmentOutcome(
                ticket_id=ticket.ticket_id,
                from_agent_id=agent_id,
                reason=AssignmentReason.ORPHANED,
            )
        except DispatchError as e:
            logger.error("Hand-off of ticket %s from %s failed: %s", ticket.ticket_id, agent_id, e)
            return ReassignmentOutcome(
                ticket_id=ticket.ticket_id,
                from_agent_id=agent_id,
                reason=AssignmentReason.ORPHANED if candidate is None else AssignmentReason.REASSIGNED,
                ok=False,
                error=str(e),
            )

    # --- idle -> present ---

    def handle_agent_coming_back(self, agent_id: str) -> list[ReassignmentOutcome]:
        if not self.enabled:
            return []
        self._clear_own_handoffs(agent_id)
        if not self.engine.mode().allows_auto_assignment:
            return []
        outcomes = self.reclaim(agent_id)
        outcomes += self.redistribute_orphaned(first_agent_id=agent_id)
        if outcomes:
            logger.info(
                "Agent %s is back: %d reclaimed, %d redistributed.",
                agent_id,
                sum(1 for o in outcomes if o.ok and o.reason == AssignmentReason.RECLAIMED),
                sum(1 for o in outcomes if o.ok and o.reason == AssignmentReason.REDISTRIBUTED),
            )
        self._publish(outcomes, "agent_returned")
        return outcomes

    def _clear_own_handoffs(self, agent_id: str) -> None:
        for ticket in self.engine.tickets_for_agent(agent_id):
            if not ticket.handoff_pending:
                continue
            try:
                self.engine.clear_orphaned_intent(ticket.ticket_id)
            except DispatchError as e:
                logger.warning("Could not clear hand-off flag on ticket %s: %s", ticket.ticket_id, e)

    def reclaim(self, agent_id: str) -> list[ReassignmentOutcome]:
        """
        Return tickets first owned by agent_id that another agent holds, but only
        when nobody touched them in the reclaim window (no stealing mid-conversation).
        """
        now = self.engine.clock()
        outcomes = []
        for ticket in self.engine.tickets.tickets_originally_for(agent_id):
            owner = ticket.assigned_agent_id
            if owner is None or owner == agent_id:
                continue
            if now - ticket.last_activity_at < self.reclaim_idle_seconds:
                continue
            outcomes.append(self._move(ticket, owner, agent_id, AssignmentReason.RECLAIMED))
        return outcomes

    def redistribute_orphaned(
        self,
        cap: Optional[int] = None,
        first_agent_id: Optional[str] = None,
    ) -> list[ReassignmentOutcome]:
        """
        Give each available agent at most `cap` waiting tickets, oldest first.
        Waiting = orphaned, or flagged for hand-off while the owner is unavailable.
        """
        if not self.enabled or not self.engine.mode().allows_auto_assignment:
            return []
        cap = self.redistribution_cap if cap is None else cap
        if cap <= 0:
            return []
        agents = [agent for agent, _ in self.engine.ranked_available_agents()]
        if not agents:
            return []
        if first_agent_id is not None:
            agents.sort(key=lambda a: a.agent_id != first_agent_id)

        waiting = iter(self._waiting_tickets({a.agent_id for a in agents}))
        outcomes = []
        for agent in agents:
            given = 0
            while given < cap:
                ticket = next(waiting, None)
                if ticket is None:
                    return outcomes
                outcome = self._move(
                    ticket, ticket.assigned_agent_id, agent.agent_id, AssignmentReason.REDISTRIBUTED
                )
                outcomes.append(outcome)
                if outcome.ok:
                    given += 1
        return outcomes

    def _waiting_tickets(self, available_ids: set[str]) -> list[Ticket]:
        tickets = {t.ticket_id: t for t in self.engine.orphaned_tickets() if t.is_orphaned}
        for ticket in self.engine.handoff_tickets():
            owner = ticket.assigned_agent_id
            if ticket.handoff_pending and owner is not None and owner not in available_ids:
                tickets.setdefault(ticket.ticket_id, ticket)
        return sorted(tickets.values(), key=lambda t: (t.created_at, t.ticket_id))

    # --- shared ---

    def _move(
        self,
        ticket: Ticket,
        from_agent_id: Optional[str],
        to_agent_id: str,
        reason: AssignmentReason,
    ) -> ReassignmentOutcome:
        """Conditional move: only applies if from_agent_id still owns the ticket."""
        outcome = ReassignmentOutcome(
            ticket_id=ticket.ticket_id,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            reason=reason,
        )
        try:
            after = self.engine.assign(
                ticket.ticket_id,
                to_agent_id,
                reason=reason,
                actor=SYSTEM_ACTOR,
                expected_owner=from_agent_id,
            )
        except DispatchError as e:
            logger.error("Moving ticket %s to %s (%s) failed: %s", ticket.ticket_id, to_agent_id, reason.value, e)
            return outcome.model_copy(update={"ok": False, "error": str(e)})
        if after.assigned_agent_id != to_agent_id:
            return outcome.model_copy(update={
                "ok": False,
                "error": f"owner changed concurrently (now {after.assigned_agent_id})",
            })
        return outcome

    def _publish(self, outcomes: list[ReassignmentOutcome], reason: str) -> None:
        applied = [o.model_dump(mode="json") for o in outcomes if o.ok]
        if self.notifier is None or not applied:
            return
        self.notifier.publish(TICKETS_REASSIGNED, {"reassignments": applied, "reason": reason})
