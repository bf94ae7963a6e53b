"""
Assignment engine: picks the owner of new or orphaned tickets and performs the
"assign ticket to agent" mutation.

Load balancing: fewest currently-assigned tickets wins; ties go to the agent with
the most recent activity. Every decision re-reads Redis; nothing is cached.
"""

import logging
from typing import Iterable, Optional

from dispatch.errors import TicketNotFound
from dispatch.models import Agent, AssignmentAction, AssignmentReason, Ticket
from dispatch.notifier import TICKET_ASSIGNED, Notifier
from dispatch.services.mode_controller import ModeAccessor
from dispatch.services.presence_tracker import PresenceTracker
from dispatch.store import ANY_OWNER, TicketStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AssignmentEngine:
    def __init__(
        self,
        tickets: TicketStore,
        presence: PresenceTracker,
        mode: ModeAccessor,
        notifier: Optional[Notifier] = None,
    ):
        self.tickets = tickets
        self.presence = presence
        self.mode = mode
        self.notifier = notifier

    @property
    def clock(self):
        return self.presence.clock

    # --- selection ---

    def ranked_available_agents(self, exclude: Iterable[str] = ()) -> list[tuple[Agent, int]]:
        """Available agents with their current load, best candidate first."""
        excluded = set(exclude)
        candidates = [a for a in self.presence.list_available() if a.agent_id not in excluded]
        if not candidates:
            return []
        loads = self.tickets.load_counts([a.agent_id for a in candidates])
        ranked = sorted(
            candidates,
            key=lambda a: (loads.get(a.agent_id, 0), -a.last_activity_at, a.agent_id),
        )
        return [(a, loads.get(a.agent_id, 0)) for a in ranked]

    def best_available_agent(self, exclude: Iterable[str] = ()) -> Optional[Agent]:
        """Least-loaded available agent (most recently active on ties), or None if nobody is available."""
        ranked = self.ranked_available_agents(exclude)
        return ranked[0][0] if ranked else None

    # --- mutations ---

    def assign(
        self,
        ticket_id: str,
        agent_id: str,
        reason: Optional[AssignmentReason] = None,
        actor: Optional[str] = None,
        expected_owner=ANY_OWNER,
    ) -> Ticket:
        """
        Make agent_id the owner of ticket_id. Unknown agents are provisioned first.
        The write is a compare-and-swap on the ticket, so concurrent callers end with
        exactly one owner. Reason defaults to `assigned`, or `reassigned` when the
        ticket already had another owner. Returns the ticket as stored afterwards.
        """
        if self.tickets.get(ticket_id) is None:
            raise TicketNotFound(ticket_id)
        self.presence.ensure_agent(agent_id)
        ticket, action = self.tickets.set_owner(
            ticket_id,
            agent_id,
            now=self.clock(),
            actor=actor or SYSTEM_ACTOR,
            reason=reason,
            expected_owner=expected_owner,
        )
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if action is not None:
            self._announce(action)
        return ticket

    def unassign(self, ticket_id: str, actor: Optional[str] = None) -> Ticket:
        """Orphan a ticket. Already-orphaned tickets are returned unchanged."""
        ticket, action = self.tickets.set_owner(
            ticket_id, None, now=self.clock(), actor=actor or SYSTEM_ACTOR
        )
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if action is not None:
            self._announce(action)
        return ticket

    def flag_orphaned_intent(self, ticket_id: str, actor: str = SYSTEM_ACTOR) -> Ticket:
        """Keep the current owner but record that the ticket needs a new one."""
        ticket, action = self.tickets.flag_handoff(ticket_id, now=self.clock(), actor=actor)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if action is not None:
            logger.info("Ticket %s flagged for hand-off from %s.", ticket_id, action.from_agent_id)
        return ticket

    def clear_orphaned_intent(self, ticket_id: str) -> Optional[Ticket]:
        return self.tickets.clear_handoff(ticket_id)

    def open_ticket(self, ticket_id: str) -> Ticket:
        """
        Register a new conversation and, unless the system is off, hand it to the
        best available agent. With nobody available it stays orphaned until
        redistribution picks it up.
        """
        ticket = self.tickets.create(ticket_id, now=self.clock())
        if not ticket.is_orphaned:
            return ticket
        mode = self.mode()
        if not mode.allows_auto_assignment:
            logger.info("Ticket %s left orphaned (mode=%s).", ticket_id, mode.value)
            return ticket
        agent = self.best_available_agent()
        if agent is None:
            logger.info("No available agents for ticket %s; will assign when an agent comes online.", ticket_id)
            return ticket
        return self.assign(
            ticket_id,
            agent.agent_id,
            reason=AssignmentReason.ASSIGNED,
            actor=SYSTEM_ACTOR,
            expected_owner=None,
        )

    def touch_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.touch(ticket_id, now=self.clock())
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    # --- reads ---

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def history(self, ticket_id: str) -> list[AssignmentAction]:
        self.get_ticket(ticket_id)
        return self.tickets.history(ticket_id)

    def tickets_for_agent(self, agent_id: str) -> list[Ticket]:
        return self.tickets.tickets_for_agent(agent_id)

    def all_tickets(self) -> list[Ticket]:
        """Every ticket in arrival order."""
        return self.tickets.get_many(self.tickets.all_ids())

    def orphaned_tickets(self) -> list[Ticket]:
        return self.tickets.get_many(self.tickets.orphaned_ids())

    def handoff_tickets(self) -> list[Ticket]:
        return self.tickets.get_many(self.tickets.handoff_ids())

    def _announce(self, action: AssignmentAction) -> None:
        logger.info(
            "Ticket %s: %s -> %s (%s by %s).",
            action.ticket_id, action.from_agent_id, action.to_agent_id, action.reason.value, action.actor,
        )
        if self.notifier is not None:
            self.notifier.publish(TICKET_ASSIGNED, action.model_dump(mode="json"))
