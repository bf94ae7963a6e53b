"""Data models for agent presence and ticket assignment."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AgentStatus(str, Enum):
    """System-computed availability."""

    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class PersonalStatus(str, Enum):
    """Availability declared by the agent."""

    ONLINE = "online"
    AFK = "afk"
    OFFLINE = "offline"


# Personal preference -> system status.
STATUS_MAP: dict[PersonalStatus, AgentStatus] = {
    PersonalStatus.ONLINE: AgentStatus.ONLINE,
    PersonalStatus.AFK: AgentStatus.BUSY,
    PersonalStatus.OFFLINE: AgentStatus.OFFLINE,
}


class SystemMode(str, Enum):
    """Global operating mode."""

    HITL = "hitl"
    AUTOPILOT = "autopilot"
    OFF = "off"

    @property
    def allows_auto_assignment(self) -> bool:
        return self is not SystemMode.OFF


class AssignmentReason(str, Enum):
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    RECLAIMED = "reclaimed"
    REDISTRIBUTED = "redistributed"
    ORPHANED = "orphaned"


class Agent(BaseModel):
    """A human support operator and their presence."""

    agent_id: str = Field(..., description="Unique agent identifier")
    display_name: str = Field(default="", description="Display name (derived from id when empty)")
    status: AgentStatus = Field(default=AgentStatus.OFFLINE)
    personal_status: PersonalStatus = Field(default=PersonalStatus.OFFLINE)
    last_activity_at: float = Field(default=0.0, description="Unix timestamp of last heartbeat or status write")
    last_interaction_at: float = Field(default=0.0, description="Unix timestamp of last real interaction (AFK detection)")
    connected: bool = Field(default=False, description="False after a transport-level disconnect")
    auto_afk: bool = Field(default=False, description="True when AFK was set by the AFK detector")

    def is_stale(self, now: float, timeout: float) -> bool:
        """Stale agents are unavailable regardless of stored status."""
        return now - self.last_activity_at >= timeout


class Ticket(BaseModel):
    """One customer conversation and its ownership record."""

    ticket_id: str = Field(..., description="Unique ticket identifier")
    assigned_agent_id: Optional[str] = Field(None, description="Current owner; None means orphaned")
    original_agent_id: Optional[str] = Field(None, description="First durable owner; never overwritten")
    created_at: float = Field(..., description="Unix timestamp of ticket creation")
    last_activity_at: float = Field(..., description="Unix timestamp of last ticket activity")
    handoff_pending: bool = Field(
        default=False,
        description="An orphaned-intent record exists: owner went idle with no one to take over",
    )

    @property
    def is_orphaned(self) -> bool:
        return self.assigned_agent_id is None


class AssignmentAction(BaseModel):
    """Append-only audit record of an ownership change."""

    ticket_id: str
    actor: str = Field(default="system", description="Agent id or 'system'")
    from_agent_id: Optional[str] = None
    to_agent_id: Optional[str] = None
    reason: AssignmentReason
    timestamp: float


class ReassignmentOutcome(BaseModel):
    """Result of one per-ticket step of a rebalancing workflow."""

    ticket_id: str
    from_agent_id: Optional[str] = None
    to_agent_id: Optional[str] = None
    reason: AssignmentReason
    ok: bool = True
    error: Optional[str] = None


class PresenceTransition(BaseModel):
    """Personal-status change as seen by the writer: previous value and the updated agent."""

    agent: Agent
    previous: Optional[PersonalStatus] = Field(None, description="None when the agent was just provisioned")

    @property
    def current(self) -> PersonalStatus:
        return self.agent.personal_status

    @property
    def was_present(self) -> bool:
        return self.previous == PersonalStatus.ONLINE

    @property
    def went_idle(self) -> bool:
        return self.was_present and self.current != PersonalStatus.ONLINE

    @property
    def came_back(self) -> bool:
        return not self.was_present and self.current == PersonalStatus.ONLINE


class AgentStats(BaseModel):
    total: int = 0
    online: int = 0
    busy: int = 0
    offline: int = Field(0, description="Offline or stale")
    total_assigned_tickets: int = 0


# --- API payloads ---


class PersonalStatusUpdate(BaseModel):
    personal_status: str = Field(..., description="online | afk | offline")


class StatusChangeResult(BaseModel):
    agent: Agent
    reassignments: list[ReassignmentOutcome] = Field(default_factory=list)


class ModeUpdate(BaseModel):
    mode: str = Field(..., description="hitl | autopilot | off")


class ModeResponse(BaseModel):
    mode: SystemMode


class TicketOpen(BaseModel):
    ticket_id: str = Field(..., description="Unique ticket identifier")


class AssignRequest(BaseModel):
    agent_id: str = Field(..., description="Agent that takes the ticket")
    actor: Optional[str] = Field(None, description="Who performs the assignment (defaults to agent_id)")
