"""
Redis-backed durable state: agents (presence), tickets (ownership + indexes),
the system-mode singleton and the append-only assignment log.

Per-record mutations run as optimistic WATCH/MULTI transactions, so concurrent
writers converge on one final value. Transient Redis failures are retried once,
then surfaced as a typed error with prior state left untouched.
"""

import json
import logging
from typing import Callable, Optional, TypeVar

import redis

from dispatch.config import (
    REDIS_CONN_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
    STORE_WRITE_ATTEMPTS,
)
from dispatch.errors import (
    AssignmentWriteFailed,
    ModeWriteFailed,
    PresenceWriteFailed,
    SettingsWriteFailed,
    StoreUnavailable,
    StoreWriteFailed,
)
from dispatch.models import (
    Agent,
    AgentStatus,
    AssignmentAction,
    AssignmentReason,
    PersonalStatus,
    Ticket,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AGENT_PREFIX = "agent:"
AGENTS_ALL_SET = "agents:all"

TICKET_PREFIX = "ticket:"
TICKETS_ALL_ZSET = "tickets:all"  # score = created_at (arrival order)
TICKETS_ORPHANED_ZSET = "tickets:orphaned"
TICKETS_HANDOFF_ZSET = "tickets:handoff"
AGENT_TICKETS_PREFIX = "agent_tickets:"
AGENT_ORIGINAL_TICKETS_PREFIX = "agent_original_tickets:"
ASSIGNMENT_LOG_PREFIX = "assignment_log:"

MODE_KEY = "system:mode"
AFK_TIMEOUT_KEY = "system:afk_timeout"

TRANSIENT_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)

# set_owner(expected_owner=...) default: write whatever the current owner is.
ANY_OWNER = object()

_redis_client = None


def get_redis():
    """Process-wide Redis client (lazy). Every call on it is bounded by REDIS_SOCKET_TIMEOUT."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=REDIS_CONN_TIMEOUT,
        )
    return _redis_client


def _agent_key(agent_id: str) -> str:
    return f"{AGENT_PREFIX}{agent_id}"


def _ticket_key(ticket_id: str) -> str:
    return f"{TICKET_PREFIX}{ticket_id}"


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _agent_to_hash(agent: Agent) -> dict[str, str]:
    return {
        "agent_id": agent.agent_id,
        "display_name": agent.display_name,
        "status": agent.status.value,
        "personal_status": agent.personal_status.value,
        "last_activity_at": repr(agent.last_activity_at),
        "last_interaction_at": repr(agent.last_interaction_at),
        "connected": _flag(agent.connected),
        "auto_afk": _flag(agent.auto_afk),
    }


def _agent_from_hash(raw: dict) -> Agent:
    return Agent(
        agent_id=raw["agent_id"],
        display_name=raw.get("display_name", ""),
        status=AgentStatus(raw.get("status", AgentStatus.OFFLINE.value)),
        personal_status=PersonalStatus(raw.get("personal_status", PersonalStatus.OFFLINE.value)),
        last_activity_at=float(raw.get("last_activity_at") or 0),
        last_interaction_at=float(raw.get("last_interaction_at") or 0),
        connected=raw.get("connected") == "1",
        auto_afk=raw.get("auto_afk") == "1",
    )


def _ticket_to_hash(ticket: Ticket) -> dict[str, str]:
    return {
        "ticket_id": ticket.ticket_id,
        "assigned_agent_id": ticket.assigned_agent_id or "",
        "original_agent_id": ticket.original_agent_id or "",
        "created_at": repr(ticket.created_at),
        "last_activity_at": repr(ticket.last_activity_at),
        "handoff_pending": _flag(ticket.handoff_pending),
    }


def _ticket_from_hash(raw: dict) -> Ticket:
    return Ticket(
        ticket_id=raw["ticket_id"],
        assigned_agent_id=raw.get("assigned_agent_id") or None,
        original_agent_id=raw.get("original_agent_id") or None,
        created_at=float(raw["created_at"]),
        last_activity_at=float(raw["last_activity_at"]),
        handoff_pending=raw.get("handoff_pending") == "1",
    )


class RedisStore:
    """Shared retry plumbing for the stores below."""

    write_error: type[StoreWriteFailed] = StoreWriteFailed

    def __init__(self, r=None, attempts: int = STORE_WRITE_ATTEMPTS):
        self._r = r if r is not None else get_redis()
        self._attempts = max(1, attempts)

    def _retry(self, op: Callable[[], T], error_cls: type[Exception], what: str) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._attempts + 1):
            try:
                return op()
            except TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning("%s failed (attempt %d/%d): %s", what, attempt, self._attempts, e)
        raise error_cls(f"{what} failed: {last_error}") from last_error

    def _read(self, op: Callable[[], T], what: str) -> T:
        return self._retry(op, StoreUnavailable, what)

    def _write(self, op: Callable[[], T], what: str) -> T:
        return self._retry(op, self.write_error, what)


class PresenceStore(RedisStore):
    """Agents by id (`agent:{id}` hashes) plus the `agents:all` membership set."""

    write_error = PresenceWriteFailed

    def get(self, agent_id: str) -> Optional[Agent]:
        raw = self._read(lambda: self._r.hgetall(_agent_key(agent_id)), f"agent {agent_id} read")
        return _agent_from_hash(raw) if raw else None

    def list_all(self) -> list[Agent]:
        def _load() -> list[dict]:
            ids = sorted(self._r.smembers(AGENTS_ALL_SET))
            pipe = self._r.pipeline(transaction=False)
            for aid in ids:
                pipe.hgetall(_agent_key(aid))
            return pipe.execute()

        return [_agent_from_hash(raw) for raw in self._read(_load, "agent list") if raw]

    def update(
        self,
        agent_id: str,
        mutate: Callable[[Optional[Agent]], Optional[Agent]],
    ) -> tuple[Optional[Agent], Optional[Agent]]:
        """
        Compare-and-swap on one agent record. `mutate` receives the current agent
        (None if unknown) and returns the new agent, or None to leave it untouched.
        It may run more than once under contention, so it must not have side effects.
        Returns (before, after); after is None when nothing was written.
        """
        key = _agent_key(agent_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            before = _agent_from_hash(raw) if raw else None
            after = mutate(before)
            if after is not None:
                pipe.multi()
                pipe.hset(key, mapping=_agent_to_hash(after))
                pipe.sadd(AGENTS_ALL_SET, agent_id)
            return before, after

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"agent {agent_id} write",
        )


class TicketStore(RedisStore):
    """
    Tickets by id with secondary indexes: owner (`agent_tickets:{id}`), original
    owner, orphaned set and pending hand-off set; plus the per-ticket assignment log.
    """

    write_error = AssignmentWriteFailed

    def get(self, ticket_id: str) -> Optional[Ticket]:
        raw = self._read(lambda: self._r.hgetall(_ticket_key(ticket_id)), f"ticket {ticket_id} read")
        return _ticket_from_hash(raw) if raw else None

    def get_many(self, ticket_ids: list[str]) -> list[Ticket]:
        """Load tickets, skipping ids that no longer exist. Order follows ticket_ids."""
        if not ticket_ids:
            return []

        def _load() -> list[dict]:
            pipe = self._r.pipeline(transaction=False)
            for tid in ticket_ids:
                pipe.hgetall(_ticket_key(tid))
            return pipe.execute()

        return [_ticket_from_hash(raw) for raw in self._read(_load, "ticket batch read") if raw]

    def create(self, ticket_id: str, now: float) -> Ticket:
        """Register a ticket (orphaned). Existing tickets are returned unchanged."""
        key = _ticket_key(ticket_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            if raw:
                return _ticket_from_hash(raw)
            ticket = Ticket(ticket_id=ticket_id, created_at=now, last_activity_at=now)
            pipe.multi()
            pipe.hset(key, mapping=_ticket_to_hash(ticket))
            pipe.zadd(TICKETS_ALL_ZSET, {ticket_id: now})
            pipe.zadd(TICKETS_ORPHANED_ZSET, {ticket_id: now})
            return ticket

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"ticket {ticket_id} create",
        )

    def touch(self, ticket_id: str, now: float) -> Optional[Ticket]:
        """Record ticket activity. Returns None for unknown tickets."""
        key = _ticket_key(ticket_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            if not raw:
                return None
            ticket = _ticket_from_hash(raw).model_copy(update={"last_activity_at": now})
            pipe.multi()
            pipe.hset(key, "last_activity_at", repr(now))
            return ticket

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"ticket {ticket_id} touch",
        )

    def set_owner(
        self,
        ticket_id: str,
        agent_id: Optional[str],
        now: float,
        actor: str,
        reason: Optional[AssignmentReason] = None,
        expected_owner=ANY_OWNER,
    ) -> tuple[Optional[Ticket], Optional[AssignmentAction]]:
        """
        Atomically replace the owner of a ticket (agent_id=None orphans it).
        With expected_owner, the write only happens if the current owner still matches.
        Returns (ticket, action); ticket is None when the ticket does not exist,
        action is None when nothing was written.
        """
        key = _ticket_key(ticket_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            if not raw:
                return None, None
            before = _ticket_from_hash(raw)
            previous = before.assigned_agent_id
            if previous == agent_id:
                return before, None
            if expected_owner is not ANY_OWNER and previous != expected_owner:
                return before, None

            if agent_id is None:
                action_reason = AssignmentReason.ORPHANED
            else:
                action_reason = reason or (
                    AssignmentReason.ASSIGNED if previous is None else AssignmentReason.REASSIGNED
                )
            first_owner = before.original_agent_id is None and agent_id is not None
            after = before.model_copy(update={
                "assigned_agent_id": agent_id,
                "original_agent_id": agent_id if first_owner else before.original_agent_id,
                "handoff_pending": False,
            })
            action = AssignmentAction(
                ticket_id=ticket_id,
                actor=actor,
                from_agent_id=previous,
                to_agent_id=agent_id,
                reason=action_reason,
                timestamp=now,
            )

            pipe.multi()
            pipe.hset(key, mapping=_ticket_to_hash(after))
            if previous is not None:
                pipe.srem(f"{AGENT_TICKETS_PREFIX}{previous}", ticket_id)
            if agent_id is not None:
                pipe.sadd(f"{AGENT_TICKETS_PREFIX}{agent_id}", ticket_id)
                pipe.zrem(TICKETS_ORPHANED_ZSET, ticket_id)
            else:
                pipe.zadd(TICKETS_ORPHANED_ZSET, {ticket_id: before.created_at})
            if first_owner:
                pipe.sadd(f"{AGENT_ORIGINAL_TICKETS_PREFIX}{agent_id}", ticket_id)
            pipe.zrem(TICKETS_HANDOFF_ZSET, ticket_id)
            pipe.rpush(f"{ASSIGNMENT_LOG_PREFIX}{ticket_id}", action.model_dump_json())
            return after, action

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"ticket {ticket_id} assignment",
        )

    def flag_handoff(
        self, ticket_id: str, now: float, actor: str
    ) -> tuple[Optional[Ticket], Optional[AssignmentAction]]:
        """
        Record an orphaned intent: the owner stays, the ticket joins the hand-off set.
        Already-flagged tickets are left as they are (no duplicate log entry).
        """
        key = _ticket_key(ticket_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            if not raw:
                return None, None
            before = _ticket_from_hash(raw)
            if before.handoff_pending or before.assigned_agent_id is None:
                return before, None
            after = before.model_copy(update={"handoff_pending": True})
            action = AssignmentAction(
                ticket_id=ticket_id,
                actor=actor,
                from_agent_id=before.assigned_agent_id,
                to_agent_id=None,
                reason=AssignmentReason.ORPHANED,
                timestamp=now,
            )
            pipe.multi()
            pipe.hset(key, "handoff_pending", _flag(True))
            pipe.zadd(TICKETS_HANDOFF_ZSET, {ticket_id: before.created_at})
            pipe.rpush(f"{ASSIGNMENT_LOG_PREFIX}{ticket_id}", action.model_dump_json())
            return after, action

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"ticket {ticket_id} hand-off flag",
        )

    def clear_handoff(self, ticket_id: str) -> Optional[Ticket]:
        key = _ticket_key(ticket_id)

        def _txn(pipe):
            raw = pipe.hgetall(key)
            if not raw:
                return None
            ticket = _ticket_from_hash(raw)
            if not ticket.handoff_pending:
                return ticket
            pipe.multi()
            pipe.hset(key, "handoff_pending", _flag(False))
            pipe.zrem(TICKETS_HANDOFF_ZSET, ticket_id)
            return ticket.model_copy(update={"handoff_pending": False})

        return self._write(
            lambda: self._r.transaction(_txn, key, value_from_callable=True),
            f"ticket {ticket_id} hand-off clear",
        )

    def _sorted_by_arrival(self, ticket_ids) -> list[Ticket]:
        return sorted(self.get_many(list(ticket_ids)), key=lambda t: (t.created_at, t.ticket_id))

    def tickets_for_agent(self, agent_id: str) -> list[Ticket]:
        """Tickets currently owned by agent_id, oldest first."""
        ids = self._read(lambda: self._r.smembers(f"{AGENT_TICKETS_PREFIX}{agent_id}"), "owner index read")
        return self._sorted_by_arrival(ids)

    def tickets_originally_for(self, agent_id: str) -> list[Ticket]:
        ids = self._read(
            lambda: self._r.smembers(f"{AGENT_ORIGINAL_TICKETS_PREFIX}{agent_id}"),
            "original owner index read",
        )
        return self._sorted_by_arrival(ids)

    def load_counts(self, agent_ids: list[str]) -> dict[str, int]:
        """Number of tickets currently owned by each agent."""
        if not agent_ids:
            return {}

        def _load() -> list[int]:
            pipe = self._r.pipeline(transaction=False)
            for aid in agent_ids:
                pipe.scard(f"{AGENT_TICKETS_PREFIX}{aid}")
            return pipe.execute()

        return dict(zip(agent_ids, (int(n) for n in self._read(_load, "load count read"))))

    def orphaned_ids(self) -> list[str]:
        """Orphaned ticket ids in arrival order."""
        return self._read(lambda: self._r.zrange(TICKETS_ORPHANED_ZSET, 0, -1), "orphaned index read")

    def handoff_ids(self) -> list[str]:
        return self._read(lambda: self._r.zrange(TICKETS_HANDOFF_ZSET, 0, -1), "hand-off index read")

    def all_ids(self) -> list[str]:
        return self._read(lambda: self._r.zrange(TICKETS_ALL_ZSET, 0, -1), "ticket index read")

    def history(self, ticket_id: str) -> list[AssignmentAction]:
        raw = self._read(
            lambda: self._r.lrange(f"{ASSIGNMENT_LOG_PREFIX}{ticket_id}", 0, -1),
            f"assignment log {ticket_id} read",
        )
        return [AssignmentAction.model_validate(json.loads(item)) for item in raw]


class ModeStore(RedisStore):
    """Singleton `system:mode` key."""

    write_error = ModeWriteFailed

    def get(self) -> Optional[str]:
        return self._read(lambda: self._r.get(MODE_KEY), "system mode read")

    def set(self, value: str) -> None:
        self._write(lambda: self._r.set(MODE_KEY, value), "system mode write")


class SettingsStore(RedisStore):
    """Runtime-tunable settings shared by the API and the worker (`system:afk_timeout`)."""

    write_error = SettingsWriteFailed

    def get_afk_timeout(self) -> Optional[str]:
        return self._read(lambda: self._r.get(AFK_TIMEOUT_KEY), "AFK timeout read")

    def set_afk_timeout(self, minutes: int) -> None:
        self._write(lambda: self._r.set(AFK_TIMEOUT_KEY, str(minutes)), "AFK timeout write")
