"""REST API for agent presence, ticket assignment and the system mode."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch.config import CORS_ORIGINS, REDISTRIBUTION_CAP
from dispatch.engine import Engine, build_engine
from dispatch.errors import (
    DispatchError,
    InvalidMode,
    InvalidStatus,
    StoreUnavailable,
    StoreWriteFailed,
    TicketNotFound,
)
from dispatch.models import (
    Agent,
    AgentStats,
    AssignmentAction,
    AssignRequest,
    ModeResponse,
    ModeUpdate,
    PersonalStatusUpdate,
    ReassignmentOutcome,
    StatusChangeResult,
    Ticket,
    TicketOpen,
)
from dispatch.notifier import feed, start_subscriber
from dispatch.store import get_redis

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        start_subscriber(get_redis())
    except Exception as e:
        logger.warning("Event subscriber unavailable (Redis down?): %s", e)
    yield


app = FastAPI(
    title="Support Dispatch",
    description="Agent presence and ticket assignment engine.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)


_ERROR_STATUS = (
    (InvalidStatus, 400),
    (InvalidMode, 400),
    (TicketNotFound, 404),
    (StoreWriteFailed, 503),
    (StoreUnavailable, 503),
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


# --- Agents ---


@app.get("/agents", response_model=list[Agent])
def list_agents(view: str = "all", engine: Engine = Depends(get_engine)) -> list[Agent]:
    """List agents. view = all | available | online | connected."""
    views = {
        "all": engine.presence.list_agents,
        "available": engine.presence.list_available,
        "online": engine.presence.list_online,
        "connected": engine.presence.list_connected,
    }
    if view not in views:
        raise HTTPException(status_code=400, detail=f"Unknown view {view!r}")
    return views[view]()


@app.get("/agents/stats", response_model=AgentStats)
def agent_stats(engine: Engine = Depends(get_engine)) -> AgentStats:
    agents = engine.presence.list_agents()
    loads = engine.assignment.tickets.load_counts([a.agent_id for a in agents])
    return engine.presence.agent_stats(loads)


@app.get("/agents/best", response_model=Optional[Agent])
def best_agent(engine: Engine = Depends(get_engine)) -> Optional[Agent]:
    """Agent that would receive the next ticket (null when nobody is available)."""
    return engine.assignment.best_available_agent()


@app.get("/agents/{agent_id}", response_model=Agent)
def get_agent(agent_id: str, engine: Engine = Depends(get_engine)) -> Agent:
    agent = engine.presence.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return agent


@app.get("/agents/{agent_id}/tickets", response_model=list[Ticket])
def get_agent_tickets(agent_id: str, engine: Engine = Depends(get_engine)) -> list[Ticket]:
    return engine.assignment.tickets_for_agent(agent_id)


@app.post("/agents/{agent_id}/status", response_model=StatusChangeResult)
def update_personal_status(
    agent_id: str,
    payload: PersonalStatusUpdate,
    engine: Engine = Depends(get_engine),
) -> StatusChangeResult:
    """Set the agent's personal status; tickets are rebalanced when presence actually changes."""
    transition, outcomes = engine.change_personal_status(agent_id, payload.personal_status)
    return StatusChangeResult(agent=transition.agent, reassignments=outcomes)


@app.post("/agents/{agent_id}/heartbeat", response_model=Agent)
def heartbeat(agent_id: str, engine: Engine = Depends(get_engine)) -> Agent:
    agent = engine.presence.heartbeat(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return agent


@app.post("/agents/{agent_id}/activity", response_model=StatusChangeResult)
def record_activity(agent_id: str, engine: Engine = Depends(get_engine)) -> StatusChangeResult:
    """Agent interaction (typing, replying). Brings auto-AFK agents back online."""
    agent, outcomes = engine.afk.record_activity(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return StatusChangeResult(agent=agent, reassignments=outcomes)


@app.post("/agents/{agent_id}/connect", response_model=StatusChangeResult)
def connect_agent(agent_id: str, engine: Engine = Depends(get_engine)) -> StatusChangeResult:
    transition, outcomes = engine.connect_agent(agent_id)
    return StatusChangeResult(agent=transition.agent, reassignments=outcomes)


@app.post("/agents/{agent_id}/disconnect", response_model=StatusChangeResult)
def disconnect_agent(agent_id: str, engine: Engine = Depends(get_engine)) -> StatusChangeResult:
    transition, outcomes = engine.disconnect_agent(agent_id)
    return StatusChangeResult(agent=transition.agent, reassignments=outcomes)


# --- System mode ---


@app.get("/system/mode", response_model=ModeResponse)
def get_mode(engine: Engine = Depends(get_engine)) -> ModeResponse:
    return ModeResponse(mode=engine.modes.get_mode())


@app.put("/system/mode", response_model=ModeResponse)
def set_mode(payload: ModeUpdate, engine: Engine = Depends(get_engine)) -> ModeResponse:
    return ModeResponse(mode=engine.modes.set_mode(payload.mode))


@app.get("/system/afk")
def get_afk_config(engine: Engine = Depends(get_engine)) -> dict:
    return engine.afk.get_config()


@app.put("/system/afk")
def set_afk_timeout(minutes: int, engine: Engine = Depends(get_engine)) -> dict:
    try:
        engine.afk.set_timeout(minutes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return engine.afk.get_config()


# --- Tickets ---


@app.post("/tickets", response_model=Ticket, status_code=201)
def open_ticket(payload: TicketOpen, engine: Engine = Depends(get_engine)) -> Ticket:
    """Register a conversation; auto-assigned to the best available agent unless the system is off."""
    return engine.assignment.open_ticket(payload.ticket_id)


@app.get("/tickets", response_model=list[Ticket])
def list_tickets(engine: Engine = Depends(get_engine)) -> list[Ticket]:
    return engine.assignment.all_tickets()


@app.get("/tickets/orphaned", response_model=list[Ticket])
def list_orphaned(engine: Engine = Depends(get_engine)) -> list[Ticket]:
    return engine.assignment.orphaned_tickets()


@app.post("/tickets/redistribute", response_model=list[ReassignmentOutcome])
def redistribute(cap: int = REDISTRIBUTION_CAP, engine: Engine = Depends(get_engine)) -> list[ReassignmentOutcome]:
    """Hand out waiting tickets, at most `cap` per available agent."""
    return engine.rebalancing.redistribute_orphaned(cap=cap)


@app.get("/tickets/{ticket_id}", response_model=Ticket)
def get_ticket(ticket_id: str, engine: Engine = Depends(get_engine)) -> Ticket:
    return engine.assignment.get_ticket(ticket_id)


@app.get("/tickets/{ticket_id}/history", response_model=list[AssignmentAction])
def ticket_history(ticket_id: str, engine: Engine = Depends(get_engine)) -> list[AssignmentAction]:
    return engine.assignment.history(ticket_id)


@app.post("/tickets/{ticket_id}/activity", response_model=Ticket)
def touch_ticket(ticket_id: str, engine: Engine = Depends(get_engine)) -> Ticket:
    return engine.assignment.touch_ticket(ticket_id)


@app.post("/tickets/{ticket_id}/assign", response_model=Ticket)
def assign_ticket(ticket_id: str, payload: AssignRequest, engine: Engine = Depends(get_engine)) -> Ticket:
    """Explicit claim. Allowed in every mode."""
    return engine.assignment.assign(ticket_id, payload.agent_id, actor=payload.actor or payload.agent_id)


@app.post("/tickets/{ticket_id}/unassign", response_model=Ticket)
def unassign_ticket(ticket_id: str, actor: Optional[str] = None, engine: Engine = Depends(get_engine)) -> Ticket:
    return engine.assignment.unassign(ticket_id, actor=actor)


# --- Misc ---


@app.get("/activity")
def get_activity(limit: int = 100) -> dict:
    """Recent published events (assignments, reassignments, mode changes)."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": feed.recent(limit=limit)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
