"""
Alert Desk - Main API Server

FastAPI application exposing the unified alert feed and operator commands.
The AlertFeed is provided by the get_feed dependency; tests replace it via
app.dependency_overrides[get_feed].
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from src.config import get_settings
from src.core.feed import AlertFeed
from src.models.alert import AlertSource, Severity
from src.models.feed import CommandResult, FeedItemResponse, FeedQuery, SourceStatus
from src.models.state import Actor, AlertState
from src.models.ticket import RelatedTickets, TicketCandidate

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_feed: Optional[AlertFeed] = None


def set_feed(feed: Optional[AlertFeed]) -> None:
    """Install the feed the API serves (adapters are wired by the deployment)."""
    global _feed
    _feed = feed


def get_feed() -> AlertFeed:
    global _feed
    if _feed is None:
        # No vendor adapters registered: every source reports "not connected"
        _feed = AlertFeed.from_settings(get_settings(), adapters={})
    return _feed


@asynccontextmanager
async def lifespan(app: FastAPI):
    feed = get_feed()
    create_schema = getattr(feed.store, "create_schema", None)
    if create_schema is not None:
        await create_schema()
    yield
    dispose = getattr(feed.store, "dispose", None)
    if dispose is not None:
        await dispose()


# Initialize FastAPI app
app = FastAPI(
    title="Alert Desk API",
    description="Unified MSP alert feed with cross-vendor correlation, alert state and ticket matching",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request / Response Models
# ============================================================================

class AlertIdsRequest(BaseModel):
    alert_ids: List[str] = Field(min_length=1)
    actor: Optional[Actor] = None


class TakeOwnershipRequest(AlertIdsRequest):
    actor: Actor


class CloseRequest(AlertIdsRequest):
    actor: Actor
    note: str


class LinkTicketRequest(AlertIdsRequest):
    ticket_id: str = Field(min_length=1)
    summary: Optional[str] = None


class CreateTicketRequest(AlertIdsRequest):
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    board_id: Optional[str] = None
    assign_to: Optional[str] = None


class RelatedTicketsRequest(BaseModel):
    alert_id: str


class MitigateRequest(AlertIdsRequest):
    action: str


class IncidentStatusRequest(AlertIdsRequest):
    status: str


class VerdictRequest(AlertIdsRequest):
    verdict: str


class AlertListResponse(BaseModel):
    items: List[FeedItemResponse]
    sources: List[SourceStatus]
    severity_counts: dict[Severity, int]
    polled_at: datetime


class MitigateResponse(BaseModel):
    action: str
    alert_ids: List[str]
    results: List[Any] = Field(default_factory=list)


# ============================================================================
# Error mapping
# ============================================================================

_STATUS_BY_KIND = {
    "validation": 422,
    "conflict": 409,
    "not_configured": 503,
    "vendor_unavailable": 503,
    "mitigation_failed": 502,
}


def _unwrap(result: CommandResult) -> Any:
    """Return the command's value, or raise the HTTP error for its classified failure."""
    if result.ok:
        return result.value
    status_code = _STATUS_BY_KIND.get(result.error.kind, 500)
    raise HTTPException(
        status_code=status_code,
        detail={"kind": result.error.kind, "message": result.error.message},
    )


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health")
async def health_check():
    """Liveness plus which integrations have credentials."""
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {source.value: settings.is_configured(source.value) for source in AlertSource},
        "ticketing_configured": settings.is_configured("connectwise"),
    }


@app.get("/api/v1/alerts", response_model=AlertListResponse)
async def list_alerts(
    sources: Optional[List[AlertSource]] = Query(default=None),
    severity: Optional[Severity] = None,
    search: Optional[str] = None,
    show_closed: bool = False,
    feed: AlertFeed = Depends(get_feed),
):
    """
    The unified alert feed.

    Each item is a merge group's primary alert joined with its state.
    Sources that failed this poll are reported in ``sources`` with health
    ``degraded``; the rest of the feed is still returned.
    """
    snapshot = await feed.poll(
        FeedQuery(sources=sources, severity=severity, search=search, show_closed=show_closed)
    )
    return AlertListResponse(
        items=[item.to_response() for item in snapshot.items],
        sources=snapshot.sources,
        severity_counts=snapshot.severity_counts,
        polled_at=snapshot.polled_at,
    )


@app.post("/api/v1/alerts/take-ownership", response_model=List[AlertState])
async def take_ownership(request: TakeOwnershipRequest, feed: AlertFeed = Depends(get_feed)):
    return _unwrap(await feed.take_ownership(request.alert_ids, request.actor))


@app.post("/api/v1/alerts/release-ownership", response_model=List[AlertState])
async def release_ownership(request: AlertIdsRequest, feed: AlertFeed = Depends(get_feed)):
    return _unwrap(await feed.release_ownership(request.alert_ids, request.actor))


@app.post("/api/v1/alerts/close", response_model=List[AlertState])
async def close_alerts(request: CloseRequest, feed: AlertFeed = Depends(get_feed)):
    """Close every alert in the batch with the same note. Send all member ids of a merged group."""
    return _unwrap(await feed.close(request.alert_ids, request.actor, request.note))


@app.post("/api/v1/alerts/reopen", response_model=List[AlertState])
async def reopen_alerts(request: AlertIdsRequest, feed: AlertFeed = Depends(get_feed)):
    return _unwrap(await feed.reopen(request.alert_ids, request.actor))


@app.post("/api/v1/alerts/link-ticket", response_model=List[AlertState])
async def link_ticket(request: LinkTicketRequest, feed: AlertFeed = Depends(get_feed)):
    return _unwrap(
        await feed.link_ticket(request.alert_ids, request.ticket_id, request.summary, request.actor)
    )


@app.post("/api/v1/alerts/create-ticket", response_model=TicketCandidate)
async def create_ticket(request: CreateTicketRequest, feed: AlertFeed = Depends(get_feed)):
    """
    Create one PSA ticket for the alerts and link each of them to it.

    Requires a company: either ``company_id`` or a match cached by
    /related-tickets. Alerts already linked to a ticket are rejected (409).
    """
    return _unwrap(
        await feed.create_and_link_ticket(
            request.alert_ids,
            actor=request.actor,
            company_id=request.company_id,
            company_name=request.company_name,
            board_id=request.board_id,
            assign_to=request.assign_to,
        )
    )


@app.post("/api/v1/alerts/related-tickets", response_model=RelatedTickets)
async def related_tickets(request: RelatedTicketsRequest, feed: AlertFeed = Depends(get_feed)):
    return _unwrap(await feed.find_related_tickets(request.alert_id))


@app.post("/api/v1/alerts/mitigate", response_model=MitigateResponse)
async def mitigate(request: MitigateRequest, feed: AlertFeed = Depends(get_feed)):
    """Forward a mitigation (kill, quarantine, isolate, ...) to the alerts' vendor."""
    results = _unwrap(await feed.dispatch_mitigation(request.alert_ids, request.action, request.actor))
    return MitigateResponse(action=request.action, alert_ids=request.alert_ids, results=results or [])


@app.post("/api/v1/alerts/incident-status")
async def update_incident_status(request: IncidentStatusRequest, feed: AlertFeed = Depends(get_feed)):
    _unwrap(await feed.update_incident_status(request.alert_ids, request.status, request.actor))
    return {"status": "updated", "alert_ids": request.alert_ids}


@app.post("/api/v1/alerts/verdict")
async def update_verdict(request: VerdictRequest, feed: AlertFeed = Depends(get_feed)):
    _unwrap(await feed.update_verdict(request.alert_ids, request.verdict, request.actor))
    return {"status": "updated", "alert_ids": request.alert_ids}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
