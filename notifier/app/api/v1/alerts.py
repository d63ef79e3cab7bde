"""
FastAPI routes: alerts and their subscriptions.

Provides endpoints to:
    POST   /api/v1/alerts                        — create an alert with its channels
    GET    /api/v1/alerts                        — list visible alerts
    GET    /api/v1/alerts/by-query/{query_id}    — alerts on one query
    GET    /api/v1/alerts/{id}                   — one alert
    PUT    /api/v1/alerts/{id}                   — update condition / channels / archived
    DELETE /api/v1/alerts/{id}/subscription      — unsubscribe the caller

The acting user comes from the ``X-User-Id`` header. Responses are
hydrated: creator and recipients are expanded to user summaries and each
alert carries ``can_write`` for the caller.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field

from notifier.app.alerts.engine import AlertEngine
from notifier.app.alerts.models import (
    Alert,
    AlertCondition,
    Channel,
    ScheduleDay,
    ScheduleType,
    User,
)
from notifier.app.alerts.service import AlertView
from notifier.app.core.errors import AuthenticationRequired
from notifier.app.core.middleware import ACTOR_HEADER

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class RecipientInput(BaseModel):
    """A subscribed user, referenced by id."""
    id: int = Field(..., examples=[2])


class ChannelInput(BaseModel):
    """One delivery channel. Send ``id`` to keep an existing channel."""
    id: Optional[int] = Field(None, description="Existing channel id (updates only)")
    channel_type: str = Field(..., examples=["email"])
    enabled: bool = Field(True)
    schedule_type: ScheduleType = Field(..., examples=["daily"])
    schedule_hour: Optional[int] = Field(None, ge=0, le=23, examples=[8])
    schedule_day: Optional[ScheduleDay] = Field(None, examples=["mon"])
    details: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"channel": "#ops"}, {"url": "https://hooks.example.com/a"}],
    )
    recipients: List[RecipientInput] = Field(default_factory=list)


class AlertCreateRequest(BaseModel):
    query_id: int = Field(..., examples=[17])
    name: Optional[str] = Field(None, examples=["Orders over target"])
    condition: AlertCondition = Field(..., examples=["rows"])
    alert_first_only: bool = Field(..., description="Deliver once, then archive")
    alert_above_goal: Optional[bool] = Field(
        None, description="Goal alerts only: fire above (true) or below (false) the goal",
    )
    skip_if_empty: bool = Field(True)
    channels: List[ChannelInput] = Field(..., min_length=1)


class AlertUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""
    name: Optional[str] = None
    condition: Optional[AlertCondition] = None
    alert_first_only: Optional[bool] = None
    alert_above_goal: Optional[bool] = None
    skip_if_empty: Optional[bool] = None
    archived: Optional[bool] = None
    channels: Optional[List[ChannelInput]] = Field(None, min_length=1)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------

def get_engine(request: Request) -> AlertEngine:
    return request.app.state.engine


def get_actor(
    engine: AlertEngine = Depends(get_engine),
    user_id: Optional[str] = Header(None, alias=ACTOR_HEADER),
) -> User:
    """Resolve the calling user from the actor header."""
    if not user_id:
        raise AuthenticationRequired(f"{ACTOR_HEADER} header is required")
    try:
        actor = engine.store.get_user(int(user_id))
    except ValueError:
        raise AuthenticationRequired(f"Invalid {ACTOR_HEADER} header") from None
    if actor is None:
        raise AuthenticationRequired("Unknown user")
    return actor


def _to_channel(c: ChannelInput) -> Channel:
    """Convert Pydantic model to dataclass."""
    return Channel(
        channel_type=c.channel_type,
        schedule_type=c.schedule_type,
        schedule_hour=c.schedule_hour,
        schedule_day=c.schedule_day,
        enabled=c.enabled,
        details=dict(c.details),
        recipients=tuple(r.id for r in c.recipients),
        id=c.id,
    )


def _user_summary(engine: AlertEngine, user_id: int) -> Optional[Dict[str, Any]]:
    user = engine.store.get_user(user_id)
    return user.summary() if user else None


def _hydrate(engine: AlertEngine, actor: User, view: AlertView) -> Dict[str, Any]:
    """Alert + channels with user summaries and the caller's write flag."""
    body = view.alert.to_dict()
    body["creator"] = _user_summary(engine, view.alert.creator_id)
    body["can_write"] = engine.permissions.can_write(actor, view.alert, view.channels)
    body["channels"] = []
    for channel in view.channels:
        entry = channel.to_dict()
        entry["recipients"] = [
            s for s in (_user_summary(engine, uid) for uid in channel.recipients) if s
        ]
        body["channels"].append(entry)
    return body


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=201,
    summary="Create an alert",
    description="Create an alert on a saved query with at least one channel.",
)
def create_alert(
    request: AlertCreateRequest,
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    alert = Alert(
        query_id=request.query_id,
        creator_id=actor.id,
        condition=request.condition,
        alert_first_only=request.alert_first_only,
        alert_above_goal=request.alert_above_goal,
        skip_if_empty=request.skip_if_empty,
        name=request.name,
    )
    view = engine.service.create_alert(actor, alert, [_to_channel(c) for c in request.channels])
    return _hydrate(engine, actor, view)


@router.get(
    "",
    summary="List alerts",
    description="Alerts visible to the caller; archived ones only when archived=true.",
)
def list_alerts(
    archived: bool = Query(False),
    user_id: Optional[int] = Query(None, description="Created by or delivered to this user"),
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    views = engine.service.list_alerts(actor, archived=archived, user_id=user_id)
    return [_hydrate(engine, actor, v) for v in views]


@router.get(
    "/by-query/{query_id}",
    summary="List alerts on a query",
)
def list_alerts_for_query(
    query_id: int,
    archived: bool = Query(False),
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    views = engine.service.list_alerts_for_query(actor, query_id, archived=archived)
    return [_hydrate(engine, actor, v) for v in views]


@router.get(
    "/{alert_id}",
    summary="Get an alert",
)
def get_alert(
    alert_id: int,
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    return _hydrate(engine, actor, engine.service.get_alert(actor, alert_id))


@router.put(
    "/{alert_id}",
    summary="Update an alert",
    description="Replace condition, schedule, channels or the archived flag.",
)
def update_alert(
    alert_id: int,
    request: AlertUpdateRequest,
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    changes = request.model_dump(exclude_unset=True, exclude={"channels"})
    channels = None
    if "channels" in request.model_fields_set and request.channels is not None:
        channels = [_to_channel(c) for c in request.channels]
    view = engine.service.update_alert(actor, alert_id, changes, channels)
    return _hydrate(engine, actor, view)


@router.delete(
    "/{alert_id}/subscription",
    status_code=204,
    summary="Unsubscribe from an alert",
    description="Remove the caller from every channel of the alert.",
)
def unsubscribe(
    alert_id: int,
    engine: AlertEngine = Depends(get_engine),
    actor: User = Depends(get_actor),
):
    engine.service.unsubscribe(actor, alert_id)
    return Response(status_code=204)
