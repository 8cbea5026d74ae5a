# attendance_monitor/api/routes/realtime.py
from enum import Enum
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from attendance_monitor.api.dependencies.internal_auth import verify_internal_api_key
from attendance_monitor.api.dependencies.tracker import get_tracker
from attendance_monitor.schemas.realtime import ConnectionState, RealtimeEvent
from attendance_monitor.services.attendance_tracker import AttendanceTracker

router = APIRouter(prefix="/realtime", tags=["Realtime"])


class EnvironmentSignal(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    VISIBLE = "visible"
    HIDDEN = "hidden"


class EnvironmentChange(BaseModel):
    signal: EnvironmentSignal = Field(..., examples=["online"])


@router.get(
    "/status",
    response_model=ConnectionState,
    summary="Current realtime connection state",
)
async def get_status(tracker: AttendanceTracker = Depends(get_tracker)) -> ConnectionState:
    return tracker.channel.connection_stats()


@router.post(
    "/events",
    response_model=RealtimeEvent,
    status_code=HTTPStatus.ACCEPTED,
    dependencies=[Depends(verify_internal_api_key)],
    summary="Push an inbound participant event",
    description=(
        "Entry point for the meeting provider bridge. Accepted types: "
        "`participant_joined`, `participant_left`, `participant_update`, "
        "`bulk_participant_update`.\n\n"
        "Malformed messages are dropped and answered with 422."
    ),
    responses={
        401: {"description": "Missing or invalid internal API key (if configured)."},
        422: {"description": "Malformed event; it was dropped."},
    },
)
async def push_event(
    message: dict[str, Any] = Body(
        ...,
        examples=[{"type": "participant_joined", "data": {"id": "p-1", "name": "Jane Doe"}}],
    ),
    tracker: AttendanceTracker = Depends(get_tracker),
) -> RealtimeEvent:
    event = tracker.channel.receive(message)
    if event is None:
        raise HTTPException(
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            detail="Malformed realtime event dropped.",
        )
    return event


@router.post(
    "/connect",
    response_model=ConnectionState,
    summary="Manually (re)connect the realtime channel",
)
async def connect(tracker: AttendanceTracker = Depends(get_tracker)) -> ConnectionState:
    await tracker.channel.connect()
    return tracker.channel.connection_stats()


@router.post(
    "/disconnect",
    response_model=ConnectionState,
    summary="Disconnect the realtime channel",
)
async def disconnect(tracker: AttendanceTracker = Depends(get_tracker)) -> ConnectionState:
    await tracker.channel.disconnect()
    return tracker.channel.connection_stats()


@router.post(
    "/environment",
    response_model=ConnectionState,
    summary="Report a host visibility or network change",
)
async def environment_change(
    payload: EnvironmentChange,
    tracker: AttendanceTracker = Depends(get_tracker),
) -> ConnectionState:
    channel = tracker.channel
    if payload.signal == EnvironmentSignal.ONLINE:
        await channel.on_network_online()
    elif payload.signal == EnvironmentSignal.OFFLINE:
        await channel.on_network_offline()
    else:
        await channel.on_visibility_change(payload.signal == EnvironmentSignal.VISIBLE)
    return channel.connection_stats()
