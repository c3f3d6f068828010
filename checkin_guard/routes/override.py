# checkin_guard/routes/override.py
from fastapi import APIRouter, Depends

from checkin_guard.database import get_database
from checkin_guard.models.checkin import (
    ActorContext,
    AdmissionResult,
    OverrideExecuteRequest,
    OverrideGrant,
    OverrideMetadata,
    OverrideRequest,
    OverrideVerifyRequest,
)
from checkin_guard.utils.auth_utils import event_staff
from checkin_guard.utils.override import execute_override, introspect_override, request_override

router = APIRouter()


@router.post("/{event_id}/request-override", response_model=OverrideGrant)
async def request_manager_override(
    event_id: str,
    request: OverrideRequest,
    actor: ActorContext = Depends(event_staff),
    db=Depends(get_database),
):
    """Step 1: an organizer authenticates at the door and receives a short-lived grant."""
    return await request_override(db, event_id, request, actor)


@router.post("/{event_id}/verify-override-token", response_model=OverrideMetadata)
async def verify_override_token(event_id: str, request: OverrideVerifyRequest, actor: ActorContext = Depends(event_staff)):
    return introspect_override(event_id, request)


@router.post("/{event_id}/checkin-with-override/{invite_code}", response_model=AdmissionResult)
async def checkin_with_override(
    event_id: str,
    invite_code: str,
    request: OverrideExecuteRequest,
    actor: ActorContext = Depends(event_staff),
    db=Depends(get_database),
):
    return await execute_override(
        db, event_id, invite_code, request.override_token, actor, request.actual_attendees
    )
