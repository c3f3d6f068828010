# checkin_guard/routes/checkin.py
from typing import Optional

from fastapi import APIRouter, Depends, Response, status

from checkin_guard.database import get_database
from checkin_guard.models.checkin import (
    ActorContext,
    AdmissionResult,
    CheckInRequest,
    LookupResult,
    PinVerifyRequest,
    PinVerifyResult,
)
from checkin_guard.utils.admission import commit_admission, find_invite, lookup, verify_pin
from checkin_guard.utils.auth_utils import event_staff
from checkin_guard.utils.locks import release_lock

router = APIRouter()


@router.get("/{event_id}/verify-scan/{invite_code}", response_model=LookupResult)
async def verify_scan(event_id: str, invite_code: str, actor: ActorContext = Depends(event_staff), db=Depends(get_database)):
    """Validate a scanned code and show the guest without admitting them."""
    return await lookup(db, event_id, invite_code, actor)


@router.post("/{event_id}/verify-pin/{invite_code}", response_model=PinVerifyResult)
async def check_pin(
    event_id: str,
    invite_code: str,
    request: PinVerifyRequest,
    response: Response,
    actor: ActorContext = Depends(event_staff),
    db=Depends(get_database),
):
    result = await verify_pin(db, event_id, invite_code, request.pin, actor)
    if not result.valid:
        response.status_code = status.HTTP_429_TOO_MANY_REQUESTS if result.locked else status.HTTP_401_UNAUTHORIZED
    return result


@router.post("/{event_id}/checkin/{invite_code}", response_model=AdmissionResult)
async def check_in(
    event_id: str,
    invite_code: str,
    request: Optional[CheckInRequest] = None,
    actor: ActorContext = Depends(event_staff),
    db=Depends(get_database),
):
    actual_attendees = request.actual_attendees if request else None
    return await commit_admission(db, event_id, invite_code, actor, actual_attendees)


@router.delete("/{event_id}/lock/{invite_code}")
async def release_checkin_lock(
    event_id: str,
    invite_code: str,
    actor: ActorContext = Depends(event_staff),
    db=Depends(get_database),
):
    """Called when a scanner abandons a check-in flow; only the holding session can release."""
    invite = await find_invite(db, invite_code, event_id=event_id)
    released = await release_lock(db, invite.id, actor.session_id)
    return {"released": released}
