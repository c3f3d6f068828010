# checkin_guard/routes/organizer.py
import logging
import secrets
import string
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from checkin_guard.database import EVENTS, INVITES, PARTICIPANTS, get_database
from checkin_guard.models.checkin import ActorContext, BlockRequest, CheckinStats, OverrideHistoryEntry
from checkin_guard.models.event import CheckinSettings, CheckinSettingsUpdate, Event, EventCreate
from checkin_guard.models.invite import Invite, InviteBatch, InviteDetail, InviteUpdate
from checkin_guard.utils.admission import find_invite, load_event
from checkin_guard.utils.audit import CLEARED_BLOCK
from checkin_guard.utils.auth_utils import event_organizer, get_password_hash
from checkin_guard.utils.expiry import utcnow
from checkin_guard.utils.fingerprint import identity_fields
from checkin_guard.utils.override import override_history
from checkin_guard.utils.trust import calculate_trust_score

router = APIRouter()
logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_invite_code(length: int = 8) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def detail(invite: Invite, now: Optional[datetime] = None) -> InviteDetail:
    updates = {"trust_score": calculate_trust_score(invite)}
    if invite.is_blocked and not invite.blocked_at_time(now or utcnow()):
        # Expired temporary block; the next scan clears it from the store.
        updates.update(is_blocked=False, blocked_reason=None, blocked_until=None)
    return InviteDetail.from_invite(invite).model_copy(update=updates)


async def update_invite(db, invite: Invite, fields: dict) -> Invite:
    doc = await db.get_collection(INVITES).find_one_and_update(
        {"id": invite.id},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise HTTPException(status_code=404, detail="Invite not found")
    return Invite(**doc)


@router.post("/events", response_model=Event, status_code=201)
async def create_event(event: EventCreate, db=Depends(get_database)):
    """Create an event together with its organizer account."""
    event_data = event.model_dump(exclude={"organizer_password", "enterprise_mode"})
    event_data["id"] = str(uuid.uuid4())
    event_data["is_enterprise_mode"] = event.enterprise_mode
    event_data["checkin_settings"] = CheckinSettings().model_dump() if event.enterprise_mode else None

    await db.get_collection(EVENTS).insert_one(event_data)
    await db.get_collection(PARTICIPANTS).insert_one({
        "id": str(uuid.uuid4()),
        "event_id": event_data["id"],
        "username": event.organizer_username,
        "role": "organizer",
        "has_password": True,
        "password": get_password_hash(event.organizer_password),
    })

    logger.info("Event %s created by %s", event_data["id"], event.organizer_username)
    return Event(**event_data)


@router.post("/{event_id}/enterprise", response_model=Event)
async def enable_enterprise_mode(event_id: str, organizer: ActorContext = Depends(event_organizer), db=Depends(get_database)):
    event = await load_event(db, event_id)
    settings = event.checkin_settings or CheckinSettings()
    doc = await db.get_collection(EVENTS).find_one_and_update(
        {"id": event_id},
        {"$set": {"is_enterprise_mode": True, "checkin_settings": settings.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Enterprise check-in enabled for event %s by %s", event_id, organizer.username)
    return Event(**doc)


@router.get("/{event_id}/checkin-settings", response_model=CheckinSettings)
async def get_checkin_settings(event_id: str, organizer: ActorContext = Depends(event_organizer), db=Depends(get_database)):
    event = await load_event(db, event_id)
    return event.checkin_settings or CheckinSettings()


@router.patch("/{event_id}/checkin-settings", response_model=CheckinSettings)
async def update_checkin_settings(
    event_id: str,
    changes: CheckinSettingsUpdate,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    event = await load_event(db, event_id)
    current = event.checkin_settings or CheckinSettings()
    updates = changes.model_dump(exclude_unset=True)

    if "emergency_lockdown" in updates:
        if updates["emergency_lockdown"] and not current.emergency_lockdown:
            updates["emergency_lockdown_at"] = utcnow()
            updates["emergency_lockdown_by"] = organizer.username
            logger.warning("Emergency lockdown of event %s by %s", event_id, organizer.username)
        elif not updates["emergency_lockdown"]:
            updates.update(emergency_lockdown_at=None, emergency_lockdown_by=None, emergency_lockdown_reason=None)
            if current.emergency_lockdown:
                logger.warning("Emergency lockdown of event %s lifted by %s", event_id, organizer.username)

    settings = CheckinSettings(**{**current.model_dump(), **updates})
    await db.get_collection(EVENTS).update_one(
        {"id": event_id},
        {"$set": {"checkin_settings": settings.model_dump()}},
    )
    return settings


@router.post("/{event_id}/invites", response_model=List[InviteDetail], status_code=201)
async def create_invites(
    event_id: str,
    batch: InviteBatch,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    await load_event(db, event_id)
    invites_collection = db.get_collection(INVITES)
    created = []
    for guest in batch.guests:
        invite_data = guest.model_dump()
        invite_data.update(
            id=str(uuid.uuid4()),
            event_id=event_id,
            group_size=guest.group_size or max(1, guest.adults + guest.children),
            created_at=utcnow(),
            **identity_fields(guest.guest_name, guest.guest_email, guest.guest_phone),
        )
        # Codes are random; retry the rare collision against the unique index.
        for _ in range(5):
            invite = Invite(**invite_data, invite_code=generate_invite_code())
            try:
                # Store every default so conditional updates can match on them.
                await invites_collection.insert_one(invite.model_dump())
                break
            except DuplicateKeyError:
                continue
        else:
            raise HTTPException(status_code=503, detail="Could not allocate an invite code, try again")
        created.append(detail(invite))

    logger.info("%s invites created for event %s", len(created), event_id)
    return created


@router.get("/{event_id}/invites", response_model=List[InviteDetail])
async def list_invites(event_id: str, organizer: ActorContext = Depends(event_organizer), db=Depends(get_database)):
    docs = await db.get_collection(INVITES).find({"event_id": event_id}).to_list(length=None)
    invites = sorted((Invite(**doc) for doc in docs), key=lambda i: i.created_at or utcnow(), reverse=True)
    return [detail(invite) for invite in invites]


@router.patch("/{event_id}/invites/{invite_code}", response_model=InviteDetail)
async def edit_invite(
    event_id: str,
    invite_code: str,
    changes: InviteUpdate,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    invite = await find_invite(db, invite_code, event_id=event_id)
    if invite.checked_in:
        raise HTTPException(status_code=400, detail="Invite cannot be modified after check-in")

    updates = changes.model_dump(exclude_unset=True, exclude_none=True)
    for key in ("guest_name", "guest_email", "guest_phone", "security_pin", "notes"):
        if key in updates:
            updates[key] = updates[key].strip()
    if "guest_name" in updates and not updates["guest_name"]:
        raise HTTPException(status_code=400, detail="Guest name cannot be empty")

    merged = invite.model_copy(update=updates)
    if {"adults", "children"} & updates.keys():
        updates["group_size"] = max(1, merged.adults + merged.children)
        updates.setdefault("actual_attendees", updates["group_size"])
    if {"guest_name", "guest_email", "guest_phone"} & updates.keys():
        updates.update(identity_fields(merged.guest_name, merged.guest_email, merged.guest_phone))

    if not updates:
        return detail(invite)
    return detail(await update_invite(db, invite, updates))


@router.post("/{event_id}/invites/{invite_code}/block", response_model=InviteDetail)
async def block_invite(
    event_id: str,
    invite_code: str,
    request: BlockRequest,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    invite = await find_invite(db, invite_code, event_id=event_id)
    updated = await update_invite(db, invite, {
        "is_blocked": True,
        "blocked_reason": request.reason,
        "blocked_at": utcnow(),
        "blocked_by": organizer.username,
        "blocked_until": request.blocked_until,
    })
    logger.info("Invite %s blocked by %s: %s", invite.invite_code, organizer.username, request.reason)
    return detail(updated)


@router.post("/{event_id}/invites/{invite_code}/unblock", response_model=InviteDetail)
async def unblock_invite(
    event_id: str,
    invite_code: str,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    invite = await find_invite(db, invite_code, event_id=event_id)
    updated = await update_invite(db, invite, dict(CLEARED_BLOCK))
    logger.info("Invite %s unblocked by %s", invite.invite_code, organizer.username)
    return detail(updated)


@router.post("/{event_id}/invites/{invite_code}/flags/{index}/resolve", response_model=InviteDetail)
async def resolve_flag(
    event_id: str,
    invite_code: str,
    index: int,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    """Mark a security flag resolved. Flags are never removed."""
    invite = await find_invite(db, invite_code, event_id=event_id)
    if not 0 <= index < len(invite.security_flags):
        raise HTTPException(status_code=404, detail="Security flag not found")
    if invite.security_flags[index].resolved:
        return detail(invite)

    updated = await update_invite(db, invite, {
        f"security_flags.{index}.resolved": True,
        f"security_flags.{index}.resolved_at": utcnow(),
        f"security_flags.{index}.resolved_by": organizer.username,
    })
    return detail(updated)


@router.get("/{event_id}/checkin-stats", response_model=CheckinStats)
async def checkin_stats(event_id: str, organizer: ActorContext = Depends(event_organizer), db=Depends(get_database)):
    docs = await db.get_collection(INVITES).find({"event_id": event_id}).to_list(length=None)
    invites = [Invite(**doc) for doc in docs]
    now = utcnow()

    checked_in = sum(1 for i in invites if i.checked_in)
    confirmed = sum(1 for i in invites if i.status == "confirmed")
    return CheckinStats(
        total=len(invites),
        checked_in=checked_in,
        pending=sum(1 for i in invites if i.status == "pending"),
        confirmed=confirmed,
        declined=sum(1 for i in invites if i.status == "declined"),
        blocked=sum(1 for i in invites if i.blocked_at_time(now)),
        no_show=max(0, confirmed - checked_in),
        total_expected_adults=sum(i.adults for i in invites),
        total_expected_children=sum(i.children for i in invites),
        total_expected_attendees=sum(i.group_size for i in invites),
        total_actual_attendees=sum(i.actual_attendees for i in invites if i.checked_in),
        total_failed_scans=sum(1 for i in invites for a in i.scan_attempts if a.failed),
    )


@router.get("/{event_id}/overrides", response_model=List[OverrideHistoryEntry])
async def list_overrides(event_id: str, organizer: ActorContext = Depends(event_organizer), db=Depends(get_database)):
    return await override_history(db, event_id)
