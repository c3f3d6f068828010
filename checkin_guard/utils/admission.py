# checkin_guard/utils/admission.py
"""
Door-side check-in flow: lookup, PIN verification and committing admission.

``admit`` is the one place an invite becomes checked in. It is a conditional
update that only matches a pending invite whose lock is held by the caller's
session, so concurrent requests can never admit the same invite twice.
"""
import hmac
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from checkin_guard.database import EVENTS, INVITES
from checkin_guard.errors import CheckinDenied, LockContention, NotFoundError
from checkin_guard.models.checkin import (
    ActorContext,
    AdmissionResult,
    LookupResult,
    PinVerifyResult,
    SecuritySummary,
)
from checkin_guard.models.event import CheckinSettings, Event
from checkin_guard.models.invite import CheckInLock, CheckInRecord, GuestSnapshot, Invite
from checkin_guard.utils import audit
from checkin_guard.utils.expiry import ExpiringFact, is_live, utcnow
from checkin_guard.utils.guards import (
    COMMIT_GUARDS,
    LOOKUP_GUARDS,
    ScanContext,
    denial,
    guest_details,
    pin_lockout,
    run_guards,
)
from checkin_guard.utils.locks import acquire_lock, release_lock
from checkin_guard.utils.trust import calculate_trust_score

logger = logging.getLogger(__name__)

# How long a successful PIN check stays valid for the following commit.
PIN_VERIFICATION_TTL = timedelta(minutes=10)


def normalize_code(invite_code: str) -> str:
    return (invite_code or "").strip().upper()


async def load_event(db, event_id: str) -> Event:
    doc = await db.get_collection(EVENTS).find_one({"id": event_id})
    if not doc:
        raise NotFoundError("Event not found.", field="event_id")
    return Event(**doc)


async def find_invite(db, invite_code: str, event_id: Optional[str] = None) -> Invite:
    """Look an invite up by code. Without ``event_id`` the search spans every event."""
    query: Dict[str, Any] = {"invite_code": normalize_code(invite_code)}
    if event_id is not None:
        query["event_id"] = event_id
    doc = await db.get_collection(INVITES).find_one(query)
    if not doc:
        raise NotFoundError("QR code not recognised. Deny entry.", reason="not_found")
    return Invite(**doc)


def attempt_metadata(settings: CheckinSettings, actor: ActorContext) -> Dict[str, Optional[str]]:
    return {
        "ip_address": actor.ip_address if settings.log_ip_addresses else None,
        "device_info": actor.device_info if settings.log_device_info else None,
    }


def resolve_attendees(invite: Invite, explicit: Optional[int]) -> int:
    if explicit is not None and explicit >= 0:
        return explicit
    if invite.actual_attendees is not None:
        return invite.actual_attendees
    return invite.party_size


async def check_structure(
    db,
    event: Event,
    settings: CheckinSettings,
    invite: Invite,
    actor: ActorContext,
    now: datetime,
    for_override: bool = False,
) -> None:
    """Ownership and already-admitted checks. Not configurable."""
    meta = attempt_metadata(settings, actor)

    if invite.event_id != event.id:
        # Logged on the invite, i.e. against the event that actually owns it.
        await audit.record_scan_attempt(db, invite, "wrong_event", now, actor, **meta)
        logger.warning(
            "Cross-event scan: invite %s presented at event %s by %s",
            invite.invite_code, event.id, actor.username,
        )
        raise CheckinDenied(denial(
            settings, "wrong_event", "critical",
            "This ticket belongs to a DIFFERENT event. Deny entry.",
        ))

    if invite.checked_in:
        await audit.record_scan_attempt(db, invite, "already_checked_in", now, actor, **meta)
        raise CheckinDenied(already_used(settings, invite, for_override))


def already_used(settings: CheckinSettings, invite: Invite, for_override: bool = False):
    message = (
        "This ticket was already used. Override cannot reverse check-ins."
        if for_override else "This ticket has already been used."
    )
    return denial(
        settings, "already_checked_in", "high", message,
        display_message="TICKET ALREADY USED",
        checked_in_at=invite.checked_in_at,
        checked_in_by=invite.checked_in_by,
        **guest_details(invite),
    )


async def lookup(db, event_id: str, invite_code: str, actor: ActorContext, now: Optional[datetime] = None) -> LookupResult:
    """Run every guard against a scanned code without admitting anyone."""
    now = now or utcnow()
    event = await load_event(db, event_id)
    invite = await find_invite(db, invite_code)
    settings = event.policy()

    await check_structure(db, event, settings, invite, actor, now)

    ctx = ScanContext(event=event, settings=settings, invite=invite, actor=actor, now=now)
    ctx, denied = await run_guards(db, ctx, LOOKUP_GUARDS)
    if denied is not None:
        await audit.record_scan_attempt(
            db, ctx.invite, denied.reason, now, actor, **attempt_metadata(settings, actor)
        )
        raise CheckinDenied(denied)

    invite = ctx.invite
    if ctx.audit is not None:
        await audit.record_scan_attempt(
            db, invite, "verified", now,
            attempted_by=ctx.audit.staff_user,
            ip_address=ctx.audit.ip_address,
            device_info=ctx.audit.device_info,
            failed=False,
        )

    trust_score = calculate_trust_score(invite)
    await audit.cache_trust_score(db, invite, trust_score)

    return LookupResult(
        requires_pin=settings.require_pin and bool(invite.security_pin),
        guest=GuestSnapshot.from_invite(invite),
        security=SecuritySummary(
            trust_score=trust_score,
            warnings=ctx.warnings,
            flags=invite.security_flags,
        ),
        event_title=event.title,
        staff_note=settings.staff_note,
        security_instructions=settings.security_instructions,
    )


def pin_recently_verified(invite: Invite, now: datetime) -> bool:
    """A PIN success counts only if no wrong PIN followed it and it is still fresh."""
    for attempt in reversed(invite.scan_attempts):
        if attempt.reason == "wrong_pin":
            return False
        if attempt.reason == "pin_verified":
            return is_live(ExpiringFact.lasting(True, attempt.attempted_at, PIN_VERIFICATION_TTL), now)
    return False


async def verify_pin(
    db,
    event_id: str,
    invite_code: str,
    pin: str,
    actor: ActorContext,
    now: Optional[datetime] = None,
) -> PinVerifyResult:
    now = now or utcnow()
    event = await load_event(db, event_id)
    invite = await find_invite(db, invite_code, event_id=event_id)
    settings = event.policy()
    meta = attempt_metadata(settings, actor)

    expected = (invite.security_pin or "").strip()
    if not expected:
        return PinVerifyResult(valid=True, message="No PIN required.")

    _, locked_until = pin_lockout(invite, settings, now)
    if locked_until is not None:
        return PinVerifyResult(
            valid=False,
            message="PIN locked: too many failed attempts. Escalate to organizer.",
            remaining_attempts=0,
            locked=True,
            locked_until=locked_until,
        )

    if hmac.compare_digest((pin or "").strip().encode("utf-8"), expected.encode("utf-8")):
        await audit.record_scan_attempt(db, invite, "pin_verified", now, actor, failed=False, **meta)
        return PinVerifyResult(valid=True, message="PIN verified.")

    attempt = await audit.record_scan_attempt(db, invite, "wrong_pin", now, actor, **meta)
    invite = invite.model_copy(update={"scan_attempts": invite.scan_attempts + [attempt]})
    failures, locked_until = pin_lockout(invite, settings, now)
    remaining = 0 if locked_until else max(0, settings.max_failed_attempts - failures)
    logger.info("Wrong PIN for invite %s (%s attempts remaining)", invite.invite_code, remaining)

    if remaining > 0:
        message = f"Incorrect PIN. {remaining} attempt{'s' if remaining != 1 else ''} remaining."
    else:
        message = "PIN locked: too many failed attempts. Escalate to organizer."
    return PinVerifyResult(
        valid=False,
        message=message,
        remaining_attempts=remaining,
        locked=remaining == 0,
        locked_until=locked_until,
    )


async def admit(
    db,
    invite: Invite,
    actor: ActorContext,
    attendees: int,
    now: datetime,
    override: Optional[Dict[str, Any]] = None,
    extra_updates: Optional[Dict[str, Any]] = None,
) -> Invite:
    """pending -> checked-in. The only code path that sets ``checked_in``."""
    record = CheckInRecord(
        checked_in_at=now,
        checked_in_by=actor.username,
        actual_attendees=attendees,
        **(override or {}),
    )
    updates = {
        **(extra_updates or {}),
        "checked_in": True,
        "checked_in_at": now,
        "checked_in_by": actor.username,
        "actual_attendees": attendees,
        "status": "checked-in",
        "checkin_lock": CheckInLock().model_dump(),
    }
    invites = db.get_collection(INVITES)
    doc = await invites.find_one_and_update(
        {"id": invite.id, "checked_in": {"$ne": True}, "checkin_lock.session_id": actor.session_id},
        {"$set": updates, "$push": {"check_in_history": record.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is not None:
        return Invite(**doc)

    # Lost a race: either someone admitted the guest or our lock was taken over.
    current = await invites.find_one({"id": invite.id})
    if current is not None and current.get("checked_in"):
        raise CheckinDenied(already_used(CheckinSettings.basic(), Invite(**current), override is not None))
    lock = CheckInLock(**((current or {}).get("checkin_lock") or {}))
    raise LockContention(lock.locked_by, lock.locked_at)


async def locked_for_admission(
    db,
    invite: Invite,
    actor: ActorContext,
    settings: CheckinSettings,
    now: datetime,
) -> None:
    decision = await acquire_lock(
        db, invite, actor.username, actor.session_id, settings.checkin_lock_timeout_seconds, now
    )
    if not decision.granted:
        logger.info("Check-in of %s blocked: lock held by %s", invite.invite_code, decision.locked_by)
        raise LockContention(decision.locked_by, decision.locked_at)


async def commit_admission(
    db,
    event_id: str,
    invite_code: str,
    actor: ActorContext,
    actual_attendees: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AdmissionResult:
    now = now or utcnow()
    event = await load_event(db, event_id)
    invite = await find_invite(db, invite_code)
    settings = event.policy()

    await check_structure(db, event, settings, invite, actor, now)

    if settings.require_pin and invite.security_pin and not pin_recently_verified(invite, now):
        await audit.record_scan_attempt(
            db, invite, "pin_required", now, actor, **attempt_metadata(settings, actor)
        )
        raise CheckinDenied(denial(
            settings, "pin_required", "medium", "PIN verification required before check-in.",
        ))

    attendees = resolve_attendees(invite, actual_attendees)
    await locked_for_admission(db, invite, actor, settings, now)
    try:
        ctx = ScanContext(
            event=event, settings=settings, invite=invite, actor=actor, now=now,
            incoming_attendees=attendees,
        )
        ctx, denied = await run_guards(db, ctx, COMMIT_GUARDS)
        if denied is not None:
            await audit.record_scan_attempt(
                db, ctx.invite, denied.reason, now, actor, **attempt_metadata(settings, actor)
            )
            raise CheckinDenied(denied)
        admitted = await admit(db, ctx.invite, actor, attendees, now)
    finally:
        await release_lock(db, invite.id, actor.session_id)

    logger.info(
        "Guest checked in: invite %s at event %s by %s (%s attendees)",
        admitted.invite_code, event_id, actor.username, attendees,
    )
    return AdmissionResult(message="Guest checked in successfully", invite=GuestSnapshot.from_invite(admitted))
