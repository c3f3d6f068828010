# checkin_guard/utils/override.py
"""
Manager override: request a grant, optionally inspect it, then execute it.

A grant is a short-lived signed token naming the event, the invite, the
authorizing organizer and their justification. It is never stored. Executing
it skips every guard except capacity, and it can never admit an invite that is
already checked in, so replaying a consumed grant fails on its own.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from jose import JWTError, jwt

from checkin_guard.config import ALGORITHM, OVERRIDE_MIN_REASON_LENGTH, OVERRIDE_TOKEN_TTL_SECONDS, SECRET_KEY
from checkin_guard.database import INVITES
from checkin_guard.errors import (
    CheckinDenied,
    GrantExpired,
    GrantInvalid,
    GrantMismatch,
    InvalidRequest,
    NotFoundError,
    OverrideAuthError,
)
from checkin_guard.models.checkin import (
    ActorContext,
    AdmissionResult,
    OverrideGrant,
    OverrideHistoryEntry,
    OverrideMetadata,
    OverrideRequest,
    OverrideSummary,
    OverrideVerifyRequest,
)
from checkin_guard.models.invite import GuestSnapshot, Invite
from checkin_guard.utils import audit
from checkin_guard.utils.admission import (
    admit,
    attempt_metadata,
    check_structure,
    find_invite,
    load_event,
    locked_for_admission,
    normalize_code,
    resolve_attendees,
)
from checkin_guard.utils.auth_utils import get_participant, verify_password
from checkin_guard.utils.expiry import ExpiringFact, is_live, seconds_left, utcnow
from checkin_guard.utils.guards import OVERRIDE_GUARDS, ScanContext, run_guards
from checkin_guard.utils.locks import release_lock

logger = logging.getLogger(__name__)

GRANT_TYPE = "override"


def issue_grant(
    event_id: str,
    invite: Invite,
    manager_username: str,
    reason: str,
    now: datetime,
    ttl_seconds: int = OVERRIDE_TOKEN_TTL_SECONDS,
) -> Tuple[str, datetime]:
    issued_at = int(now.timestamp())
    claims = {
        "type": GRANT_TYPE,
        "event_id": event_id,
        "invite_code": invite.invite_code,
        "manager_username": manager_username,
        "reason": reason,
        "guest_name": invite.guest_name,
        "blocked_reason": invite.blocked_reason,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
        "jti": uuid.uuid4().hex,
    }
    token = jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)
    return token, datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


def grant_fact(claims: Dict[str, Any]) -> ExpiringFact:
    return ExpiringFact(claims, datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc))


def decode_grant(token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Check the signature, then expiry against ``now``."""
    try:
        # Expiry is checked below against the caller's clock.
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], options={"verify_exp": False})
    except JWTError:
        raise GrantInvalid()

    if "exp" not in claims or "invite_code" not in claims:
        raise GrantInvalid()
    if not is_live(grant_fact(claims), now or utcnow()):
        raise GrantExpired()
    return claims


def check_grant_scope(claims: Dict[str, Any], event_id: str, invite_code: Optional[str] = None) -> None:
    if claims.get("type") != GRANT_TYPE:
        raise GrantMismatch("Invalid token type.")
    if claims.get("event_id") != event_id:
        raise GrantMismatch("Override token is for a different event.")
    if invite_code and claims.get("invite_code") != normalize_code(invite_code):
        raise GrantMismatch("Override token is for a different invite.")


def log_failed_authorization(request: OverrideRequest, actor: ActorContext) -> None:
    logger.warning(
        "Failed override authorization by %s for invite %s (requested by %s)",
        request.manager_username, request.invite_code, actor.username,
    )


async def request_override(
    db,
    event_id: str,
    request: OverrideRequest,
    actor: ActorContext,
    now: Optional[datetime] = None,
) -> OverrideGrant:
    now = now or utcnow()
    reason = request.reason.strip()

    if not request.manager_username or not request.manager_password:
        raise InvalidRequest("Manager credentials required", field="credentials")
    if not request.invite_code or len(reason) < OVERRIDE_MIN_REASON_LENGTH:
        raise InvalidRequest(
            f"Invite code and detailed reason (min {OVERRIDE_MIN_REASON_LENGTH} characters) required",
            field="reason",
        )

    event = await load_event(db, event_id)
    if not event.policy().allow_manual_override:
        raise OverrideAuthError(
            "Manual overrides are not enabled for this event", field="override_disabled", status_code=403
        )

    manager = await get_participant(db, event_id, request.manager_username)
    if manager is None:
        log_failed_authorization(request, actor)
        raise OverrideAuthError("Invalid manager credentials", field="credentials")
    if manager.get("role") != "organizer":
        raise OverrideAuthError(
            "Insufficient permissions. Only organizers can override security blocks.",
            field="permissions",
            status_code=403,
        )
    if not manager.get("has_password") or not manager.get("password"):
        raise OverrideAuthError(
            "Manager account requires password. Please set up password first.", field="password_required"
        )
    if not verify_password(request.manager_password, manager["password"]):
        log_failed_authorization(request, actor)
        raise OverrideAuthError("Invalid manager credentials", field="credentials")

    try:
        invite = await find_invite(db, request.invite_code, event_id=event_id)
    except NotFoundError:
        raise NotFoundError("Invite not found", field="invite_code")

    token, expires_at = issue_grant(event_id, invite, manager["username"], reason, now)
    await audit.record_scan_attempt(
        db, invite, "override_requested", now,
        attempted_by=manager["username"],
        ip_address=actor.ip_address or "",
        device_info=f"Override request: {reason[:100]}",
        failed=False,
    )
    logger.info(
        "Override authorized by %s for invite %s: %s", manager["username"], invite.invite_code, reason
    )

    return OverrideGrant(
        override_token=token,
        expires_in=OVERRIDE_TOKEN_TTL_SECONDS,
        expires_at=expires_at,
        message=f"Override authorized by {manager['username']}",
        manager_username=manager["username"],
        guest_name=invite.guest_name,
        original_block_reason=invite.blocked_reason,
    )


def introspect_override(event_id: str, request: OverrideVerifyRequest, now: Optional[datetime] = None) -> OverrideMetadata:
    """Read a grant back for display without consuming it."""
    now = now or utcnow()
    if not request.override_token:
        raise InvalidRequest("Override token required", field="override_token")

    claims = decode_grant(request.override_token, now)
    check_grant_scope(claims, event_id, request.invite_code)
    fact = grant_fact(claims)
    return OverrideMetadata(
        manager_username=claims["manager_username"],
        reason=claims["reason"],
        guest_name=claims.get("guest_name") or "",
        invite_code=claims["invite_code"],
        original_block_reason=claims.get("blocked_reason"),
        expires_at=fact.expires_at,
        time_remaining=seconds_left(fact, now),
    )


async def execute_override(
    db,
    event_id: str,
    invite_code: str,
    override_token: str,
    actor: ActorContext,
    actual_attendees: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AdmissionResult:
    now = now or utcnow()
    if not override_token:
        raise InvalidRequest("Override token required", field="override_token")

    claims = decode_grant(override_token, now)
    check_grant_scope(claims, event_id, invite_code)
    manager_username, reason = claims["manager_username"], claims["reason"]

    event = await load_event(db, event_id)
    invite = await find_invite(db, invite_code)
    settings = event.policy()

    await check_structure(db, event, settings, invite, actor, now, for_override=True)

    if not settings.allow_manual_override:
        raise OverrideAuthError(
            "Manual overrides have been disabled for this event.", field="override_disabled", status_code=403
        )

    attendees = resolve_attendees(invite, actual_attendees)
    was_blocked, original_block_reason = invite.is_blocked, invite.blocked_reason

    await locked_for_admission(db, invite, actor, settings, now)
    try:
        ctx = ScanContext(
            event=event, settings=settings, invite=invite, actor=actor, now=now,
            incoming_attendees=attendees,
        )
        ctx, denied = await run_guards(db, ctx, OVERRIDE_GUARDS)
        if denied is not None:
            await audit.record_scan_attempt(
                db, invite, denied.reason, now, actor, **attempt_metadata(settings, actor)
            )
            raise CheckinDenied(denied)
        admitted = await admit(
            db, invite, actor, attendees, now,
            override={
                "override_used": True,
                "override_by": manager_username,
                "override_reason": reason,
                "original_block_reason": original_block_reason,
            },
            extra_updates=audit.CLEARED_BLOCK,
        )
    finally:
        await release_lock(db, invite.id, actor.session_id)

    await audit.raise_security_flag(
        db, admitted, "manual_override_used", "high",
        f"Override by {manager_username}: {reason}. "
        f"Original issue: {original_block_reason or 'security warnings'}",
        now,
    )
    await audit.record_scan_attempt(
        db, admitted, "override_executed", now,
        attempted_by=f"{manager_username} (via {actor.username})",
        ip_address=actor.ip_address or "",
        device_info=f"Override executed: {reason[:100]}",
        failed=False,
    )
    logger.warning(
        "Override executed: manager=%s staff=%s invite=%s guest=%s reason=%s",
        manager_username, actor.username, admitted.invite_code, admitted.guest_name, reason,
    )

    return AdmissionResult(
        message="Guest checked in successfully with manager override",
        invite=GuestSnapshot.from_invite(admitted),
        override=OverrideSummary(
            authorized_by=manager_username,
            reason=reason,
            executed_by=actor.username,
            was_blocked=was_blocked,
            original_block_reason=original_block_reason,
        ),
    )


async def override_history(db, event_id: str) -> List[OverrideHistoryEntry]:
    cursor = db.get_collection(INVITES).find(
        {"event_id": event_id, "check_in_history.override_used": True},
        {"invite_code": 1, "guest_name": 1, "check_in_history": 1},
    )
    entries = []
    for doc in await cursor.to_list(length=None):
        for record in doc.get("check_in_history", []):
            if not record.get("override_used"):
                continue
            entries.append(OverrideHistoryEntry(
                invite_code=doc["invite_code"],
                guest_name=doc["guest_name"],
                checked_in_at=record["checked_in_at"],
                checked_in_by=record["checked_in_by"],
                override_by=record.get("override_by"),
                override_reason=record.get("override_reason"),
                original_block_reason=record.get("original_block_reason"),
                actual_attendees=record.get("actual_attendees", 0),
            ))
    entries.sort(key=lambda e: e.checked_in_at, reverse=True)
    return entries
