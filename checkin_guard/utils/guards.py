# checkin_guard/utils/guards.py
"""
Check-in guard pipeline.

Each guard takes the database and an immutable ``ScanContext`` and returns a
``GuardOutcome``: either a denial, or permission to continue with optional
warnings, an updated invite snapshot and an audit snapshot. ``run_guards``
threads the context through the guards in order and stops at the first denial.

Order matters. Blocks and lockdown are checked before duplicates, so a ticket
that is both blocked and a duplicate is reported as blocked.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from checkin_guard.database import INVITES
from checkin_guard.models.checkin import ActorContext, AuditSnapshot, DenyDescriptor, SecurityWarning
from checkin_guard.models.common import Severity, UTCDateTime
from checkin_guard.models.event import CheckinSettings, Event
from checkin_guard.models.invite import Invite, LastScanMetadata
from checkin_guard.utils import audit
from checkin_guard.utils.expiry import ExpiringFact, is_live
from checkin_guard.utils.fingerprint import compute_identity_keys
from checkin_guard.utils.trust import calculate_trust_score

logger = logging.getLogger(__name__)


class ScanContext(BaseModel):
    event: Event
    settings: CheckinSettings
    invite: Invite
    actor: ActorContext
    now: UTCDateTime
    incoming_attendees: int = 0
    warnings: List[SecurityWarning] = []
    audit: Optional[AuditSnapshot] = None

    def advance(self, outcome: "GuardOutcome") -> "ScanContext":
        return self.model_copy(update={
            "invite": outcome.invite or self.invite,
            "warnings": self.warnings + outcome.warnings,
            "audit": outcome.audit or self.audit,
        })


class GuardOutcome(BaseModel):
    deny: Optional[DenyDescriptor] = None
    invite: Optional[Invite] = None
    warnings: List[SecurityWarning] = []
    audit: Optional[AuditSnapshot] = None


Guard = Callable[[Any, ScanContext], Awaitable[GuardOutcome]]


def proceed(
    invite: Optional[Invite] = None,
    warnings: Sequence[SecurityWarning] = (),
    audit_snapshot: Optional[AuditSnapshot] = None,
) -> GuardOutcome:
    return GuardOutcome(invite=invite, warnings=list(warnings), audit=audit_snapshot)


def deny(
    ctx: ScanContext,
    reason: str,
    severity: Severity,
    message: str,
    requires_override: bool = False,
    **details: Any,
) -> GuardOutcome:
    return GuardOutcome(deny=denial(ctx.settings, reason, severity, message, requires_override, **details))


def denial(
    settings: CheckinSettings,
    reason: str,
    severity: Severity,
    message: str,
    requires_override: bool = False,
    **details: Any,
) -> DenyDescriptor:
    return DenyDescriptor(
        reason=reason,
        severity=severity,
        message=message,
        requires_override=requires_override,
        override_available=requires_override and settings.allow_manual_override,
        details=details,
    )


def guest_details(invite: Invite) -> dict:
    return {
        "invite_code": invite.invite_code,
        "guest_name": invite.guest_name,
        "group_size": invite.group_size,
    }


def pin_lockout(invite: Invite, settings: CheckinSettings, now: datetime) -> Tuple[int, Optional[datetime]]:
    """
    Returns (failed PIN attempts counting toward the lockout, locked_until).

    A lockout starts when ``max_failed_attempts`` wrong PINs fall within
    ``lockout_minutes`` of the most recent one, and lasts ``lockout_minutes``
    from that most recent attempt.
    """
    window = timedelta(minutes=settings.lockout_minutes)
    wrong = [a.attempted_at for a in invite.scan_attempts if a.reason == "wrong_pin"]
    if not wrong:
        return 0, None

    latest = wrong[-1]
    burst = [t for t in wrong if t > latest - window]
    if len(burst) >= settings.max_failed_attempts:
        lockout = ExpiringFact.lasting("pin_locked", latest, window)
        if is_live(lockout, now):
            return len(burst), lockout.expires_at

    return sum(1 for t in wrong if t > now - window), None


async def admitted_attendees(db, event_id: str) -> int:
    cursor = db.get_collection(INVITES).find(
        {"event_id": event_id, "checked_in": True},
        {"actual_attendees": 1},
    )
    docs = await cursor.to_list(length=None)
    return sum(doc.get("actual_attendees") or 0 for doc in docs)


# ----------------------------------------------------------------------------
# 1. Emergency lockdown, blocks, trust score, PIN lockout
# ----------------------------------------------------------------------------

async def enforce_blocks(db, ctx: ScanContext) -> GuardOutcome:
    settings, invite, now = ctx.settings, ctx.invite, ctx.now

    if settings.emergency_lockdown:
        return deny(
            ctx, "emergency_lockdown", "critical",
            "EMERGENCY LOCKDOWN - All check-ins suspended",
            lockdown_reason=settings.emergency_lockdown_reason,
            lockdown_at=settings.emergency_lockdown_at,
        )

    block = invite.block_fact()
    if block is not None:
        if block.expires_at is not None and not is_live(block, now):
            # Temporary block ran out: clear it and keep checking.
            invite = invite.model_copy(update=await audit.clear_block(db, invite))
            logger.info("Temporary block expired on invite %s", invite.invite_code)
        else:
            return deny(
                ctx, "blocked", "critical", "TICKET BLOCKED - Access denied",
                requires_override=True,
                blocked_reason=invite.blocked_reason,
                blocked_at=invite.blocked_at,
                blocked_by=invite.blocked_by,
                blocked_until=invite.blocked_until,
                **guest_details(invite),
            )

    warnings = []
    if settings.enable_trust_score:
        trust_score = calculate_trust_score(invite)
        if trust_score < settings.minimum_trust_score:
            if settings.auto_block_low_trust:
                await audit.persist_block(db, invite, "low_trust_score", "system", now)
                logger.warning("Invite %s auto-blocked, trust score %s", invite.invite_code, trust_score)
                return deny(
                    ctx, "low_trust_score", "high", "LOW TRUST SCORE - Manual approval required",
                    requires_override=True,
                    trust_score=trust_score,
                    minimum_required=settings.minimum_trust_score,
                    **guest_details(invite),
                )
            warnings.append(SecurityWarning(
                type="low_trust_score",
                severity="high",
                message=f"Low trust score: {trust_score}/{settings.minimum_trust_score}",
                details={"trust_score": trust_score},
            ))

    _, locked_until = pin_lockout(invite, settings, now)
    if locked_until is not None:
        return deny(
            ctx, "pin_locked", "high", "TOO MANY FAILED PIN ATTEMPTS - Temporarily locked",
            requires_override=True,
            locked_until=locked_until,
            attempts_remaining=0,
            **guest_details(invite),
        )

    return proceed(invite, warnings)


# ----------------------------------------------------------------------------
# 2. Duplicate detection
# ----------------------------------------------------------------------------

async def detect_duplicates(db, ctx: ScanContext) -> GuardOutcome:
    settings, invite, now = ctx.settings, ctx.invite, ctx.now

    if not settings.enable_duplicate_detection or invite.checked_in:
        return proceed()

    mode = settings.duplicate_detection_mode
    keys = invite.identity_keys.get(mode)
    if keys is None:
        keys = compute_identity_keys(invite.guest_name, invite.guest_email, invite.guest_phone)[mode]
    if not keys:
        return proceed()

    cursor = db.get_collection(INVITES).find(
        {
            "event_id": invite.event_id,
            f"identity_keys.{mode}": {"$in": keys},
            "id": {"$ne": invite.id},
        },
        {"invite_code": 1, "checked_in": 1, "checked_in_at": 1},
    )
    duplicates = await cursor.to_list(length=None)
    if not duplicates:
        return proceed()

    admitted = next((d for d in duplicates if d.get("checked_in")), None)
    if admitted is None:
        codes = [invite.invite_code] + [d["invite_code"] for d in duplicates]
        return proceed(warnings=[SecurityWarning(
            type="multiple_invites",
            severity="medium",
            message=f"Guest has {len(codes)} invites for this event",
            details={"invite_codes": codes},
        )])

    if settings.allow_multiple_tickets:
        return proceed()

    duplicate_code = admitted["invite_code"]
    checked_in_at = admitted.get("checked_in_at")
    updates = await audit.mark_duplicate(db, invite, duplicate_code)
    flag = await audit.raise_security_flag(
        db, invite, "duplicate_detected", "high",
        f"Matches already checked-in guest: {duplicate_code}", now,
    )
    if flag is not None:
        updates["security_flags"] = invite.security_flags + [flag]
    invite = invite.model_copy(update=updates)

    if settings.auto_block_duplicates:
        await audit.persist_block(db, invite, "duplicate_detected", "system", now)
        logger.warning("Invite %s auto-blocked as duplicate of %s", invite.invite_code, duplicate_code)
        return deny(
            ctx, "duplicate_blocked", "critical", "DUPLICATE DETECTED - Same person already checked in",
            requires_override=True,
            duplicate_invite_code=duplicate_code,
            checked_in_at=checked_in_at,
            **guest_details(invite),
        )

    return proceed(invite, [SecurityWarning(
        type="duplicate_warning",
        severity="high",
        message="DUPLICATE DETECTED - Same person already checked in",
        details={"duplicate_invite_code": duplicate_code, "checked_in_at": checked_in_at},
    )])


# ----------------------------------------------------------------------------
# 3. Suspicious patterns
# ----------------------------------------------------------------------------

async def detect_suspicious_patterns(db, ctx: ScanContext) -> GuardOutcome:
    settings, invite, actor, now = ctx.settings, ctx.invite, ctx.actor, ctx.now

    if not settings.enable_pattern_detection:
        return proceed()

    warnings = []
    new_flags = []

    window_start = now - timedelta(seconds=settings.rapid_scan_window_seconds)
    recent = [a for a in invite.scan_attempts if a.attempted_at > window_start]
    if len(recent) >= settings.rapid_scan_threshold:
        flag = await audit.raise_security_flag(
            db, invite, "rapid_scans", "high",
            f"{len(recent)} scans in {settings.rapid_scan_window_seconds}s", now,
        )
        if flag is not None:
            new_flags.append(flag)
        warnings.append(SecurityWarning(
            type="rapid_scanning",
            severity="high",
            message=f"SUSPICIOUS: {len(recent)} scans in {settings.rapid_scan_window_seconds} seconds",
            details={"attempts": len(recent)},
        ))

    ips = {a.ip_address for a in invite.scan_attempts if a.ip_address}
    devices = {a.device_info for a in invite.scan_attempts if a.device_info}
    if len(ips) >= settings.multi_device_threshold:
        flag = await audit.raise_security_flag(
            db, invite, "multiple_devices", "medium",
            f"Scanned from {len(ips)} different IPs", now,
        )
        if flag is not None:
            new_flags.append(flag)
        warnings.append(SecurityWarning(
            type="multiple_devices",
            severity="medium",
            message=f"Ticket scanned from {len(ips)} different locations",
            details={"ip_count": len(ips), "device_count": len(devices)},
        ))

    metadata = LastScanMetadata(scanned_at=now, ip_address=actor.ip_address, device_info=actor.device_info)
    await audit.set_last_scan_metadata(db, invite, metadata)

    invite = invite.model_copy(update={
        "security_flags": invite.security_flags + new_flags,
        "last_scan_metadata": metadata,
    })
    return proceed(invite, warnings)


# ----------------------------------------------------------------------------
# 4. Capacity
# ----------------------------------------------------------------------------

async def enforce_capacity(db, ctx: ScanContext) -> GuardOutcome:
    # The per-invite lock serialises one ticket only. Commits of different
    # invites racing between this read and ``admit`` can each pass, so the
    # ceiling may be overrun by the parties in flight at that moment.
    settings = ctx.settings
    if not settings.enable_capacity_limits or not settings.max_total_attendees:
        return proceed()

    current = await admitted_attendees(db, ctx.invite.event_id)
    ceiling = settings.max_total_attendees
    if current >= ceiling or current + ctx.incoming_attendees > ceiling:
        return deny(
            ctx, "capacity_reached", "high", "VENUE AT CAPACITY - No more check-ins allowed",
            current_capacity=current,
            max_capacity=ceiling,
            requested=ctx.incoming_attendees,
        )
    return proceed()


# ----------------------------------------------------------------------------
# 5. Time window
# ----------------------------------------------------------------------------

async def enforce_time_window(db, ctx: ScanContext) -> GuardOutcome:
    settings, now = ctx.settings, ctx.now
    if not settings.enable_time_restrictions:
        return proceed()

    opens_at = ctx.event.date - timedelta(minutes=settings.checkin_window_start_minutes)
    closes_at = ctx.event.date + timedelta(minutes=settings.checkin_window_end_minutes)

    if now < opens_at:
        return deny(ctx, "too_early", "medium", "Check-in not yet open", opens_at=opens_at)
    if now > closes_at and not settings.allow_late_checkin:
        return deny(ctx, "too_late", "medium", "Check-in window closed", closed_at=closes_at)
    return proceed()


# ----------------------------------------------------------------------------
# 6. Audit capture
# ----------------------------------------------------------------------------

async def capture_audit(db, ctx: ScanContext) -> GuardOutcome:
    settings, actor = ctx.settings, ctx.actor
    if not settings.detailed_audit_logging:
        return proceed()

    snapshot = AuditSnapshot(
        event_id=ctx.event.id,
        invite_code=ctx.invite.invite_code,
        staff_user=actor.username,
        ip_address=actor.ip_address if settings.log_ip_addresses else None,
        device_info=actor.device_info if settings.log_device_info else None,
        timestamp=ctx.now,
        warnings=ctx.warnings,
    )
    return proceed(audit_snapshot=snapshot)


LOOKUP_GUARDS: Tuple[Guard, ...] = (
    enforce_blocks,
    detect_duplicates,
    detect_suspicious_patterns,
    enforce_capacity,
    enforce_time_window,
    capture_audit,
)

# Annotating guards already ran at lookup; commit re-checks the ones that deny.
COMMIT_GUARDS: Tuple[Guard, ...] = (enforce_blocks, enforce_capacity, enforce_time_window)

# An override bypasses everything except physical capacity.
OVERRIDE_GUARDS: Tuple[Guard, ...] = (enforce_capacity,)


async def run_guards(
    db,
    ctx: ScanContext,
    guards: Sequence[Guard] = LOOKUP_GUARDS,
) -> Tuple[ScanContext, Optional[DenyDescriptor]]:
    for guard in guards:
        try:
            outcome = await guard(db, ctx)
        except Exception:
            logger.exception("Guard %s failed on invite %s", guard.__name__, ctx.invite.invite_code)
            return ctx, denial(
                ctx.settings, "guard_failure", "high",
                "Security check could not be completed. Please rescan.",
                guard=guard.__name__,
            )
        if outcome.deny is not None:
            logger.info(
                "Scan of %s denied by %s: %s",
                ctx.invite.invite_code, guard.__name__, outcome.deny.reason,
            )
            return ctx, outcome.deny
        ctx = ctx.advance(outcome)
    return ctx, None
