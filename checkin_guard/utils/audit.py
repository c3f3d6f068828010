# checkin_guard/utils/audit.py
"""
Best-effort writes to an invite's security trail.

Scan attempts, security flags and scan metadata are appended with ``$push`` so
insertion order is kept and nothing is ever removed. A failed write is logged
and dropped: the admission decision must never depend on the audit trail.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.errors import PyMongoError

from checkin_guard.database import INVITES
from checkin_guard.models.checkin import ActorContext
from checkin_guard.models.common import Severity
from checkin_guard.models.invite import Invite, LastScanMetadata, ScanAttempt, SecurityFlag

logger = logging.getLogger(__name__)

# Denials caused by the venue rather than the ticket; logged but not held against it.
NON_PENALISED_REASONS = {
    "emergency_lockdown",
    "capacity_reached",
    "too_early",
    "too_late",
    "guard_failure",
    "pin_required",
}

CLEARED_BLOCK = {
    "is_blocked": False,
    "blocked_reason": None,
    "blocked_at": None,
    "blocked_by": None,
    "blocked_until": None,
}


async def _apply(db, invite_id: str, update: Dict[str, Any]) -> None:
    await db.get_collection(INVITES).update_one({"id": invite_id}, update)


async def _best_effort(db, invite_id: str, update: Dict[str, Any], what: str) -> bool:
    try:
        await _apply(db, invite_id, update)
        return True
    except PyMongoError:
        logger.warning("Audit write failed (%s) for invite %s", what, invite_id, exc_info=True)
        return False


async def record_scan_attempt(
    db,
    invite: Invite,
    reason: str,
    now: datetime,
    actor: Optional[ActorContext] = None,
    attempted_by: Optional[str] = None,
    ip_address: Optional[str] = None,
    device_info: Optional[str] = None,
    failed: Optional[bool] = None,
) -> ScanAttempt:
    if failed is None:
        failed = reason not in NON_PENALISED_REASONS
    attempt = ScanAttempt(
        attempted_at=now,
        reason=reason,
        attempted_by=attempted_by or (actor.username if actor else None),
        ip_address=ip_address if ip_address is not None else (actor.ip_address if actor else None),
        device_info=device_info if device_info is not None else (actor.device_info if actor else None),
        failed=failed,
    )
    await _best_effort(db, invite.id, {"$push": {"scan_attempts": attempt.model_dump()}}, reason)
    return attempt


async def raise_security_flag(
    db,
    invite: Invite,
    flag: str,
    severity: Severity,
    notes: str,
    now: datetime,
) -> Optional[SecurityFlag]:
    """Append a flag unless an unresolved flag of the same kind is already open."""
    if any(f.flag == flag for f in invite.unresolved_flags()):
        return None
    entry = SecurityFlag(flag=flag, severity=severity, notes=notes, flagged_at=now)
    await _best_effort(db, invite.id, {"$push": {"security_flags": entry.model_dump()}}, flag)
    return entry


async def set_last_scan_metadata(db, invite: Invite, metadata: LastScanMetadata) -> None:
    await _best_effort(db, invite.id, {"$set": {"last_scan_metadata": metadata.model_dump()}}, "last_scan")


async def cache_trust_score(db, invite: Invite, score: int) -> None:
    if score != invite.trust_score:
        await _best_effort(db, invite.id, {"$set": {"trust_score": score}}, "trust_score")


async def persist_block(db, invite: Invite, reason: str, blocked_by: str, now: datetime) -> Dict[str, Any]:
    fields = {
        "is_blocked": True,
        "blocked_reason": reason,
        "blocked_at": now,
        "blocked_by": blocked_by,
        "blocked_until": None,
    }
    await _best_effort(db, invite.id, {"$set": fields}, "block")
    return fields


async def clear_block(db, invite: Invite) -> Dict[str, Any]:
    fields = dict(CLEARED_BLOCK)
    await _best_effort(db, invite.id, {"$set": fields}, "unblock")
    return fields


async def mark_duplicate(db, invite: Invite, duplicate_of: str) -> Dict[str, Any]:
    fields = {"marked_as_duplicate": True, "duplicate_of": duplicate_of}
    await _best_effort(db, invite.id, {"$set": fields}, "duplicate")
    return fields
