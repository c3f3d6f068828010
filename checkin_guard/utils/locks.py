# checkin_guard/utils/locks.py
"""
Reentrancy lock for check-in.

The lock lives inside the invite document, not in process memory, so every
server instance sharing the store agrees on who holds it. Acquisition is a
compare-and-set on the session id observed at read time: two contenders that
both saw the same lock state cannot both win.
"""
import logging
from datetime import datetime
from typing import NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from checkin_guard.database import INVITES
from checkin_guard.models.invite import CheckInLock, Invite
from checkin_guard.utils.expiry import is_live, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 30
_EMPTY_LOCK = CheckInLock().model_dump()


class LockDecision(NamedTuple):
    granted: bool
    locked_by: Optional[str]
    locked_at: Optional[datetime]
    taken_over: bool = False


async def acquire_lock(
    db,
    invite: Invite,
    actor: str,
    session_id: str,
    timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
) -> LockDecision:
    """
    Try to take the check-in lock for ``session_id``.

    - unlocked: granted
    - held by the same session: granted (retries from the same flow)
    - held by another session younger than the timeout: denied, naming the holder
    - held by another session past the timeout: abandoned, reassigned to us
    """
    now = now or utcnow()
    invites = db.get_collection(INVITES)

    for _ in range(2):
        lock = invite.checkin_lock
        taken_over = False
        if lock.is_locked and lock.session_id != session_id:
            if is_live(lock.fact(timeout_seconds), now):
                return LockDecision(False, lock.locked_by, lock.locked_at)
            taken_over = True

        new_lock = CheckInLock(locked_by=actor, locked_at=now, session_id=session_id)
        updated = await invites.find_one_and_update(
            {"id": invite.id, "checkin_lock.session_id": lock.session_id},
            {"$set": {"checkin_lock": new_lock.model_dump()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            if taken_over:
                logger.warning(
                    "Stale check-in lock on %s taken over from %s by %s",
                    invite.invite_code, lock.locked_by, actor,
                )
            return LockDecision(True, actor, now, taken_over)

        # The lock changed between our read and our write; look again once.
        current = await invites.find_one({"id": invite.id})
        if current is None:
            break
        invite = Invite(**current)

    lock = invite.checkin_lock
    return LockDecision(False, lock.locked_by, lock.locked_at)


async def release_lock(db, invite_id: str, session_id: str) -> bool:
    """Release the lock if ``session_id`` still holds it. Idempotent, never raises."""
    try:
        result = await db.get_collection(INVITES).update_one(
            {"id": invite_id, "checkin_lock.session_id": session_id},
            {"$set": {"checkin_lock": _EMPTY_LOCK}},
        )
        return result.modified_count > 0
    except PyMongoError:
        logger.warning("Could not release check-in lock on invite %s", invite_id, exc_info=True)
        return False
