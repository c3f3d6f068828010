# checkin_guard/utils/trust.py
from checkin_guard.models.invite import Invite

FAILED_ATTEMPT_PENALTY = 10
FAILED_ATTEMPT_PENALTY_CAP = 50
UNRESOLVED_FLAG_PENALTY = 15
CRITICAL_FLAG_PENALTY = 25  # on top of the unresolved flag penalty
DUPLICATE_PENALTY = 30


def calculate_trust_score(invite: Invite) -> int:
    """
    Trust score (0-100) derived from the invite's security history.

    Always recomputed from scratch so the cached value can never drift.
    """
    score = 100

    failed_attempts = sum(1 for attempt in invite.scan_attempts if attempt.failed)
    score -= min(failed_attempts * FAILED_ATTEMPT_PENALTY, FAILED_ATTEMPT_PENALTY_CAP)

    active_flags = invite.unresolved_flags()
    score -= len(active_flags) * UNRESOLVED_FLAG_PENALTY
    score -= sum(1 for f in active_flags if f.severity == "critical") * CRITICAL_FLAG_PENALTY

    if invite.marked_as_duplicate:
        score -= DUPLICATE_PENALTY

    return max(0, min(100, score))
