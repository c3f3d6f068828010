from conftest import NOW

from checkin_guard.models.invite import Invite, ScanAttempt, SecurityFlag
from checkin_guard.utils.trust import calculate_trust_score


def _invite(**fields) -> Invite:
    return Invite(id="i-1", event_id="e-1", invite_code="ABC12345", guest_name="Ada", **fields)


def _attempts(n: int, failed: bool = True):
    return [ScanAttempt(attempted_at=NOW, reason="wrong_pin", failed=failed) for _ in range(n)]


def test_clean_invite_scores_full_trust() -> None:
    assert calculate_trust_score(_invite()) == 100


def test_failed_attempt_penalty_is_capped() -> None:
    assert calculate_trust_score(_invite(scan_attempts=_attempts(2))) == 80
    assert calculate_trust_score(_invite(scan_attempts=_attempts(9))) == 50


def test_unpenalised_attempts_do_not_count() -> None:
    assert calculate_trust_score(_invite(scan_attempts=_attempts(4, failed=False))) == 100


def test_flags_and_duplicate_mark() -> None:
    flags = [
        SecurityFlag(flag="rapid_scans", severity="high", flagged_at=NOW),
        SecurityFlag(flag="tampering", severity="critical", flagged_at=NOW),
        SecurityFlag(flag="old", severity="critical", flagged_at=NOW, resolved=True),
    ]
    # 100 - 2*15 - 25 - 30
    assert calculate_trust_score(_invite(security_flags=flags, marked_as_duplicate=True)) == 15


def test_score_is_clamped_at_zero() -> None:
    flags = [SecurityFlag(flag=f"f{i}", severity="critical", flagged_at=NOW) for i in range(5)]
    assert calculate_trust_score(_invite(scan_attempts=_attempts(5), security_flags=flags)) == 0
