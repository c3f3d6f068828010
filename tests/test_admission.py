import asyncio
from datetime import timedelta

import pytest
from conftest import EVENT_ID, NOW, actor_for
from pymongo.errors import PyMongoError

from checkin_guard.database import INVITES
from checkin_guard.errors import CheckinDenied, LockContention, NotFoundError
from checkin_guard.utils import admission, audit
from checkin_guard.utils.admission import admit, commit_admission, lookup, verify_pin
from checkin_guard.utils.guards import proceed
from checkin_guard.utils.locks import acquire_lock


def _admitted(make_invite, **fields):
    return make_invite(checked_in=True, checked_in_at=NOW - timedelta(minutes=5), status="checked-in", **fields)


# ----------------------------------------------------------------------------
# Lookup
# ----------------------------------------------------------------------------

def test_lookup_returns_guest_and_security_summary(db, make_event, make_invite, actor, reload) -> None:
    make_event(staff_note="VIP table 4", security_instructions="Check wristbands")
    invite = make_invite(adults=2, children=1, security_pin="4321")

    result = asyncio.run(lookup(db, EVENT_ID, invite.invite_code.lower(), actor, now=NOW))

    assert result.valid and result.admissible
    assert result.requires_pin is False
    assert result.guest.invite_code == invite.invite_code
    assert result.guest.has_pin is True
    assert "security_pin" not in result.guest.model_dump()
    assert result.security.trust_score == 100
    assert result.event_title == "Summer Gala"
    assert result.staff_note == "VIP table 4"
    assert result.security_instructions == "Check wristbands"

    stored = reload(invite)
    assert stored.checked_in is False
    assert [(a.reason, a.failed) for a in stored.scan_attempts] == [("verified", False)]


def test_lookup_unknown_code(db, make_event, actor) -> None:
    make_event()
    with pytest.raises(NotFoundError):
        asyncio.run(lookup(db, EVENT_ID, "NOPE0000", actor, now=NOW))


def test_cross_event_scan_is_critical_and_logged(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    make_event(event_id="evt-other")
    invite = make_invite(event_id="evt-other")

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert exc.value.reason == "wrong_event"
    assert exc.value.descriptor.severity == "critical"
    assert exc.value.status_code == 403
    assert [a.reason for a in reload(invite).scan_attempts] == ["wrong_event"]


def test_already_admitted_is_never_overridable(db, make_event, make_invite, actor) -> None:
    make_event(allow_manual_override=True)
    invite = _admitted(make_invite)

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert exc.value.reason == "already_checked_in"
    assert exc.value.status_code == 409
    assert exc.value.descriptor.requires_override is False
    assert exc.value.descriptor.override_available is False


def test_denied_lookup_records_failed_attempt(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    invite = make_invite(is_blocked=True, blocked_reason="manual_block")

    with pytest.raises(CheckinDenied):
        asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    attempts = reload(invite).scan_attempts
    assert [(a.reason, a.failed) for a in attempts] == [("blocked", True)]


def test_venue_denials_do_not_cost_trust(db, make_event, make_invite, actor, reload) -> None:
    make_event(emergency_lockdown=True)
    invite = make_invite()

    with pytest.raises(CheckinDenied):
        asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    stored = reload(invite)
    assert [(a.reason, a.failed) for a in stored.scan_attempts] == [("emergency_lockdown", False)]


def test_lookup_survives_audit_store_failure(db, make_event, make_invite, actor, reload, monkeypatch) -> None:
    async def store_down(db, invite_id, update):
        raise PyMongoError("store unavailable")

    monkeypatch.setattr(audit, "_apply", store_down)
    make_event()
    _admitted(make_invite)
    invite = make_invite()

    result = asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert result.valid
    assert "duplicate_warning" in [w.type for w in result.security.warnings]
    assert reload(invite).scan_attempts == []


def test_denial_stands_when_audit_store_fails(db, make_event, make_invite, actor, monkeypatch) -> None:
    async def store_down(db, invite_id, update):
        raise PyMongoError("store unavailable")

    monkeypatch.setattr(audit, "_apply", store_down)
    make_event()
    invite = make_invite(is_blocked=True, blocked_reason="manual_block")

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(lookup(db, EVENT_ID, invite.invite_code, actor, now=NOW))
    assert exc.value.reason == "blocked"


# ----------------------------------------------------------------------------
# PIN verification
# ----------------------------------------------------------------------------

def test_wrong_pins_count_down_to_lockout(db, make_event, make_invite, actor, reload) -> None:
    make_event(require_pin=True, max_failed_attempts=3, lockout_minutes=15)
    invite = make_invite(security_pin="4321")

    results = [
        asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "0000", actor, now=NOW + timedelta(seconds=i)))
        for i in range(3)
    ]

    assert [r.remaining_attempts for r in results] == [2, 1, 0]
    assert results[0].message == "Incorrect PIN. 2 attempts remaining."
    assert results[1].message == "Incorrect PIN. 1 attempt remaining."
    assert results[2].locked is True
    assert results[2].locked_until == NOW + timedelta(seconds=2) + timedelta(minutes=15)

    # The right PIN does not help while locked out.
    locked = asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "4321", actor, now=NOW + timedelta(minutes=1)))
    assert locked.valid is False
    assert locked.locked is True
    assert [a.reason for a in reload(invite).scan_attempts] == ["wrong_pin"] * 3


def test_lockout_expires(db, make_event, make_invite, actor) -> None:
    make_event(require_pin=True)
    invite = make_invite(security_pin="4321")
    for i in range(3):
        asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "0000", actor, now=NOW))

    later = NOW + timedelta(minutes=15)
    result = asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "4321", actor, now=later))
    assert result.valid is True


def test_correct_pin_is_recorded(db, make_event, make_invite, actor, reload) -> None:
    make_event(require_pin=True)
    invite = make_invite(security_pin="4321")

    result = asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, " 4321 ", actor, now=NOW))

    assert result.valid is True
    assert [(a.reason, a.failed) for a in reload(invite).scan_attempts] == [("pin_verified", False)]


def test_invite_without_pin_needs_none(db, make_event, make_invite, actor) -> None:
    make_event(require_pin=True)
    invite = make_invite()
    assert asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "", actor, now=NOW)).valid is True


# ----------------------------------------------------------------------------
# Commit
# ----------------------------------------------------------------------------

def test_commit_admits_once(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    invite = make_invite(adults=2, children=1)

    result = asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert result.invite.checked_in is True
    assert result.invite.actual_attendees == 3
    assert result.override is None

    stored = reload(invite)
    assert stored.status == "checked-in"
    assert stored.checked_in_by == "sam"
    assert stored.checked_in_at == NOW
    assert not stored.checkin_lock.is_locked
    assert len(stored.check_in_history) == 1
    assert stored.check_in_history[0].override_used is False

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor_for(session_id="s2"), now=NOW))
    assert exc.value.reason == "already_checked_in"
    assert len(reload(invite).check_in_history) == 1


def test_explicit_attendee_count_wins(db, make_event, make_invite, actor) -> None:
    make_event()
    invite = make_invite(adults=4)
    result = asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, actual_attendees=0, now=NOW))
    assert result.invite.actual_attendees == 0


def test_attendee_count_defaults_to_party(make_invite) -> None:
    assert make_invite(adults=3, children=1).actual_attendees == 4
    assert make_invite(adults=0, children=0, group_size=2).actual_attendees == 2


def test_adjusted_attendee_count_is_committed(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    invite = make_invite(adults=4, actual_attendees=2)

    result = asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert result.invite.actual_attendees == 2
    assert reload(invite).check_in_history[0].actual_attendees == 2


def test_sparse_invite_document_is_admitted(db, make_event, actor) -> None:
    make_event()
    asyncio.run(db.get_collection(INVITES).insert_one({
        "id": "inv-sparse", "event_id": EVENT_ID, "invite_code": "SPARSE01", "guest_name": "Ada", "adults": 2,
    }))

    result = asyncio.run(commit_admission(db, EVENT_ID, "sparse01", actor, now=NOW))

    assert result.invite.checked_in is True
    assert result.invite.actual_attendees == 2


def test_commit_requires_fresh_pin_verification(db, make_event, make_invite, actor) -> None:
    make_event(require_pin=True)
    invite = make_invite(security_pin="4321")

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW))
    assert exc.value.reason == "pin_required"

    asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "4321", actor, now=NOW))

    with pytest.raises(CheckinDenied):
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW + timedelta(minutes=11)))

    asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "4321", actor, now=NOW + timedelta(minutes=12)))
    result = asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW + timedelta(minutes=13)))
    assert result.invite.checked_in is True


def test_wrong_pin_after_success_requires_reverification(db, make_event, make_invite, actor) -> None:
    make_event(require_pin=True)
    invite = make_invite(security_pin="4321")
    asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "4321", actor, now=NOW))
    asyncio.run(verify_pin(db, EVENT_ID, invite.invite_code, "9999", actor, now=NOW))

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW))
    assert exc.value.reason == "pin_required"


def test_capacity_full_denies_and_releases_lock(db, make_event, make_invite, actor, reload) -> None:
    make_event(enable_capacity_limits=True, max_total_attendees=10)
    _admitted(make_invite, guest_name="Full House", guest_email="full@x.org", actual_attendees=10)
    invite = make_invite()

    with pytest.raises(CheckinDenied) as exc:
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW))

    assert exc.value.reason == "capacity_reached"
    stored = reload(invite)
    assert stored.checked_in is False
    assert not stored.checkin_lock.is_locked
    assert [(a.reason, a.failed) for a in stored.scan_attempts] == [("capacity_reached", False)]


def test_lock_held_elsewhere_is_contention(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    invite = make_invite()
    asyncio.run(acquire_lock(db, invite, "kim", "other-session", 30, NOW))

    with pytest.raises(LockContention) as exc:
        asyncio.run(commit_admission(db, EVENT_ID, invite.invite_code, actor, now=NOW + timedelta(seconds=10)))

    assert exc.value.locked_by == "kim"
    assert exc.value.status_code == 409
    assert reload(invite).checkin_lock.session_id == "other-session"


def test_admit_requires_the_lock(db, make_event, make_invite, actor, reload) -> None:
    make_event()
    invite = make_invite()
    asyncio.run(acquire_lock(db, invite, "kim", "other-session", 30, NOW))

    with pytest.raises(LockContention):
        asyncio.run(admit(db, invite, actor, 1, NOW))
    assert reload(invite).checked_in is False


def test_concurrent_commits_admit_exactly_once(db, make_event, make_invite, reload, monkeypatch) -> None:
    async def yield_to_others(db, ctx):
        await asyncio.sleep(0)
        return proceed()

    monkeypatch.setattr(admission, "COMMIT_GUARDS", (yield_to_others,) + admission.COMMIT_GUARDS)
    make_event()
    invite = make_invite()

    async def scan_everywhere():
        return await asyncio.gather(
            *[
                commit_admission(db, EVENT_ID, invite.invite_code, actor_for(f"staff{i}", f"session-{i}"), now=NOW)
                for i in range(5)
            ],
            return_exceptions=True,
        )

    results = asyncio.run(scan_everywhere())

    admitted = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(admitted) == 1
    assert all(isinstance(r, (LockContention, CheckinDenied)) for r in refused)

    stored = reload(invite)
    assert len(stored.check_in_history) == 1
    assert not stored.checkin_lock.is_locked
