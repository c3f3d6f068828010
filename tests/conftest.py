import asyncio
import itertools
import uuid
from datetime import datetime, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from checkin_guard.database import EVENTS, INVITES, PARTICIPANTS, ensure_indexes
from checkin_guard.models.checkin import ActorContext
from checkin_guard.models.event import CheckinSettings, Event
from checkin_guard.models.invite import Invite
from checkin_guard.utils.auth_utils import get_password_hash
from checkin_guard.utils.fingerprint import identity_fields

NOW = datetime(2026, 6, 1, 18, 0, tzinfo=timezone.utc)
EVENT_ID = "evt-gala"
ORGANIZER = "olivia"
ORGANIZER_PASSWORD = "correct-horse-battery"

_codes = itertools.count(1)


@pytest.fixture
def db():
    database = AsyncMongoMockClient()["checkin_test"]
    asyncio.run(ensure_indexes(database))
    return database


@pytest.fixture
def make_event(db):
    def _make(event_id: str = EVENT_ID, enterprise: bool = True, date: datetime = NOW, **settings) -> Event:
        doc = {
            "id": event_id,
            "title": "Summer Gala",
            "date": date,
            "timezone": "UTC",
            "organizer_username": ORGANIZER,
            "is_enterprise_mode": enterprise,
            "checkin_settings": CheckinSettings(**settings).model_dump() if enterprise else None,
        }
        asyncio.run(db.get_collection(EVENTS).insert_one(doc))
        return Event(**doc)

    return _make


@pytest.fixture
def make_invite(db):
    def _make(
        guest_name: str = "Ada Lovelace",
        guest_email: str = "ada@example.com",
        guest_phone: str = "",
        event_id: str = EVENT_ID,
        **fields,
    ) -> Invite:
        invite = Invite(
            id=str(uuid.uuid4()),
            event_id=event_id,
            invite_code=f"INV{next(_codes):05d}",
            guest_name=guest_name,
            guest_email=guest_email,
            guest_phone=guest_phone,
            **{**identity_fields(guest_name, guest_email, guest_phone), **fields},
        )
        asyncio.run(db.get_collection(INVITES).insert_one(invite.model_dump()))
        return invite

    return _make


@pytest.fixture
def reload(db):
    def _reload(invite: Invite) -> Invite:
        return Invite(**asyncio.run(db.get_collection(INVITES).find_one({"id": invite.id})))

    return _reload


@pytest.fixture
def organizer_account(db):
    doc = {
        "id": str(uuid.uuid4()),
        "event_id": EVENT_ID,
        "username": ORGANIZER,
        "role": "organizer",
        "has_password": True,
        "password": get_password_hash(ORGANIZER_PASSWORD),
    }
    asyncio.run(db.get_collection(PARTICIPANTS).insert_one(doc))
    return doc


def actor_for(username: str = "sam", session_id: str = "session-a", **fields) -> ActorContext:
    return ActorContext(
        username=username,
        role=fields.pop("role", "staff"),
        event_id=fields.pop("event_id", EVENT_ID),
        session_id=session_id,
        ip_address=fields.pop("ip_address", "10.0.0.1"),
        device_info=fields.pop("device_info", "Scanner/1.0"),
    )


@pytest.fixture
def actor() -> ActorContext:
    return actor_for()
