# checkin_guard/database.py
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING

from checkin_guard.config import MONGO_DB, MONGO_URI

client = AsyncIOMotorClient(MONGO_URI)
database = client.get_database(MONGO_DB)

# Collection names
EVENTS = "events"
INVITES = "invites"
PARTICIPANTS = "participants"


def get_database():
    """FastAPI dependency; tests override it with an in-memory database."""
    return database


async def ensure_indexes(db) -> None:
    invites = db.get_collection(INVITES)
    await invites.create_index([("invite_code", ASCENDING)], unique=True)
    await invites.create_index([("id", ASCENDING)], unique=True)
    await invites.create_index([("event_id", ASCENDING), ("checked_in", ASCENDING)])
    await invites.create_index([("event_id", ASCENDING), ("duplicate_fingerprint", ASCENDING)])
    for mode in ("strict", "moderate", "lenient"):
        await invites.create_index([("event_id", ASCENDING), (f"identity_keys.{mode}", ASCENDING)])

    await db.get_collection(EVENTS).create_index([("id", ASCENDING)], unique=True)
    await db.get_collection(PARTICIPANTS).create_index(
        [("event_id", ASCENDING), ("username", ASCENDING)], unique=True
    )
