# checkin_guard/routes/auth.py
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from pymongo.errors import DuplicateKeyError

from checkin_guard.database import PARTICIPANTS, get_database
from checkin_guard.models.checkin import ActorContext
from checkin_guard.models.user import LoginRequest, Participant, ParticipantCreate, Token
from checkin_guard.utils.auth_utils import (
    create_access_token,
    event_organizer,
    get_participant,
    get_password_hash,
    verify_password,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{event_id}/register", response_model=Participant)
async def register(
    event_id: str,
    user: ParticipantCreate,
    organizer: ActorContext = Depends(event_organizer),
    db=Depends(get_database),
):
    """Organizers add staff (or co-organizer) accounts to their event."""
    existing_user = await get_participant(db, event_id, user.username)
    if existing_user:
        raise HTTPException(status_code=400, detail="Username already taken.")

    user_data = {
        "id": str(uuid.uuid4()),
        "event_id": event_id,
        "username": user.username,
        "role": user.role,
        "has_password": bool(user.password),
        "password": get_password_hash(user.password) if user.password else None,
    }
    try:
        await db.get_collection(PARTICIPANTS).insert_one(user_data)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Username already taken.")

    logger.info("%s registered %s as %s for event %s", organizer.username, user.username, user.role, event_id)
    return Participant(**user_data)


@router.post("/login", response_model=Token)
async def login(credentials: LoginRequest, db=Depends(get_database)):
    user = await get_participant(db, credentials.event_id, credentials.username)
    if not user or not user.get("password") or not verify_password(credentials.password, user["password"]):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    access_token = create_access_token(
        data={"sub": user["username"], "event_id": credentials.event_id, "role": user["role"]}
    )
    return {"access_token": access_token, "token_type": "bearer"}
