# checkin_guard/utils/auth_utils.py
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from passlib.context import CryptContext

from checkin_guard.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from checkin_guard.database import PARTICIPANTS, get_database
from checkin_guard.models.checkin import ActorContext
from checkin_guard.models.user import TokenData

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, expires_delta: timedelta = None):
    """Generate JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta if expires_delta else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


async def get_participant(db, event_id: str, username: str):
    """Fetch an event-scoped account by username."""
    return await db.get_collection(PARTICIPANTS).find_one({"event_id": event_id, "username": username})


async def get_current_actor(request: Request, db=Depends(get_database)) -> ActorContext:
    """Extract the JWT from the Authorization header and build the scanning actor."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.split(" ")[1]

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        token_data = TokenData(
            username=payload.get("sub"),
            event_id=payload.get("event_id"),
            role=payload.get("role"),
        )
    except (JWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    participant = await get_participant(db, token_data.event_id, token_data.username)
    if participant is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return ActorContext(
        username=participant["username"],
        role=participant.get("role", "participant"),
        event_id=token_data.event_id,
        # One session per scan flow; clients resend it on retries of the same flow.
        session_id=request.headers.get("X-Session-Id") or uuid.uuid4().hex,
        ip_address=request.client.host if request.client else None,
        device_info=request.headers.get("User-Agent"),
    )


def event_staff(event_id: str, actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
    if actor.event_id != event_id:
        raise HTTPException(status_code=403, detail="Invalid event access token.")
    if actor.role not in ("organizer", "staff"):
        raise HTTPException(status_code=403, detail="Only event staff can perform this action")
    return actor


def event_organizer(actor: ActorContext = Depends(event_staff)) -> ActorContext:
    if actor.role != "organizer":
        raise HTTPException(status_code=403, detail="Only organizers can perform this action")
    return actor
