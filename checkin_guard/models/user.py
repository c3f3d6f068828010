# checkin_guard/models/user.py
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

Role = Literal["organizer", "staff", "participant"]


class ParticipantCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: Optional[str] = Field(None, min_length=8)
    role: Role = "staff"

    @field_validator("username")
    def strip_username(cls, v):
        return v.strip()


class Participant(BaseModel):
    """An account scoped to one event. Usernames are unique per event."""
    id: str
    event_id: str
    username: str
    role: Role = "participant"
    has_password: bool = False


class LoginRequest(BaseModel):
    event_id: str
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    username: str
    event_id: str
    role: Role
