# checkin_guard/models/invite.py
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from checkin_guard.models.common import Severity, UTCDateTime
from checkin_guard.utils.expiry import ExpiringFact, is_live


class ScanAttempt(BaseModel):
    attempted_at: UTCDateTime
    reason: str  # 'wrong_event', 'already_checked_in', 'wrong_pin', 'verified', 'override_requested', ...
    attempted_by: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    failed: bool = True  # counted against the trust score


class SecurityFlag(BaseModel):
    flag: str  # 'rapid_scans', 'multiple_devices', 'duplicate_detected', 'manual_override_used'
    severity: Severity = "medium"
    flagged_at: UTCDateTime
    notes: str = ""
    resolved: bool = False
    resolved_at: Optional[UTCDateTime] = None
    resolved_by: Optional[str] = None


class CheckInRecord(BaseModel):
    checked_in_at: UTCDateTime
    checked_in_by: str
    actual_attendees: int
    override_used: bool = False
    override_by: Optional[str] = None
    override_reason: Optional[str] = None
    original_block_reason: Optional[str] = None


class CheckInLock(BaseModel):
    locked_by: Optional[str] = None
    locked_at: Optional[UTCDateTime] = None
    session_id: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.session_id is not None

    def fact(self, timeout_seconds: int) -> Optional[ExpiringFact]:
        """The lock as an expiring fact; stale once the timeout has elapsed."""
        if not self.is_locked or self.locked_at is None:
            return None
        return ExpiringFact.lasting(self.session_id, self.locked_at, timedelta(seconds=timeout_seconds))


class LastScanMetadata(BaseModel):
    scanned_at: UTCDateTime
    ip_address: Optional[str] = None
    device_info: Optional[str] = None


class GuestBase(BaseModel):
    guest_name: str = Field(..., min_length=1, max_length=100)
    guest_email: str = ""
    guest_phone: str = ""
    adults: int = Field(1, ge=0)
    children: int = Field(0, ge=0)
    plus_ones: int = Field(0, ge=0)
    security_pin: str = Field("", max_length=6)
    notes: str = Field("", max_length=500)

    @field_validator("guest_name", "guest_email", "guest_phone", "security_pin", "notes")
    def strip_text(cls, v):
        return v.strip()


class InviteCreate(GuestBase):
    group_size: Optional[int] = Field(None, ge=1)


class InviteBatch(BaseModel):
    guests: List[InviteCreate] = Field(..., min_length=1)


class InviteUpdate(BaseModel):
    guest_name: Optional[str] = Field(None, min_length=1, max_length=100)
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    adults: Optional[int] = Field(None, ge=0)
    children: Optional[int] = Field(None, ge=0)
    plus_ones: Optional[int] = Field(None, ge=0)
    actual_attendees: Optional[int] = Field(None, ge=0)
    security_pin: Optional[str] = Field(None, max_length=6)
    notes: Optional[str] = Field(None, max_length=500)


class Invite(GuestBase):
    id: str
    event_id: str
    invite_code: str
    group_size: int = 1
    actual_attendees: Optional[int] = Field(None, ge=0)  # defaults to the party composition
    status: str = "pending"  # "pending", "confirmed", "declined", "checked-in"

    checked_in: bool = False
    checked_in_at: Optional[UTCDateTime] = None
    checked_in_by: Optional[str] = None

    duplicate_fingerprint: Optional[str] = None
    identity_keys: Dict[str, List[str]] = {}
    marked_as_duplicate: bool = False
    duplicate_of: Optional[str] = None

    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    blocked_at: Optional[UTCDateTime] = None
    blocked_by: Optional[str] = None
    blocked_until: Optional[UTCDateTime] = None

    checkin_lock: CheckInLock = CheckInLock()
    scan_attempts: List[ScanAttempt] = []
    security_flags: List[SecurityFlag] = []
    check_in_history: List[CheckInRecord] = []

    trust_score: int = 100
    last_scan_metadata: Optional[LastScanMetadata] = None
    created_at: Optional[UTCDateTime] = None

    @model_validator(mode="after")
    def default_attendees(self):
        if self.actual_attendees is None:
            self.actual_attendees = self.party_size
        return self

    @property
    def party_size(self) -> int:
        return (self.adults + self.children) or self.group_size

    def block_fact(self) -> Optional[ExpiringFact]:
        if not self.is_blocked:
            return None
        return ExpiringFact(self.blocked_reason or "blocked", self.blocked_until)

    def blocked_at_time(self, now: datetime) -> bool:
        """A temporary block whose ``blocked_until`` has passed no longer counts."""
        return is_live(self.block_fact(), now)

    def unresolved_flags(self) -> List[SecurityFlag]:
        return [f for f in self.security_flags if not f.resolved]


class GuestSnapshot(BaseModel):
    """What staff see at the door. The PIN itself never leaves the server."""
    id: str
    invite_code: str
    guest_name: str
    guest_email: str
    guest_phone: str
    adults: int
    children: int
    group_size: int
    plus_ones: int
    status: str
    notes: str
    has_pin: bool
    checked_in: bool
    checked_in_at: Optional[UTCDateTime] = None
    checked_in_by: Optional[str] = None
    actual_attendees: int

    @classmethod
    def from_invite(cls, invite: Invite) -> "GuestSnapshot":
        return cls(
            has_pin=bool(invite.security_pin),
            **invite.model_dump(include=set(cls.model_fields) - {"has_pin", "failed_scans"}),
        )


class InviteDetail(GuestSnapshot):
    """Organizer view: the door snapshot plus security state."""
    is_blocked: bool
    blocked_reason: Optional[str] = None
    blocked_until: Optional[UTCDateTime] = None
    marked_as_duplicate: bool
    duplicate_of: Optional[str] = None
    trust_score: int
    security_flags: List[SecurityFlag] = []
    failed_scans: int = 0

    @classmethod
    def from_invite(cls, invite: Invite) -> "InviteDetail":
        detail = super().from_invite(invite)
        return detail.model_copy(update={
            "failed_scans": sum(1 for a in invite.scan_attempts if a.failed),
        })
