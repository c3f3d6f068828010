# checkin_guard/models/checkin.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from checkin_guard.models.common import Severity, UTCDateTime
from checkin_guard.models.invite import GuestSnapshot, SecurityFlag


class ActorContext(BaseModel):
    """Who is scanning, from where, in which request flow."""
    username: str
    role: str = "staff"
    event_id: Optional[str] = None
    session_id: str
    ip_address: Optional[str] = None
    device_info: Optional[str] = None


class SecurityWarning(BaseModel):
    type: str  # 'duplicate_warning', 'multiple_invites', 'rapid_scanning', 'multiple_devices', 'low_trust_score'
    severity: Severity
    message: str
    details: Dict[str, Any] = {}


class DenyDescriptor(BaseModel):
    valid: bool = False
    reason: str
    severity: Severity
    message: str
    requires_override: bool = False
    override_available: bool = False
    details: Dict[str, Any] = {}


class AuditSnapshot(BaseModel):
    event_id: str
    invite_code: str
    staff_user: str
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    timestamp: UTCDateTime
    warnings: List[SecurityWarning] = []


class SecuritySummary(BaseModel):
    trust_score: int
    warnings: List[SecurityWarning] = []
    flags: List[SecurityFlag] = []


class LookupResult(BaseModel):
    valid: bool = True
    admissible: bool = True
    requires_pin: bool = False
    guest: GuestSnapshot
    security: SecuritySummary
    event_title: str
    staff_note: str = ""
    security_instructions: str = ""


class PinVerifyRequest(BaseModel):
    pin: str = ""


class PinVerifyResult(BaseModel):
    valid: bool
    message: str
    remaining_attempts: Optional[int] = None
    locked: bool = False
    locked_until: Optional[UTCDateTime] = None


class CheckInRequest(BaseModel):
    actual_attendees: Optional[int] = None


class OverrideSummary(BaseModel):
    used: bool = True
    authorized_by: str
    reason: str
    executed_by: str
    was_blocked: bool
    original_block_reason: Optional[str] = None


class AdmissionResult(BaseModel):
    message: str
    invite: GuestSnapshot
    override: Optional[OverrideSummary] = None


class OverrideRequest(BaseModel):
    manager_username: str = ""
    manager_password: str = ""
    invite_code: str = ""
    reason: str = ""


class OverrideGrant(BaseModel):
    success: bool = True
    override_token: str
    expires_in: int
    expires_at: UTCDateTime
    message: str
    manager_username: str
    guest_name: str
    original_block_reason: Optional[str] = None


class OverrideVerifyRequest(BaseModel):
    override_token: str = ""
    invite_code: Optional[str] = None


class OverrideMetadata(BaseModel):
    valid: bool = True
    manager_username: str
    reason: str
    guest_name: str
    invite_code: str
    original_block_reason: Optional[str] = None
    expires_at: UTCDateTime
    time_remaining: int


class OverrideExecuteRequest(BaseModel):
    override_token: str = ""
    actual_attendees: Optional[int] = None


class OverrideHistoryEntry(BaseModel):
    invite_code: str
    guest_name: str
    checked_in_at: UTCDateTime
    checked_in_by: str
    override_by: Optional[str] = None
    override_reason: Optional[str] = None
    original_block_reason: Optional[str] = None
    actual_attendees: int


class CheckinStats(BaseModel):
    total: int
    checked_in: int
    pending: int
    confirmed: int
    declined: int
    blocked: int
    no_show: int
    total_expected_adults: int
    total_expected_children: int
    total_expected_attendees: int
    total_actual_attendees: int
    total_failed_scans: int


class BlockRequest(BaseModel):
    reason: str = Field("manual_block", min_length=1)
    blocked_until: Optional[UTCDateTime] = None
