# checkin_guard/models/event.py
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from checkin_guard.models.common import UTCDateTime


class CheckinSettings(BaseModel):
    """Per-event check-in policy. Every default lives here and nowhere else."""

    # Basic security
    require_pin: bool = False
    max_failed_attempts: int = Field(3, ge=1)
    lockout_minutes: int = Field(15, ge=0)
    allow_manual_override: bool = False

    # Duplicate detection
    enable_duplicate_detection: bool = True
    duplicate_detection_mode: Literal["strict", "moderate", "lenient"] = "moderate"
    auto_block_duplicates: bool = False
    allow_multiple_tickets: bool = False

    # Reentrancy protection
    checkin_lock_timeout_seconds: int = Field(30, ge=1)

    # Suspicious pattern detection
    enable_pattern_detection: bool = True
    rapid_scan_threshold: int = Field(3, ge=1)
    rapid_scan_window_seconds: int = Field(10, ge=1)
    multi_device_threshold: int = Field(3, ge=1)

    # Trust score
    enable_trust_score: bool = True
    minimum_trust_score: int = Field(50, ge=0, le=100)
    auto_block_low_trust: bool = False

    # Time window (minutes relative to the event start)
    enable_time_restrictions: bool = False
    checkin_window_start_minutes: int = Field(120, ge=0)
    checkin_window_end_minutes: int = Field(30, ge=0)
    allow_late_checkin: bool = True

    # Capacity
    enable_capacity_limits: bool = False
    max_total_attendees: Optional[int] = Field(None, ge=0)

    # Audit
    detailed_audit_logging: bool = True
    log_ip_addresses: bool = True
    log_device_info: bool = True

    # Staff instructions
    staff_note: str = ""
    security_instructions: str = ""

    # Emergency controls
    emergency_lockdown: bool = False
    emergency_lockdown_reason: Optional[str] = None
    emergency_lockdown_by: Optional[str] = None
    emergency_lockdown_at: Optional[UTCDateTime] = None

    @classmethod
    def basic(cls) -> "CheckinSettings":
        """Policy for events without enterprise mode: only structural checks apply."""
        return cls(
            enable_duplicate_detection=False,
            enable_pattern_detection=False,
            enable_trust_score=False,
            detailed_audit_logging=False,
        )


class CheckinSettingsUpdate(BaseModel):
    require_pin: Optional[bool] = None
    max_failed_attempts: Optional[int] = Field(None, ge=1)
    lockout_minutes: Optional[int] = Field(None, ge=0)
    allow_manual_override: Optional[bool] = None
    enable_duplicate_detection: Optional[bool] = None
    duplicate_detection_mode: Optional[Literal["strict", "moderate", "lenient"]] = None
    auto_block_duplicates: Optional[bool] = None
    allow_multiple_tickets: Optional[bool] = None
    checkin_lock_timeout_seconds: Optional[int] = Field(None, ge=1)
    enable_pattern_detection: Optional[bool] = None
    rapid_scan_threshold: Optional[int] = Field(None, ge=1)
    rapid_scan_window_seconds: Optional[int] = Field(None, ge=1)
    multi_device_threshold: Optional[int] = Field(None, ge=1)
    enable_trust_score: Optional[bool] = None
    minimum_trust_score: Optional[int] = Field(None, ge=0, le=100)
    auto_block_low_trust: Optional[bool] = None
    enable_time_restrictions: Optional[bool] = None
    checkin_window_start_minutes: Optional[int] = Field(None, ge=0)
    checkin_window_end_minutes: Optional[int] = Field(None, ge=0)
    allow_late_checkin: Optional[bool] = None
    enable_capacity_limits: Optional[bool] = None
    max_total_attendees: Optional[int] = Field(None, ge=0)
    detailed_audit_logging: Optional[bool] = None
    log_ip_addresses: Optional[bool] = None
    log_device_info: Optional[bool] = None
    staff_note: Optional[str] = None
    security_instructions: Optional[str] = None
    emergency_lockdown: Optional[bool] = None
    emergency_lockdown_reason: Optional[str] = None


class EventBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    date: UTCDateTime
    timezone: str = "UTC"
    location: Optional[str] = None


class EventCreate(EventBase):
    organizer_username: str = Field(..., min_length=1, max_length=100)
    organizer_password: str = Field(..., min_length=8)
    enterprise_mode: bool = False

    @field_validator("organizer_username")
    def strip_username(cls, v):
        return v.strip()


class Event(EventBase):
    id: str
    organizer_username: str
    is_enterprise_mode: bool = False
    checkin_settings: Optional[CheckinSettings] = None

    def policy(self) -> CheckinSettings:
        if self.is_enterprise_mode and self.checkin_settings is not None:
            return self.checkin_settings
        return CheckinSettings.basic()
