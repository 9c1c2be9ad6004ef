"""
Pydantic models for the session core.

This module defines the persisted session record, the values exchanged with the
authenticator and the remote service, and the diagnostic snapshots exposed to
the host application.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

# Serialization format of the persisted record. Bump when the layout changes;
# stored records with another version are discarded on load.
SCHEMA_VERSION = 1

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# Session State
# ============================================================================


class SessionState(str, Enum):
    """States of the session lifecycle state machine."""

    EMPTY = "empty"
    ACQUIRING = "acquiring"
    VALID = "valid"
    REFRESHING = "refreshing"


class AuthenticationResult(BaseModel):
    """Fresh credential produced by an authenticator run or a silent refresh."""

    credential: SecretStr = Field(..., description="Opaque cookie/token material")
    expires_at: datetime = Field(..., description="When the remote service stops accepting it")
    identity_hint: str | None = Field(None, description="Non-secret account label")

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime) -> datetime:
        return _as_utc(v)


class SessionRecord(BaseModel):
    """The single persisted session entity."""

    credential: SecretStr = Field(..., description="Opaque bearer material, never logged")
    issued_at: datetime = Field(..., description="Acquisition timestamp (UTC)")
    expires_at: datetime = Field(..., description="Presumed expiry timestamp (UTC)")
    refresh_buffer: timedelta = Field(
        DEFAULT_REFRESH_BUFFER, description="Lead time before expiry at which refresh begins"
    )
    identity_hint: str | None = Field(None, description="Account label for diagnostics only")
    schema_version: int = Field(SCHEMA_VERSION, description="Serialization format version")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "credential": "**********",
                "issued_at": "2024-01-15T10:00:00Z",
                "expires_at": "2024-01-15T11:00:00Z",
                "refresh_buffer": "PT5M",
                "identity_hint": "someone@example.com",
                "schema_version": 1,
            }
        }

    @field_validator("issued_at", "expires_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("refresh_buffer")
    @classmethod
    def validate_refresh_buffer(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("refresh_buffer cannot be negative")
        return v

    @model_validator(mode="after")
    def check_expiry_order(self) -> "SessionRecord":
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")
        return self

    @classmethod
    def from_authentication(
        cls,
        result: AuthenticationResult,
        issued_at: datetime,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        identity_hint: str | None = None,
    ) -> "SessionRecord":
        """Build a record from an authenticator result, keeping a prior identity hint if none is given."""
        return cls(
            credential=result.credential,
            issued_at=issued_at,
            expires_at=result.expires_at,
            refresh_buffer=refresh_buffer,
            identity_hint=result.identity_hint or identity_hint,
        )

    @property
    def effective_refresh_buffer(self) -> timedelta:
        """Refresh lead time, at most half the record lifetime."""
        return min(self.refresh_buffer, (self.expires_at - self.issued_at) / 2)

    @property
    def refresh_at(self) -> datetime:
        """Moment at which proactive refresh must begin."""
        return self.expires_at - self.effective_refresh_buffer

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def needs_refresh(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.refresh_at

    def to_storage(self) -> dict[str, Any]:
        """Plain dict for the encrypted store, with the credential revealed."""
        data = self.model_dump(mode="json")
        data["credential"] = self.credential.get_secret_value()
        return data


class SessionStatus(BaseModel):
    """Diagnostic snapshot of the lifecycle manager. Never carries the credential."""

    state: SessionState = Field(..., description="Current lifecycle state")
    identity_hint: str | None = Field(None, description="Account label of the active record")
    issued_at: datetime | None = Field(None, description="When the active record was issued")
    expires_at: datetime | None = Field(None, description="When the active record expires")
    refresh_at: datetime | None = Field(None, description="When proactive refresh is scheduled")


# ============================================================================
# Generation Models
# ============================================================================


class GenerationOptions(BaseModel):
    """Options forwarded to the remote generation call."""

    count: int = Field(1, ge=1, le=4, description="Number of outputs requested")
    aspect_ratio: str | None = Field(None, description="Output aspect ratio, e.g. '1:1'")
    seed: int | None = Field(None, ge=0, description="Deterministic seed if supported")
    negative_prompt: str | None = Field(None, description="Content to steer away from")
    extra: dict[str, Any] = Field(default_factory=dict, description="Service-specific parameters")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "count": 1,
                "aspect_ratio": "16:9",
                "seed": 42,
            }
        }


class GenerationResult(BaseModel):
    """Outcome of a successful generation request."""

    request_key: str = Field(..., description="Admission key shared by coalesced callers")
    prompt: str = Field(..., description="Prompt as sent to the remote service")
    data: Any = Field(None, description="Raw result returned by the remote service")
    attempts: int = Field(1, ge=1, description="Remote calls issued for this request")
    completed_at: datetime = Field(default_factory=utcnow, description="Completion timestamp")
