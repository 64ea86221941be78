from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LockReason(str, Enum):
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    # Fail-closed answer when the store cannot be read; never persisted
    STORE_UNAVAILABLE = "store_unavailable"


class SuspicionReason(str, Enum):
    MALICIOUS_USER_AGENT = "malicious_user_agent"
    HIGH_ATTEMPT_VOLUME = "high_attempt_volume"
    RAPID_ATTEMPTS = "rapid_attempts"
    AUTOMATED_TOOL = "automated_tool"


class LockRecord(BaseModel):
    """Stored value of a lockout or IP block key."""

    reason: LockReason = LockReason.TOO_MANY_ATTEMPTS
    attempts: int
    locked_at: datetime
    expires_at: datetime


class LockoutStatus(BaseModel):
    is_locked: bool = False
    reason: LockReason | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None
    remaining_time_ms: int = 0


class IPBlockStatus(BaseModel):
    is_blocked: bool = False
    reason: LockReason | None = None
    blocked_at: datetime | None = None
    expires_at: datetime | None = None
    remaining_time_ms: int = 0


class SuspicionResult(BaseModel):
    is_suspicious: bool = False
    risk_score: int = 0
    reasons: list[SuspicionReason] = Field(default_factory=list)
    is_high_risk: bool = False


class LoginAttemptStats(BaseModel):
    user_attempts: int = 0
    ip_attempts: int = 0
    is_user_locked: bool = False
    is_ip_blocked: bool = False
    captcha_required: bool = False
    progressive_delay: int = 0


class SecurityContext(BaseModel):
    """Per-request pre-check result. Computed on demand, never persisted."""

    is_locked: bool = False
    is_ip_blocked: bool = False
    attempts_remaining: int = 0
    requires_captcha: bool = False
    delay_ms: int = 0
    suspicion: SuspicionResult = Field(default_factory=SuspicionResult)
    device_fingerprint: str | None = None

    @property
    def is_denied(self) -> bool:
        return self.is_locked or self.is_ip_blocked


class CleanupResult(BaseModel):
    success: bool
    cleaned_count: int = 0


class PrecheckRequest(BaseModel):
    identifier: str = Field(min_length=1, max_length=320)
    captcha_token: str | None = None
