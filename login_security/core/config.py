from ipaddress import IPv4Network, IPv6Network, ip_network
from pathlib import Path

from pydantic import BaseModel, ValidationError, model_validator
from pydantic_settings import BaseSettings

from login_security.core.errors import ConfigurationError

# Resolve .env from the repository root
_env_file = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    APP_NAME: str = "Login Security Core"
    APP_ENV: str = "development"
    APP_DEBUG: bool = True

    # Empty string selects the in-process store
    REDIS_URL: str = "redis://localhost:6379/0"

    CORS_ORIGINS: str = "http://localhost:3000"

    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # Attempt limits
    MAX_LOGIN_ATTEMPTS: int = 5
    LOGIN_ATTEMPT_WINDOW_MINUTES: int = 15
    ACCOUNT_LOCKOUT_DURATION_MINUTES: int = 30

    # IP blocking
    IP_MAX_ATTEMPTS: int = 10
    IP_BLOCK_DURATION_MINUTES: int = 60

    # Progressive delay
    LOGIN_DELAY_ENABLED: bool = True
    LOGIN_BASE_DELAY_MS: int = 1000
    LOGIN_MAX_DELAY_MS: int = 30000

    # Captcha
    CAPTCHA_THRESHOLD: int = 3
    CAPTCHA_ENABLED: bool = True

    # Suspicious pattern scoring
    SUSPICIOUS_ACTIVITY_THRESHOLD: int = 5
    SUSPICIOUS_VOLUME_THRESHOLD: int = 10
    SUSPICIOUS_WINDOW_HOURS: int = 24
    RAPID_ATTEMPT_INTERVAL_SECONDS: float = 2.0
    RAPID_ATTEMPT_STREAK: int = 3

    # Store behaviour
    LOGIN_SECURITY_STORE_TIMEOUT_SECONDS: float = 0.5
    LOGIN_SECURITY_FAIL_CLOSED: bool = False
    LOGIN_SECURITY_DISABLED: bool = False

    # Comma-separated proxy addresses or CIDRs allowed to set X-Forwarded-For / X-Real-IP.
    # Empty means forwarding headers are ignored and the socket peer is the client.
    LOGIN_SECURITY_TRUSTED_PROXIES: str = ""

    # X-API-Key for the /login-security admin routes. Empty disables them.
    LOGIN_SECURITY_ADMIN_API_KEY: str = ""

    # Cleanup
    LOGIN_SECURITY_CLEANUP_INTERVAL_MINUTES: int = 60
    LOGIN_SECURITY_CLEANUP_BATCH_SIZE: int = 500
    LOGIN_SECURITY_ORPHAN_TTL_HOURS: int = 24

    model_config = {"env_file": str(_env_file), "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def trusted_proxy_networks(self) -> list[IPv4Network | IPv6Network]:
        networks = []
        for entry in self.LOGIN_SECURITY_TRUSTED_PROXIES.split(","):
            entry = entry.strip()
            if not entry:
                continue
            try:
                networks.append(ip_network(entry, strict=False))
            except ValueError as e:
                raise ConfigurationError(f"Invalid trusted proxy: {entry!r}") from e
        return networks


class SecurityConfig(BaseModel):
    """Immutable login security tunables, built once at startup.

    Durations are stored in seconds so they can be handed straight to the
    store as TTLs. Delays stay in milliseconds.
    """

    max_attempts: int = 5
    attempt_window_seconds: int = 15 * 60
    lockout_duration_seconds: int = 30 * 60
    ip_max_attempts: int = 10
    ip_block_duration_seconds: int = 60 * 60
    progressive_delay_enabled: bool = True
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    captcha_threshold: int = 3
    captcha_enabled: bool = True
    suspicious_activity_threshold: int = 5
    suspicious_volume_threshold: int = 10
    suspicious_window_seconds: int = 24 * 60 * 60
    rapid_attempt_interval_seconds: float = 2.0
    rapid_attempt_streak: int = 3
    store_timeout_seconds: float = 0.5
    fail_closed: bool = False
    cleanup_batch_size: int = 500
    orphan_ttl_seconds: int = 24 * 60 * 60

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_ranges(self) -> "SecurityConfig":
        positive = (
            "max_attempts",
            "attempt_window_seconds",
            "lockout_duration_seconds",
            "ip_max_attempts",
            "ip_block_duration_seconds",
            "captcha_threshold",
            "suspicious_activity_threshold",
            "suspicious_window_seconds",
            "rapid_attempt_streak",
            "cleanup_batch_size",
            "orphan_ttl_seconds",
        )
        for name in positive:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.suspicious_volume_threshold < 0:
            raise ValueError("suspicious_volume_threshold must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError("base_delay_ms must not exceed max_delay_ms")
        if self.rapid_attempt_interval_seconds <= 0:
            raise ValueError("rapid_attempt_interval_seconds must be > 0")
        if self.store_timeout_seconds <= 0:
            raise ValueError("store_timeout_seconds must be > 0")
        return self

    @classmethod
    def build(cls, **values) -> "SecurityConfig":
        """Validate tunables, raising ConfigurationError instead of ValidationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid login security configuration: {e}") from e

    @classmethod
    def from_settings(cls, s: Settings) -> "SecurityConfig":
        return cls.build(
            max_attempts=s.MAX_LOGIN_ATTEMPTS,
            attempt_window_seconds=s.LOGIN_ATTEMPT_WINDOW_MINUTES * 60,
            lockout_duration_seconds=s.ACCOUNT_LOCKOUT_DURATION_MINUTES * 60,
            ip_max_attempts=s.IP_MAX_ATTEMPTS,
            ip_block_duration_seconds=s.IP_BLOCK_DURATION_MINUTES * 60,
            progressive_delay_enabled=s.LOGIN_DELAY_ENABLED,
            base_delay_ms=s.LOGIN_BASE_DELAY_MS,
            max_delay_ms=s.LOGIN_MAX_DELAY_MS,
            captcha_threshold=s.CAPTCHA_THRESHOLD,
            captcha_enabled=s.CAPTCHA_ENABLED,
            suspicious_activity_threshold=s.SUSPICIOUS_ACTIVITY_THRESHOLD,
            suspicious_volume_threshold=s.SUSPICIOUS_VOLUME_THRESHOLD,
            suspicious_window_seconds=s.SUSPICIOUS_WINDOW_HOURS * 60 * 60,
            rapid_attempt_interval_seconds=s.RAPID_ATTEMPT_INTERVAL_SECONDS,
            rapid_attempt_streak=s.RAPID_ATTEMPT_STREAK,
            store_timeout_seconds=s.LOGIN_SECURITY_STORE_TIMEOUT_SECONDS,
            fail_closed=s.LOGIN_SECURITY_FAIL_CLOSED,
            cleanup_batch_size=s.LOGIN_SECURITY_CLEANUP_BATCH_SIZE,
            orphan_ttl_seconds=s.LOGIN_SECURITY_ORPHAN_TTL_HOURS * 60 * 60,
        )


settings = Settings()
