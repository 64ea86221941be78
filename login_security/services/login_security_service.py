"""Login security service: failed-attempt tracking, lockouts, IP blocks,
progressive delay, captcha gating and suspicious-pattern scoring.

All mutable state lives in the injected AttemptStore. The service itself is
stateless and safe to share across concurrent requests. Identifier-keyed and
IP-keyed state are independent: a successful login clears the account's
counters and lockout but never touches the IP's.
"""

from __future__ import annotations

import asyncio
import ipaddress
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import ValidationError

from login_security.core.config import SecurityConfig, Settings, settings
from login_security.core.errors import MalformedInputError, TransientStoreError
from login_security.core.redis import create_redis_client
from login_security.schemas.login_security import (
    CleanupResult,
    IPBlockStatus,
    LockoutStatus,
    LockReason,
    LockRecord,
    LoginAttemptStats,
    SecurityContext,
    SuspicionResult,
)
from login_security.services.attempt_store import AttemptStore, MemoryAttemptStore, RedisAttemptStore
from login_security.services.device_fingerprint import generate_device_fingerprint
from login_security.services.suspicious_patterns import SuspiciousPatternDetector

logger = structlog.get_logger()

USER_ATTEMPTS_PREFIX = "login_attempts:"
IP_ATTEMPTS_PREFIX = "ip_attempts:"
USER_LOCKOUT_PREFIX = "user_lockout:"
IP_BLOCK_PREFIX = "ip_block:"
SUSPICIOUS_ACTIVITY_PREFIX = "suspicious_activity:"
LAST_SEEN_PREFIX = "attempt_last_seen:"
RAPID_ATTEMPTS_PREFIX = "rapid_attempts:"

KEY_PREFIXES = (
    USER_ATTEMPTS_PREFIX,
    IP_ATTEMPTS_PREFIX,
    USER_LOCKOUT_PREFIX,
    IP_BLOCK_PREFIX,
    SUSPICIOUS_ACTIVITY_PREFIX,
    LAST_SEEN_PREFIX,
    RAPID_ATTEMPTS_PREFIX,
)

MAX_IDENTIFIER_LENGTH = 320


def normalize_identifier(identifier: str) -> str:
    """Trim and lowercase an email/phone identifier."""
    if not isinstance(identifier, str):
        raise MalformedInputError("Identifier must be a string")
    value = identifier.strip().lower()
    if not value:
        raise MalformedInputError("Identifier is empty")
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise MalformedInputError("Identifier is too long")
    if any(ch.isspace() for ch in value):
        raise MalformedInputError("Identifier contains whitespace")
    return value


def normalize_ip(ip: str) -> str:
    """Validate an IPv4/IPv6 address and return its canonical text form."""
    if not isinstance(ip, str):
        raise MalformedInputError("IP address must be a string")
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError as e:
        raise MalformedInputError(f"Invalid IP address: {ip!r}") from e


def compute_progressive_delay(attempts: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Capped exponential backoff: 0 for no attempts, else min(base * 2^(n-1), max)."""
    if attempts <= 0:
        return 0
    return min(base_delay_ms * 2 ** (attempts - 1), max_delay_ms)


def _to_int(raw: str | None) -> int:
    try:
        return int(raw) if raw is not None else 0
    except ValueError:
        return 0


def _to_float(raw: str | None) -> float | None:
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


class LoginSecurityService:
    def __init__(
        self,
        store: AttemptStore,
        config: SecurityConfig,
        *,
        detector: SuspiciousPatternDetector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config
        self._detector = detector or SuspiciousPatternDetector(config)
        self._clock = clock

    @property
    def store(self) -> AttemptStore:
        return self._store

    def get_security_config(self) -> SecurityConfig:
        return self._config

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def record_failed_attempt(
        self,
        identifier: str,
        ip: str,
        user_agent: str | None = None,
        reason: str = "invalid_credentials",
    ) -> None:
        """Count a failed login against the identifier and the IP.

        Applies a lockout / IP block once the respective threshold is reached.
        A malformed identifier or IP only skips that key's state.
        """
        ident = self._normalized_identifier(identifier, "record_failed_attempt")
        addr = self._normalized_ip(ip, "record_failed_attempt")
        if ident is None and addr is None:
            return

        cfg = self._config
        user_count, ip_count = await asyncio.gather(
            self._increment(USER_ATTEMPTS_PREFIX, ident, cfg.attempt_window_seconds),
            self._increment(IP_ATTEMPTS_PREFIX, addr, cfg.attempt_window_seconds),
        )

        logger.info(
            "login_security.failed_attempt",
            identifier=ident,
            identifier_type=_identifier_type(ident),
            ip=addr,
            user_agent=user_agent,
            reason=reason,
            user_attempts=user_count,
            ip_attempts=ip_count,
        )

        if ident is not None and user_count >= cfg.max_attempts:
            record = await self._write_lock(USER_LOCKOUT_PREFIX + ident, user_count, cfg.lockout_duration_seconds)
            logger.warning(
                "login_security.lockout_applied",
                identifier=ident,
                attempts=user_count,
                expires_at=record.expires_at.isoformat(),
            )

        if addr is not None:
            if ip_count >= cfg.ip_max_attempts:
                record = await self._write_lock(IP_BLOCK_PREFIX + addr, ip_count, cfg.ip_block_duration_seconds)
                logger.warning(
                    "login_security.ip_blocked",
                    ip=addr,
                    attempts=ip_count,
                    expires_at=record.expires_at.isoformat(),
                )
            await self._track_ip_activity(addr)

    async def record_successful_login(
        self,
        identifier: str,
        ip: str,
        user_id: str | None = None,
        device_fingerprint: str | None = None,
    ) -> None:
        """Clear the identifier's counter and lockout. IP state is left alone."""
        ident = self._normalized_identifier(identifier, "record_successful_login")
        if ident is None:
            return

        await self._store.delete(USER_ATTEMPTS_PREFIX + ident, USER_LOCKOUT_PREFIX + ident)
        logger.info(
            "login_security.login_succeeded",
            identifier=ident,
            ip=self._normalized_ip(ip, "record_successful_login"),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
        )

    # ------------------------------------------------------------------
    # Lock / block status
    # ------------------------------------------------------------------

    async def is_user_locked_out(self, identifier: str) -> LockoutStatus:
        return await self._lockout_status(self._normalized_identifier(identifier, "is_user_locked_out"))

    async def is_ip_blocked(self, ip: str) -> IPBlockStatus:
        return await self._block_status(self._normalized_ip(ip, "is_ip_blocked"))

    async def _lockout_status(self, ident: str | None) -> LockoutStatus:
        if ident is None:
            return LockoutStatus()
        record, unavailable = await self._read_lock(USER_LOCKOUT_PREFIX + ident)
        if unavailable:
            return LockoutStatus(is_locked=True, reason=LockReason.STORE_UNAVAILABLE)
        if record is None:
            return LockoutStatus()
        return LockoutStatus(
            is_locked=True,
            reason=record.reason,
            locked_at=record.locked_at,
            expires_at=record.expires_at,
            remaining_time_ms=self._remaining_ms(record.expires_at),
        )

    async def _block_status(self, addr: str | None) -> IPBlockStatus:
        if addr is None:
            return IPBlockStatus()
        record, unavailable = await self._read_lock(IP_BLOCK_PREFIX + addr)
        if unavailable:
            return IPBlockStatus(is_blocked=True, reason=LockReason.STORE_UNAVAILABLE)
        if record is None:
            return IPBlockStatus()
        return IPBlockStatus(
            is_blocked=True,
            reason=record.reason,
            blocked_at=record.locked_at,
            expires_at=record.expires_at,
            remaining_time_ms=self._remaining_ms(record.expires_at),
        )

    # ------------------------------------------------------------------
    # Delay / captcha / aggregates
    # ------------------------------------------------------------------

    async def calculate_progressive_delay(self, identifier: str, ip: str) -> int:
        user_count, ip_count = await self._counts(
            self._normalized_identifier(identifier, "calculate_progressive_delay"),
            self._normalized_ip(ip, "calculate_progressive_delay"),
        )
        return self._delay_for(max(user_count, ip_count))

    async def is_captcha_required(self, identifier: str, ip: str) -> bool:
        user_count, ip_count = await self._counts(
            self._normalized_identifier(identifier, "is_captcha_required"),
            self._normalized_ip(ip, "is_captcha_required"),
        )
        return self._captcha_for(max(user_count, ip_count))

    async def get_login_attempt_stats(self, identifier: str | None = None, ip: str | None = None) -> LoginAttemptStats:
        """One aggregated read for building a login response.

        ``captcha_required`` and ``progressive_delay`` describe the account, so
        they reset with a successful login. The guard in ``get_security_context``
        also weighs the IP count.
        """
        ident = self._normalized_identifier(identifier, "get_login_attempt_stats")
        addr = self._normalized_ip(ip, "get_login_attempt_stats")

        (user_count, ip_count), lockout, block = await asyncio.gather(
            self._counts(ident, addr),
            self._lockout_status(ident),
            self._block_status(addr),
        )
        return LoginAttemptStats(
            user_attempts=user_count,
            ip_attempts=ip_count,
            is_user_locked=lockout.is_locked,
            is_ip_blocked=block.is_blocked,
            captcha_required=self._captcha_for(user_count),
            progressive_delay=self._delay_for(user_count),
        )

    async def get_security_context(
        self,
        identifier: str,
        ip: str,
        user_agent: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> SecurityContext:
        """Everything the login endpoint needs before it verifies credentials."""
        ident = self._normalized_identifier(identifier, "get_security_context")
        addr = self._normalized_ip(ip, "get_security_context")

        (user_count, ip_count), lockout, block, suspicion = await asyncio.gather(
            self._counts(ident, addr),
            self._lockout_status(ident),
            self._block_status(addr),
            self._evaluate_suspicion(ident, addr, user_agent),
        )
        attempts = max(user_count, ip_count)
        return SecurityContext(
            is_locked=lockout.is_locked,
            is_ip_blocked=block.is_blocked,
            attempts_remaining=max(0, self._config.max_attempts - user_count),
            requires_captcha=self._captcha_for(attempts),
            delay_ms=self._delay_for(attempts),
            suspicion=suspicion,
            device_fingerprint=generate_device_fingerprint(headers) if headers is not None else None,
        )

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    async def check_suspicious_patterns(self, identifier: str, ip: str, user_agent: str | None) -> SuspicionResult:
        return await self._evaluate_suspicion(
            self._normalized_identifier(identifier, "check_suspicious_patterns"),
            self._normalized_ip(ip, "check_suspicious_patterns"),
            user_agent,
        )

    def generate_device_fingerprint(self, headers: Mapping[str, str]) -> str:
        return generate_device_fingerprint(headers)

    async def _evaluate_suspicion(self, ident: str | None, addr: str | None, user_agent: str | None) -> SuspicionResult:
        volume, streak = 0, 0
        if addr is not None:
            volume, streak = await asyncio.gather(
                self._count(SUSPICIOUS_ACTIVITY_PREFIX + addr),
                self._count(RAPID_ATTEMPTS_PREFIX + addr),
            )

        result = self._detector.evaluate(user_agent, volume, streak)
        if result.is_suspicious:
            logger.warning(
                "login_security.suspicious_pattern",
                identifier=ident,
                ip=addr,
                user_agent=user_agent,
                reasons=[reason.value for reason in result.reasons],
                risk_score=result.risk_score,
                high_risk=result.is_high_risk,
            )
        return result

    async def _track_ip_activity(self, addr: str) -> None:
        cfg = self._config
        now = self._clock()
        last_key = LAST_SEEN_PREFIX + addr
        rapid_key = RAPID_ATTEMPTS_PREFIX + addr

        # One atomic swap per failure, so concurrent failures each see their predecessor
        _, last_raw = await asyncio.gather(
            self._store.increment(SUSPICIOUS_ACTIVITY_PREFIX + addr, cfg.suspicious_window_seconds),
            self._store.swap_with_ttl(last_key, repr(now), cfg.attempt_window_seconds),
        )
        last_seen = _to_float(last_raw)
        if last_seen is None:
            # No predecessor in the window: the streak key has lapsed with it
            return
        if abs(now - last_seen) < cfg.rapid_attempt_interval_seconds:
            await self._store.increment(rapid_key, cfg.attempt_window_seconds)
        else:
            await self._store.delete(rapid_key)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired_data(self) -> CleanupResult:
        """Sweep the store. Live records are never removed."""
        try:
            cleaned = await self._store.sweep(
                KEY_PREFIXES,
                batch_size=self._config.cleanup_batch_size,
                orphan_ttl_seconds=self._config.orphan_ttl_seconds,
            )
        except TransientStoreError as e:
            logger.warning("login_security.cleanup_failed", error=str(e))
            return CleanupResult(success=False)

        logger.info("login_security.cleanup_complete", cleaned_count=cleaned)
        return CleanupResult(success=True, cleaned_count=cleaned)

    async def close(self) -> None:
        await self._store.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _delay_for(self, attempts: int) -> int:
        if not self._config.progressive_delay_enabled:
            return 0
        return compute_progressive_delay(attempts, self._config.base_delay_ms, self._config.max_delay_ms)

    def _captcha_for(self, attempts: int) -> bool:
        return self._config.captcha_enabled and attempts >= self._config.captcha_threshold

    async def _increment(self, prefix: str, value: str | None, window_seconds: int) -> int:
        if value is None:
            return 0
        return await self._store.increment(prefix + value, window_seconds)

    async def _count(self, key: str) -> int:
        return _to_int(await self._store.get(key))

    async def _counts(self, ident: str | None, addr: str | None) -> tuple[int, int]:
        async def _zero() -> int:
            return 0

        user_count, ip_count = await asyncio.gather(
            self._count(USER_ATTEMPTS_PREFIX + ident) if ident is not None else _zero(),
            self._count(IP_ATTEMPTS_PREFIX + addr) if addr is not None else _zero(),
        )
        return user_count, ip_count

    async def _write_lock(self, key: str, attempts: int, ttl_seconds: int) -> LockRecord:
        now = self._now()
        record = LockRecord(
            reason=LockReason.TOO_MANY_ATTEMPTS,
            attempts=attempts,
            locked_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        # Plain SET overwrites, so re-triggering keeps a single active record
        await self._store.set_with_ttl(key, record.model_dump_json(), ttl_seconds)
        return record

    async def _read_lock(self, key: str) -> tuple[LockRecord | None, bool]:
        """Return ``(record, store_unavailable)``."""
        try:
            raw = await self._store.get(key, strict=self._config.fail_closed)
        except TransientStoreError as e:
            logger.warning("login_security.fail_closed", key=key, error=str(e))
            return None, True
        if raw is None:
            return None, False
        try:
            return LockRecord.model_validate_json(raw), False
        except ValidationError:
            logger.warning("login_security.corrupt_lock_record", key=key)
            return None, False

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _remaining_ms(self, expires_at: datetime) -> int:
        return max(0, int((expires_at - self._now()).total_seconds() * 1000))

    def _normalized_identifier(self, identifier: str | None, operation: str) -> str | None:
        if identifier is None:
            return None
        try:
            return normalize_identifier(identifier)
        except MalformedInputError as e:
            logger.warning("login_security.malformed_identifier", operation=operation, error=str(e))
            return None

    def _normalized_ip(self, ip: str | None, operation: str) -> str | None:
        if ip is None:
            return None
        try:
            return normalize_ip(ip)
        except MalformedInputError as e:
            logger.warning("login_security.malformed_ip", operation=operation, error=str(e))
            return None


def _identifier_type(identifier: str | None) -> str | None:
    if identifier is None:
        return None
    return "email" if "@" in identifier else "phone"


def create_login_security_service(s: Settings = settings) -> LoginSecurityService:
    """Build the process-wide service from settings.

    Raises ConfigurationError when a threshold is out of range or a trusted
    proxy entry is not an address or network.
    """
    config = SecurityConfig.from_settings(s)
    trusted_proxies = s.trusted_proxy_networks
    client = create_redis_client(s.REDIS_URL, config.store_timeout_seconds)
    if client is None:
        logger.warning("login_security.memory_store", reason="REDIS_URL not configured")
        store: AttemptStore = MemoryAttemptStore(timeout=config.store_timeout_seconds)
    else:
        store = RedisAttemptStore(client, timeout=config.store_timeout_seconds)

    logger.info(
        "login_security.configured",
        store=type(store).__name__,
        max_attempts=config.max_attempts,
        lockout_duration_seconds=config.lockout_duration_seconds,
        ip_max_attempts=config.ip_max_attempts,
        captcha_enabled=config.captcha_enabled,
        fail_closed=config.fail_closed,
        trusted_proxies=[str(network) for network in trusted_proxies],
        admin_api_enabled=bool(s.LOGIN_SECURITY_ADMIN_API_KEY),
    )
    return LoginSecurityService(store, config)
