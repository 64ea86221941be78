"""Rule-based scoring of login attempts for automation patterns."""

import re

from login_security.core.config import SecurityConfig
from login_security.schemas.login_security import SuspicionReason, SuspicionResult

# Scanners, crawlers and bare HTTP client libraries. Real browsers never send these.
AUTOMATION_SIGNATURES = (
    # Crawler product tokens: Googlebot/2.1, bingbot/2.0, Slackbot-LinkExpanding
    r"(?:^|[\s;(+])\w*bot(?:[/\-;)]|$)",
    r"crawler",
    r"spider",
    r"scanner",
    r"sqlmap",
    r"nikto",
    r"nmap",
    r"masscan",
    r"hydra",
    r"curl/",
    r"wget/",
    r"python-requests",
    r"python-urllib",
    r"aiohttp",
    r"python-httpx",
    r"go-http-client",
    r"java/",
    r"okhttp",
    r"libwww-perl",
    r"node-fetch",
    r"axios/",
    r"undici",
    r"headlesschrome",
    r"phantomjs",
)

# Scripting runtimes. Only scored once another rule has already fired.
AUTOMATED_TOOL_SIGNATURES = (
    r"curl",
    r"wget",
    r"python",
    r"java",
    r"node",
)

_AUTOMATION_RE = re.compile("|".join(AUTOMATION_SIGNATURES), re.IGNORECASE)
_AUTOMATED_TOOL_RE = re.compile("|".join(AUTOMATED_TOOL_SIGNATURES), re.IGNORECASE)

RULE_WEIGHTS = {
    SuspicionReason.MALICIOUS_USER_AGENT: 5,
    SuspicionReason.HIGH_ATTEMPT_VOLUME: 3,
    SuspicionReason.RAPID_ATTEMPTS: 2,
    SuspicionReason.AUTOMATED_TOOL: 2,
}


def is_automation_user_agent(user_agent: str | None) -> bool:
    return bool(user_agent) and _AUTOMATION_RE.search(user_agent) is not None


def is_automated_tool(user_agent: str | None) -> bool:
    return bool(user_agent) and _AUTOMATED_TOOL_RE.search(user_agent) is not None


class SuspiciousPatternDetector:
    """Score an attempt from its user agent, IP volume and IP cadence.

    The detector is pure: callers read the counters from the store and pass
    them in, which keeps the rules testable without a backend.
    """

    def __init__(self, config: SecurityConfig) -> None:
        self._config = config

    def evaluate(self, user_agent: str | None, volume_count: int, rapid_streak: int) -> SuspicionResult:
        reasons: list[SuspicionReason] = []

        if is_automation_user_agent(user_agent):
            reasons.append(SuspicionReason.MALICIOUS_USER_AGENT)
        if volume_count > self._config.suspicious_volume_threshold:
            reasons.append(SuspicionReason.HIGH_ATTEMPT_VOLUME)
        if rapid_streak >= self._config.rapid_attempt_streak:
            reasons.append(SuspicionReason.RAPID_ATTEMPTS)
        if reasons and is_automated_tool(user_agent):
            reasons.append(SuspicionReason.AUTOMATED_TOOL)

        risk_score = sum(RULE_WEIGHTS[reason] for reason in reasons)
        return SuspicionResult(
            is_suspicious=risk_score > 0,
            risk_score=risk_score,
            reasons=reasons,
            is_high_risk=risk_score >= self._config.suspicious_activity_threshold,
        )
