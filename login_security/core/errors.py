"""Error taxonomy for the login security core.

None of these are ever shown to end users. The login endpoint translates
lock/block/captcha states into its own generic responses.
"""


class LoginSecurityError(Exception):
    """Base class for login security errors."""


class TransientStoreError(LoginSecurityError):
    """Backing store unreachable or timed out. Recovered locally."""

    def __init__(self, operation: str, key: str | None = None, cause: BaseException | None = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f"{operation} failed"
        if key:
            detail += f" for {key}"
        if cause is not None:
            detail += f": {type(cause).__name__}"
        super().__init__(detail)


class ConfigurationError(LoginSecurityError):
    """A security threshold is out of its valid range. Fatal at startup."""


class MalformedInputError(LoginSecurityError, ValueError):
    """Empty or invalid identifier / IP address."""
