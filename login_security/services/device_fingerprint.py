"""Header-based device fingerprint.

Coarse correlation only. The inputs are client-controlled and unsalted, so a
fingerprint is never proof of device identity.
"""

import hashlib
from collections.abc import Mapping

FINGERPRINT_HEADERS = ("user-agent", "accept-language", "accept-encoding", "accept")
FINGERPRINT_LENGTH = 32
_DELIMITER = "|"


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette Headers already are not.
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    return value or ""


def generate_device_fingerprint(headers: Mapping[str, str]) -> str:
    """Hash the canonical header subset into a 32-char hex identifier."""
    material = _DELIMITER.join(_header(headers, name) for name in FINGERPRINT_HEADERS)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
