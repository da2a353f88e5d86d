"""
SOS GUIDs

Content addresses are strings of the form ``<ALGORITHM>_<BASE>_<DIGEST>``,
for example ``SHA256_16_0000a025d7d3...``. Only base 16 is produced.
"""

from __future__ import annotations

import hashlib
import os
import re
from typing import Optional

from sosnode.exceptions import GUIDError

# Type alias for clarity
GUID = str

# Supported algorithms and their hex digest lengths
GUID_ALGORITHMS = {
    "sha1": 40,
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}

DEFAULT_GUID_ALGORITHM = "sha256"
GUID_BASE = 16

_GUID_PATTERN = re.compile(r"^(?P<algorithm>[A-Z0-9]+)_(?P<base>\d+)_(?P<digest>[0-9a-f]+)$")

# Random GUIDs hash this many bytes of OS entropy
_RANDOM_BYTES = 64


def validate_algorithm(algorithm: str) -> str:
    """Normalise and return a hash algorithm name, or raise GUIDError."""
    name = algorithm.lower()
    if name not in GUID_ALGORITHMS:
        raise GUIDError(
            f"Unsupported GUID algorithm '{algorithm}'. Must be one of: {', '.join(sorted(GUID_ALGORITHMS))}"
        )
    return name


def guid_for(data: bytes, algorithm: str = DEFAULT_GUID_ALGORITHM) -> GUID:
    """Return the content address of ``data``."""
    name = validate_algorithm(algorithm)
    digest = hashlib.new(name, data).hexdigest()
    return f"{name.upper()}_{GUID_BASE}_{digest}"


def generate_random_guid(algorithm: str = DEFAULT_GUID_ALGORITHM) -> GUID:
    """Generate a fresh GUID by hashing random bytes."""
    return guid_for(os.urandom(_RANDOM_BYTES), algorithm)


def recreate_guid(value: str) -> GUID:
    """
    Recreate a GUID from a caller-supplied string.

    The value is returned verbatim. It is never re-hashed or re-encoded.
    """
    if not value or not value.strip():
        raise GUIDError("GUID must not be empty")
    return value


def guid_algorithm(value: str) -> Optional[str]:
    """Return the lower-case algorithm of a well-formed GUID, else None."""
    match = _GUID_PATTERN.match(value)
    if not match:
        return None
    return match.group("algorithm").lower()


def is_valid_guid(value: str, algorithm: Optional[str] = None) -> bool:
    """
    Check that ``value`` is a well-formed GUID.

    Args:
        value: GUID string.
        algorithm: If given, the GUID must also use this algorithm.
    """
    match = _GUID_PATTERN.match(value)
    if not match:
        return False

    name = match.group("algorithm").lower()
    if name not in GUID_ALGORITHMS:
        return False
    if algorithm is not None and name != algorithm.lower():
        return False
    if int(match.group("base")) != GUID_BASE:
        return False

    return len(match.group("digest")) == GUID_ALGORITHMS[name]
