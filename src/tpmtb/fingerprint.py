"""
Certificate fingerprint primitives.

A fingerprint is the hash of a certificate's DER encoding rendered in
canonical form: uppercase hex pairs joined by colons (``AA:BB:...``).
"""

import hashlib
import re
from typing import Tuple

SHA1 = "sha1"
SHA256 = "sha256"
SHA384 = "sha384"
SHA512 = "sha512"

# Ordered from most to least secure
ALGORITHMS = (SHA512, SHA384, SHA256, SHA1)

_DIGEST_SIZES = {
    SHA1: 20,
    SHA256: 32,
    SHA384: 48,
    SHA512: 64,
}

_CANONICAL_PART = re.compile(r"^[0-9A-F]{2}$")


def _normalize_algorithm(alg: str) -> str:
    normalized = alg.strip().lower().replace("-", "")
    if normalized not in _DIGEST_SIZES:
        raise ValueError(
            f"unsupported hash algorithm '{alg}', must be one of: sha1, sha256, sha384, sha512"
        )
    return normalized


def new(data: bytes, alg: str) -> str:
    """Hash data with alg and return the canonical fingerprint."""
    digest = hashlib.new(_normalize_algorithm(alg), data).hexdigest()
    return format_fingerprint(digest)


def format_fingerprint(value: str) -> str:
    """
    Reformat a fingerprint into canonical form.

    Colons and spaces are dropped, letters are uppercased and the result
    is re-paired. An empty input stays empty.
    """
    if not value:
        return value
    cleaned = value.replace(":", "").replace(" ", "").upper()
    if not cleaned:
        return value
    return ":".join(cleaned[i:i + 2] for i in range(0, len(cleaned), 2))


def is_canonical(value: str) -> bool:
    """True if value is uppercase hex pairs joined by ':'."""
    if not value:
        return False
    return all(_CANONICAL_PART.match(part) for part in value.split(":"))


def parse(value: str) -> Tuple[str, str]:
    """
    Parse an ``ALG:HEX`` fingerprint.

    Returns:
        Tuple of (lowercase algorithm name, canonical hex)

    Raises:
        ValueError: If the input has no algorithm prefix, uses an unknown
                    algorithm or the hex part has the wrong length.
    """
    parts = value.strip().split(":", 1)
    if len(parts) < 2:
        raise ValueError("fingerprint must be in format HASH_ALG:HASH")
    alg = _normalize_algorithm(parts[0])
    hex_value = format_fingerprint(parts[1])
    if not is_canonical(hex_value):
        raise ValueError(f"invalid hex fingerprint '{parts[1]}'")
    if len(hex_value.split(":")) != _DIGEST_SIZES[alg]:
        raise ValueError(
            f"{alg} fingerprint must be {_DIGEST_SIZES[alg]} bytes long"
        )
    return alg, hex_value


def digest_size(alg: str) -> int:
    """Size in bytes of a digest produced by alg."""
    return _DIGEST_SIZES[_normalize_algorithm(alg)]
