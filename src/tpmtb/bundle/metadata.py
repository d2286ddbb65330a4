"""
Bundle header metadata and shared bundle constants.

A bundle starts with a global block of ``##`` lines carrying the
logical filename, the release date and the source commit. Each
certificate is preceded by a ``#`` block with a fixed set of keys.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ..errors import BundleParseError

ROOT_BUNDLE_FILENAME = "tpm-ca-certificates.pem"
INTERMEDIATE_BUNDLE_FILENAME = "tpm-intermediate-ca-certificates.pem"

GLOBAL_METADATA_PREFIX = "##"
CERT_METADATA_PREFIX = "#"
PEM_BEGIN_MARKER = "-----BEGIN CERTIFICATE-----"
PEM_END_MARKER = "-----END CERTIFICATE-----"

KEY_DATE = "Date"
KEY_COMMIT = "Commit"

KEY_CERTIFICATE = "Certificate"
KEY_OWNER = "Owner"
KEY_ISSUER = "Issuer"
KEY_SERIAL_NUMBER = "Serial Number"
KEY_SUBJECT = "Subject"
KEY_NOT_VALID_BEFORE = "Not Valid Before"
KEY_NOT_VALID_AFTER = "Not Valid After"
KEY_FINGERPRINT_SHA256 = "Fingerprint (SHA-256)"
KEY_FINGERPRINT_SHA1 = "Fingerprint (SHA1)"

# Emission order of the per-certificate metadata block
CERT_METADATA_KEYS = (
    KEY_CERTIFICATE,
    KEY_OWNER,
    KEY_ISSUER,
    KEY_SERIAL_NUMBER,
    KEY_SUBJECT,
    KEY_NOT_VALID_BEFORE,
    KEY_NOT_VALID_AFTER,
    KEY_FINGERPRINT_SHA256,
    KEY_FINGERPRINT_SHA1,
)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")


class BundleType(str, Enum):
    """Kind of certificates a bundle carries."""
    ROOT = "root"
    INTERMEDIATE = "intermediate"

    @property
    def default_filename(self) -> str:
        if self is BundleType.INTERMEDIATE:
            return INTERMEDIATE_BUNDLE_FILENAME
        return ROOT_BUNDLE_FILENAME

    @property
    def description(self) -> str:
        if self is BundleType.INTERMEDIATE:
            return "TPM Intermediate Endorsement Certificates"
        return "TPM Root Endorsement Certificates"


@dataclass
class BundleMetadata:
    """Global metadata of a bundle."""
    date: str
    commit: str
    type: BundleType = BundleType.ROOT
    filename: str = ""


def validate_date(date: str) -> None:
    """Raise ValueError unless date is a real YYYY-MM-DD calendar date."""
    if not _DATE_RE.match(date):
        raise ValueError(f"date must be in YYYY-MM-DD format, got: {date}")
    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError as e:
        raise ValueError(f"invalid date: {e}") from e


def validate_commit(commit: str) -> None:
    """Raise ValueError unless commit is 40 lowercase hex characters."""
    if len(commit) != 40:
        raise ValueError(
            f"commit must be a 40-character hex string, got {len(commit)} characters: {commit}"
        )
    if not _COMMIT_RE.match(commit):
        raise ValueError(f"commit must be a 40-character hex string, got: {commit}")


def global_key_prefix(key: str) -> str:
    return f"{GLOBAL_METADATA_PREFIX} {key}: "


def parse_metadata(data: bytes) -> BundleMetadata:
    """
    Read the global header of a bundle.

    Scanning stops at the first line that does not start with ``##``.

    Raises:
        BundleParseError: If Date or Commit is missing
    """
    text = data.decode("utf-8", errors="replace")
    date = commit = filename = ""
    bundle_type = BundleType.ROOT
    for index, line in enumerate(text.split("\n")):
        if not line.startswith(GLOBAL_METADATA_PREFIX):
            break
        if line.startswith(global_key_prefix(KEY_DATE)):
            date = line[len(global_key_prefix(KEY_DATE)):].strip()
        elif line.startswith(global_key_prefix(KEY_COMMIT)):
            commit = line[len(global_key_prefix(KEY_COMMIT)):].strip()
        elif index == 1:
            filename = line[len(GLOBAL_METADATA_PREFIX):].strip()
        if BundleType.INTERMEDIATE.description in line:
            bundle_type = BundleType.INTERMEDIATE
    if not date:
        raise BundleParseError("bundle does not contain required 'Date' metadata in header")
    if not commit:
        raise BundleParseError("bundle does not contain required 'Commit' metadata in header")
    return BundleMetadata(date=date, commit=commit, type=bundle_type, filename=filename)
