"""
Structural and consistency validation of bundle files.

The validator scans a bundle line by line. The global header must carry
a valid Date and Commit; every certificate block must carry the nine
metadata keys, and their values must match what is recomputed from the
PEM certificate that follows.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cryptography import x509

from .. import fingerprint as fp
from ..errors import BundleMetadataMismatch, BundleParseError
from ..vendors import is_valid_vendor_id
from . import certinfo
from .metadata import (
    CERT_METADATA_KEYS,
    CERT_METADATA_PREFIX,
    GLOBAL_METADATA_PREFIX,
    KEY_COMMIT,
    KEY_DATE,
    KEY_FINGERPRINT_SHA1,
    KEY_FINGERPRINT_SHA256,
    KEY_NOT_VALID_AFTER,
    KEY_OWNER,
    PEM_BEGIN_MARKER,
    PEM_END_MARKER,
    global_key_prefix,
    validate_commit,
    validate_date,
)

DEFAULT_MAX_ERRORS = 10


@dataclass
class ValidationError:
    """A problem found in a bundle, with the exception describing it."""
    line: int
    message: str
    error: BundleParseError

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


@dataclass
class _CertBlock:
    start_line: int
    values: Dict[str, str] = field(default_factory=dict)


class BundleValidator:
    """Collects up to `max_errors` problems of a bundle."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS):
        self.max_errors = max_errors
        self.errors: List[ValidationError] = []

    def _add(self, line: int, message: str) -> None:
        self._record(BundleParseError(message, line))

    def _record(self, error: BundleParseError) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(ValidationError(line=error.line, message=str(error), error=error))

    def validate(self, data: bytes) -> List[ValidationError]:
        self.errors = []
        lines = data.decode("utf-8", errors="replace").split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        in_global = False
        found_date = found_commit = False
        block: Optional[_CertBlock] = None
        in_metadata = False
        in_pem = False
        pem_lines: List[str] = []
        pem_start = 0
        number = 0

        for number, line in enumerate(lines, start=1):
            if number == 1:
                if line != GLOBAL_METADATA_PREFIX:
                    self._add(number, f"bundle must start with global metadata block marker '{GLOBAL_METADATA_PREFIX}'")
                in_global = True
                continue

            if in_global:
                if line.startswith(GLOBAL_METADATA_PREFIX):
                    if line.startswith(global_key_prefix(KEY_DATE)):
                        found_date = True
                        try:
                            validate_date(line[len(global_key_prefix(KEY_DATE)):].strip())
                        except ValueError as e:
                            self._add(number, f"invalid date format: {e}")
                    if line.startswith(global_key_prefix(KEY_COMMIT)):
                        found_commit = True
                        try:
                            validate_commit(line[len(global_key_prefix(KEY_COMMIT)):].strip())
                        except ValueError as e:
                            self._add(number, f"invalid commit hash: {e}")
                    continue
                in_global = False
                self._check_global_fields(number, found_date, found_commit)

            if line == "" and not in_pem:
                continue

            if line == CERT_METADATA_PREFIX and not in_metadata and not in_pem:
                in_metadata = True
                block = _CertBlock(start_line=number)
                continue

            if in_metadata and line.startswith(CERT_METADATA_PREFIX):
                if line != CERT_METADATA_PREFIX:
                    self._parse_metadata_line(block, line, number)
                continue

            if line.startswith(PEM_BEGIN_MARKER):
                if block is None:
                    self._add(number, "certificate found without metadata block")
                    continue
                in_metadata = False
                in_pem = True
                pem_start = number
                pem_lines = [line]
                self._check_required_keys(block)
                continue

            if in_pem:
                pem_lines.append(line)
                if line.startswith(PEM_END_MARKER):
                    in_pem = False
                    cert = self._decode_pem(pem_lines, pem_start)
                    if cert is not None:
                        self._check_consistency(cert, block)
                    block = None

        if in_global:
            self._check_global_fields(number, found_date, found_commit)
        return self.errors

    # -------------------------------------------------------------------------
    # Header checks
    # -------------------------------------------------------------------------

    def _check_global_fields(self, line: int, found_date: bool, found_commit: bool) -> None:
        if not found_date:
            self._add(line, f"global metadata missing required '{KEY_DATE}' field")
        if not found_commit:
            self._add(line, f"global metadata missing required '{KEY_COMMIT}' field")

    # -------------------------------------------------------------------------
    # Certificate block checks
    # -------------------------------------------------------------------------

    def _parse_metadata_line(self, block: _CertBlock, line: str, number: int) -> None:
        body = line[len(CERT_METADATA_PREFIX) + 1:]
        if " : " in body:
            key, value = body.split(" : ", 1)
            key = key.strip()
            if key != KEY_NOT_VALID_AFTER:
                self._add(number, f"invalid metadata format: unexpected space before colon in '{body}'")
                return
        else:
            parts = body.split(": ", 1)
            if len(parts) != 2:
                self._add(number, f"invalid metadata format: expected 'Key: Value', got '{body}'")
                return
            key, value = parts

        if key not in CERT_METADATA_KEYS:
            return
        block.values[key] = value

        if key == KEY_OWNER and not is_valid_vendor_id(value):
            self._add(
                number,
                f"invalid vendor ID: invalid vendor ID '{value}': not found in TCG TPM Vendor ID Registry",
            )
        elif key == KEY_FINGERPRINT_SHA256:
            self._check_fingerprint_format(value, 32, "SHA-256", number)
        elif key == KEY_FINGERPRINT_SHA1:
            self._check_fingerprint_format(value, 20, "SHA1", number)

    def _check_fingerprint_format(self, value: str, size: int, label: str, number: int) -> None:
        parts = value.split(":")
        if len(parts) != size:
            self._add(number, f"invalid {label} fingerprint: expected {size} colon-separated parts, got {len(parts)}")
        elif not fp.is_canonical(value):
            self._add(number, f"invalid {label} fingerprint: expected uppercase hexadecimal with colon separators")

    def _check_required_keys(self, block: _CertBlock) -> None:
        for key in CERT_METADATA_KEYS:
            if not block.values.get(key):
                self._add(block.start_line, f"certificate metadata missing required '{key}' field")

    def _decode_pem(self, pem_lines: List[str], pem_start: int) -> Optional[x509.Certificate]:
        pem = ("\n".join(pem_lines) + "\n").encode("utf-8")
        try:
            return x509.load_pem_x509_certificate(pem)
        except ValueError as e:
            self._add(pem_start, f"failed to parse certificate: {e}")
            return None

    def _check_consistency(self, cert: x509.Certificate, block: _CertBlock) -> None:
        values = block.values
        expected = [
            ("subject", "Subject", certinfo.subject(cert)),
            ("issuer", "Issuer", certinfo.issuer(cert)),
            ("SHA-256 fingerprint", KEY_FINGERPRINT_SHA256, certinfo.sha256_fingerprint(cert)),
            ("SHA1 fingerprint", KEY_FINGERPRINT_SHA1, certinfo.sha1_fingerprint(cert)),
            ("not valid before", "Not Valid Before", certinfo.not_before(cert)),
            ("not valid after", KEY_NOT_VALID_AFTER, certinfo.not_after(cert)),
            ("serial number", "Serial Number", certinfo.format_serial(cert.serial_number)),
        ]
        for label, key, actual in expected:
            recorded = values.get(key, "")
            # Fingerprints absent from the block are reported as missing keys
            if key in (KEY_FINGERPRINT_SHA256, KEY_FINGERPRINT_SHA1) and not recorded:
                continue
            if recorded != actual:
                self._record(BundleMetadataMismatch(label, recorded, actual, block.start_line))


def validate_bundle(data: bytes, max_errors: int = DEFAULT_MAX_ERRORS) -> List[ValidationError]:
    """Validate bundle bytes and return the problems found."""
    return BundleValidator(max_errors=max_errors).validate(data)


def check_bundle(data: bytes) -> None:
    """Raise the first problem of a bundle, if any."""
    errors = validate_bundle(data, max_errors=1)
    if errors:
        raise errors[0].error
