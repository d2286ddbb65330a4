"""Fingerprint and duplicate checks for manifest entries."""

from typing import Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .. import fingerprint as fp
from ..errors import DuplicateCertificateError, FingerprintMismatch
from .model import Certificate, Fingerprint


def der_bytes(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def validate_fingerprint_with_algorithm(cert: x509.Certificate, expected: str, alg: str) -> None:
    """
    Check cert against a single expected fingerprint.

    The expected value is accepted in any case, with or without
    separators.

    Raises:
        FingerprintMismatch: If the digests differ
    """
    actual = fp.new(der_bytes(cert), alg)
    wanted = fp.format_fingerprint(expected)
    if actual != wanted:
        raise FingerprintMismatch(wanted, actual, alg)


def validate_fingerprint(cert: x509.Certificate, expected: Fingerprint,
                         all_algorithms: bool = False) -> None:
    """
    Check cert against the most secure fingerprint of a manifest entry.

    With all_algorithms set, every fingerprint present must match.
    """
    if all_algorithms:
        for alg, value in expected.items():
            validate_fingerprint_with_algorithm(cert, value, alg)
        return
    value, alg = expected.value()
    validate_fingerprint_with_algorithm(cert, value, alg)


def contains_certificate(certs: Sequence[Certificate], cert: Certificate) -> bool:
    """True if any entry of certs shares a name, location or fingerprint with cert."""
    return any(existing.equal(cert) for existing in certs)


def check_certificate(certs: Sequence[Certificate], uri: str, cert: x509.Certificate) -> None:
    """
    Reject a downloaded certificate that is already listed.

    Raises:
        DuplicateCertificateError: On a matching source location or
                                   fingerprint
    """
    for existing in certs:
        if existing.source_location == uri:
            raise DuplicateCertificateError("uri")
    for existing in certs:
        try:
            validate_fingerprint(cert, existing.fingerprint)
        except FingerprintMismatch:
            continue
        raise DuplicateCertificateError("fingerprint", existing.name)

