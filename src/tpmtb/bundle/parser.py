"""Parsing of generated bundles back into certificates."""

from dataclasses import dataclass
from typing import Dict, List

from cryptography import x509

from ..errors import BundleParseError, InvalidVendorID
from ..vendors import validate_vendor_id
from .metadata import (
    CERT_METADATA_PREFIX,
    GLOBAL_METADATA_PREFIX,
    KEY_CERTIFICATE,
    KEY_OWNER,
    PEM_BEGIN_MARKER,
    PEM_END_MARKER,
)


@dataclass
class BundleEntry:
    """A certificate of a bundle with the metadata naming it."""
    name: str
    owner: str
    certificate: x509.Certificate


def _cert_key_value(line: str, key: str) -> str:
    return line[len(f"{CERT_METADATA_PREFIX} {key}:"):].strip()


def parse_entries(data: bytes) -> List[BundleEntry]:
    """
    Decode every certificate of a bundle in file order.

    Raises:
        BundleParseError: On undecodable PEM, certificates without an
                          owner, unknown vendor IDs or an empty bundle
    """
    entries: List[BundleEntry] = []
    owner = ""
    name = ""
    pem_lines: List[str] = []
    in_pem = False

    for number, line in enumerate(data.decode("utf-8", errors="replace").split("\n"), start=1):
        if line.startswith(GLOBAL_METADATA_PREFIX):
            continue
        if line.startswith(f"{CERT_METADATA_PREFIX} {KEY_OWNER}: "):
            owner = _cert_key_value(line, KEY_OWNER)
            try:
                validate_vendor_id(owner)
            except InvalidVendorID as e:
                raise BundleParseError(
                    f"invalid vendor ID in certificate metadata: {e}", line=number
                ) from e
            continue
        if line.startswith(f"{CERT_METADATA_PREFIX} {KEY_CERTIFICATE}: "):
            name = _cert_key_value(line, KEY_CERTIFICATE)
            continue
        if line.startswith(CERT_METADATA_PREFIX):
            continue
        if line.startswith(PEM_BEGIN_MARKER):
            in_pem = True
            pem_lines = [line]
            continue
        if not in_pem:
            continue
        pem_lines.append(line)
        if not line.startswith(PEM_END_MARKER):
            continue
        in_pem = False
        try:
            cert = x509.load_pem_x509_certificate(("\n".join(pem_lines) + "\n").encode("utf-8"))
        except ValueError as e:
            raise BundleParseError(f"failed to parse certificate: {e}", line=number) from e
        if not owner:
            raise BundleParseError("certificate found without owner metadata", line=number)
        entries.append(BundleEntry(name=name, owner=owner, certificate=cert))

    if not entries:
        raise BundleParseError("no certificates found in bundle")
    return entries


def parse_bundle(data: bytes) -> Dict[str, List[x509.Certificate]]:
    """Map each vendor ID to its certificates, in bundle order."""
    catalog: Dict[str, List[x509.Certificate]] = {}
    for entry in parse_entries(data):
        catalog.setdefault(entry.owner, []).append(entry.certificate)
    return catalog
