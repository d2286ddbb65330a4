"""
Editing operations on a manifest file.

Every operation loads the manifest, changes it in memory, saves it and
runs the formatter over the result so the file stays canonical.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import requests
from cryptography import x509
from cryptography.x509.oid import NameOID

from .. import concurrency
from .. import fingerprint as fp
from ..errors import TrustBundleError
from ..source import DEFAULT_TIMEOUT, fetch_certificate
from ..vendors import validate_vendor_id
from .checks import check_certificate, der_bytes, validate_fingerprint_with_algorithm
from .formatter import format_file
from .model import (
    Certificate,
    Config,
    Fingerprint,
    Vendor,
    load_config_with_dynamic_uri_resolution,
    save_config,
)

logger = logging.getLogger(__name__)


@dataclass
class AddFailure:
    uri: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.uri} - {self.error}"


@dataclass
class AddResult:
    """Outcome of adding one or more certificates to a vendor."""
    added: List[Certificate] = field(default_factory=list)
    failures: List[AddFailure] = field(default_factory=list)


@dataclass
class _Download:
    uri: str
    expected: str = ""
    certificate: Optional[x509.Certificate] = None
    fingerprint: str = ""
    error: Optional[Exception] = None


# =============================================================================
# Input validation
# =============================================================================

def parse_uris(uris: Sequence[str]) -> List[str]:
    """
    Keep the non-empty URIs and check their schemes.

    Raises:
        TrustBundleError: If no URI is left or one uses a scheme other
                          than https or file
    """
    result = [uri.strip() for uri in uris if uri and uri.strip()]
    if not result:
        raise TrustBundleError("no valid URIs provided")
    for uri in result:
        try:
            scheme = urlsplit(uri).scheme.lower()
        except ValueError as e:
            raise TrustBundleError(f"invalid URI: {uri}") from e
        if scheme == "http":
            raise TrustBundleError(f"insecure HTTP URL not allowed: {uri} (use HTTPS instead)")
        if scheme not in ("https", "file"):
            raise TrustBundleError(f"invalid URI scheme: {uri} (must use https or file)")
    return result


def parse_fingerprints(fingerprints: Sequence[str]) -> Tuple[List[Tuple[str, str]], str]:
    """
    Parse ``ALG:HEX`` fingerprints that must all share one algorithm.

    Returns:
        Tuple of ([(algorithm, canonical hex)], algorithm). The
        algorithm is empty when no fingerprint was given.
    """
    parsed: List[Tuple[str, str]] = []
    algorithm = ""
    for raw in fingerprints:
        if not raw or not raw.strip():
            continue
        try:
            alg, value = fp.parse(raw)
        except ValueError as e:
            raise TrustBundleError(f"invalid fingerprint format: {e}") from e
        if not algorithm:
            algorithm = alg
        elif alg != algorithm:
            raise TrustBundleError(
                f"all fingerprints must use the same hash algorithm, found '{algorithm}' and '{alg}'"
            )
        parsed.append((alg, value))
    return parsed, algorithm


def certificate_name(cert: x509.Certificate) -> str:
    """The subject common name of cert, or an empty string."""
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return ""
    return str(attributes[0].value).strip()


def insert_certificate(certs: List[Certificate], new_cert: Certificate) -> List[Certificate]:
    """Insert new_cert before the first entry whose name sorts after it, ignoring case."""
    index = len(certs)
    for i, cert in enumerate(certs):
        if new_cert.name.lower() < cert.name.lower():
            index = i
            break
    return certs[:index] + [new_cert] + certs[index:]


def _find_vendor(cfg: Config, vendor_id: str) -> Vendor:
    vendor = cfg.find_vendor(vendor_id)
    if vendor is None:
        raise TrustBundleError(f"vendor with ID '{vendor_id}' not found")
    return vendor


def _save_and_format(config_path: str, cfg: Config) -> None:
    try:
        save_config(config_path, cfg)
    except TrustBundleError as e:
        raise TrustBundleError(f"failed to save configuration: {e}") from e
    try:
        format_file(config_path, config_path)
    except TrustBundleError as e:
        raise TrustBundleError(f"failed to format configuration: {e}") from e


def _load(config_path: str) -> Config:
    try:
        return load_config_with_dynamic_uri_resolution(config_path)
    except TrustBundleError as e:
        raise TrustBundleError(f"failed to load config: {e}") from e


# =============================================================================
# Certificates
# =============================================================================

def add_certificates(config_path: str, vendor_id: str, uris: Sequence[str],
                     name: str = "", fingerprints: Sequence[str] = (),
                     hash_algorithm: str = fp.SHA256, workers: int = 0,
                     session: Optional[requests.Session] = None,
                     timeout: float = DEFAULT_TIMEOUT) -> AddResult:
    """
    Download certificates and add them to a vendor of the manifest.

    With a single URI the entry is named `name`, falling back to the
    certificate common name. With several URIs names always come from
    the common names. Given fingerprints must match the downloaded
    certificates; otherwise one is computed with hash_algorithm.

    Individual failures are reported in the result and do not prevent
    the other certificates from being added. The manifest is only
    rewritten when at least one certificate was added.

    Raises:
        TrustBundleError: On invalid input or when the manifest cannot be
                          loaded or saved
    """
    validate_vendor_id(vendor_id)
    if workers < 0 or workers > concurrency.MAX_WORKERS:
        raise TrustBundleError(
            f"concurrency value {workers} exceeds maximum allowed ({concurrency.MAX_WORKERS})"
        )

    parsed, inferred = parse_fingerprints(fingerprints)
    if inferred:
        if hash_algorithm.lower() not in (fp.SHA256, inferred):
            logger.warning("Ignoring hash algorithm '%s', using '%s' from provided fingerprint(s)",
                           hash_algorithm, inferred)
        algorithm = inferred
    else:
        algorithm = hash_algorithm.lower()
        if algorithm not in fp.ALGORITHMS:
            raise TrustBundleError(
                f"invalid hash algorithm '{hash_algorithm}', must be one of: sha1, sha256, sha384, sha512"
            )

    uri_list = parse_uris(uris)
    if parsed and len(parsed) != len(uri_list):
        raise TrustBundleError(
            f"number of fingerprints ({len(parsed)}) doesn't match number of URLs ({len(uri_list)})"
        )
    if len(uri_list) > 1 and name:
        logger.warning("Multiple URIs provided, ignoring name (names will be deduced from certificate CN)")
        name = ""

    cfg = _load(config_path)
    vendor = _find_vendor(cfg, vendor_id)

    downloads = [
        _Download(uri=uri, expected=parsed[i][1] if parsed else "")
        for i, uri in enumerate(uri_list)
    ]

    def download(_index: int, item: _Download) -> _Download:
        try:
            item.certificate = fetch_certificate(item.uri, timeout=timeout, session=session)
            if item.expected:
                validate_fingerprint_with_algorithm(item.certificate, item.expected, algorithm)
                item.fingerprint = item.expected
            else:
                item.fingerprint = fp.new(der_bytes(item.certificate), algorithm)
        except TrustBundleError as e:
            item.error = e
        return item

    result = AddResult()
    for item in concurrency.execute(workers, downloads, download):
        if item.error is not None:
            result.failures.append(AddFailure(item.uri, item.error))
            continue

        cert_name = name or certificate_name(item.certificate)
        if not cert_name:
            result.failures.append(AddFailure(
                item.uri, TrustBundleError("certificate CN is empty, please provide a name")
            ))
            continue
        if not name and len(uri_list) == 1:
            logger.warning("No name provided, using certificate CN: %s", cert_name)

        try:
            check_certificate(vendor.certificates, item.uri, item.certificate)
        except TrustBundleError as e:
            result.failures.append(AddFailure(item.uri, e))
            continue

        entry = Certificate(
            name=cert_name,
            uri=item.uri,
            fingerprint=Fingerprint.of(algorithm, item.fingerprint),
        )
        vendor.certificates = insert_certificate(vendor.certificates, entry)
        result.added.append(entry)

    if result.added:
        _save_and_format(config_path, cfg)
    logger.debug("Added %d/%d certificates to vendor %s",
                 len(result.added), len(uri_list), vendor_id)
    return result


def remove_certificate(config_path: str, vendor_id: str, name: str) -> Certificate:
    """
    Remove the certificate called `name` (case-insensitive) from a vendor.

    Returns:
        The removed entry
    """
    cfg = _load(config_path)
    vendor = _find_vendor(cfg, vendor_id)

    wanted = name.lower()
    for i, cert in enumerate(vendor.certificates):
        if cert.name.lower() == wanted:
            removed = vendor.certificates.pop(i)
            break
    else:
        raise TrustBundleError(
            f"certificate with name '{name}' not found in vendor '{vendor_id}'"
        )

    _save_and_format(config_path, cfg)
    return removed


def list_certificates(config_path: str, vendor_id: str = "") -> List[Tuple[Vendor, Certificate]]:
    """(vendor, certificate) pairs of the manifest, optionally for one vendor."""
    cfg = _load(config_path)
    if vendor_id:
        vendors = [_find_vendor(cfg, vendor_id)]
    else:
        vendors = cfg.vendors
    return [(vendor, cert) for vendor in vendors for cert in vendor.certificates]


# =============================================================================
# Vendors
# =============================================================================

def add_vendor(config_path: str, vendor_id: str, name: str) -> Vendor:
    """Add a vendor with no certificates; the formatter sorts it into place."""
    validate_vendor_id(vendor_id)
    cfg = _load(config_path)
    if cfg.find_vendor(vendor_id) is not None:
        raise TrustBundleError(f"vendor with ID '{vendor_id}' already exists")

    vendor = Vendor(id=vendor_id, name=name, certificates=[])
    cfg.vendors.append(vendor)
    _save_and_format(config_path, cfg)
    return vendor


def list_vendors(config_path: str) -> List[Vendor]:
    return _load(config_path).vendors
