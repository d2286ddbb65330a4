"""
Deterministic PEM bundle generation.

Each manifest certificate is fetched, checked against its most secure
fingerprint and rendered as a metadata block followed by its PEM
encoding. Blocks are emitted in manifest order whatever the number of
workers, so identical inputs always produce identical bytes.
"""

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests
from cryptography import x509

from .. import concurrency
from ..errors import CancelledOrTimedOut, TrustBundleError
from ..manifest.checks import validate_fingerprint
from ..manifest.model import Certificate, Config, Vendor, load_config_with_dynamic_uri_resolution
from ..source import DEFAULT_TIMEOUT, fetch_certificate
from . import certinfo
from .metadata import BundleType, validate_commit, validate_date

logger = logging.getLogger(__name__)

_TOOL_LINE = "## This file has been auto-generated by tpmtb (TPM Trust Bundle)"


def build_bundle_header(output_path: str, date: str, commit: str,
                        bundle_type: BundleType = BundleType.ROOT) -> str:
    """Render the global ``##`` header block."""
    filename = os.path.basename(output_path) if output_path else bundle_type.default_filename
    lines = ["##", f"## {filename}", "##"]
    if date:
        lines.append(f"## Date: {date}")
    if commit:
        lines.append(f"## Commit: {commit}")
    lines.extend([
        "##",
        _TOOL_LINE,
        f"## and contains a list of verified {bundle_type.description}.",
        "##",
        "",
    ])
    return "\n".join(lines) + "\n"


def build_certificate_header(cert: x509.Certificate, name: str, vendor_id: str) -> str:
    """Render the ``#`` metadata block placed above a certificate."""
    lines = [
        "#",
        f"# Certificate: {name}",
        f"# Owner: {vendor_id}",
        "#",
        f"# Issuer: {certinfo.issuer(cert)}",
        f"# Serial Number: {certinfo.format_serial(cert.serial_number)}",
        f"# Subject: {certinfo.subject(cert)}",
        f"# Not Valid Before: {certinfo.not_before(cert)}",
        f"# Not Valid After : {certinfo.not_after(cert)}",
        f"# Fingerprint (SHA-256): {certinfo.sha256_fingerprint(cert)}",
        f"# Fingerprint (SHA1): {certinfo.sha1_fingerprint(cert)}",
    ]
    return "\n".join(lines) + "\n"


@dataclass
class _CertResult:
    block: str = ""
    error: Optional[Exception] = None
    skipped: bool = False


class Generator:
    """Builds bundles from a validated manifest."""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.session = session
        self.timeout = timeout

    def process_certificate(self, cert: Certificate, vendor_id: str,
                            cancel: Optional[threading.Event] = None) -> str:
        """Fetch, check and render a single manifest certificate."""
        x509_cert = fetch_certificate(
            cert.source_location, timeout=self.timeout, session=self.session, cancel=cancel
        )
        validate_fingerprint(x509_cert, cert.fingerprint)
        return build_certificate_header(x509_cert, cert.name, vendor_id) + certinfo.encode_pem(x509_cert)

    def generate(self, cfg: Config, workers: int = 1, output_path: str = "",
                 date: str = "", commit: str = "",
                 bundle_type: BundleType = BundleType.ROOT) -> str:
        """
        Generate the bundle text for cfg.

        The first failure stops the remaining downloads.

        Raises:
            TrustBundleError: For the first failing certificate in manifest order
        """
        items: List[Tuple[Vendor, Certificate]] = [
            (vendor, cert) for vendor in cfg.vendors for cert in vendor.certificates
        ]
        abort = threading.Event()

        def work(_index: int, item: Tuple[Vendor, Certificate]) -> _CertResult:
            vendor, cert = item
            if abort.is_set():
                return _CertResult(skipped=True)
            try:
                block = self.process_certificate(cert, vendor.id, cancel=abort)
            except CancelledOrTimedOut as e:
                if abort.is_set():
                    return _CertResult(skipped=True)
                abort.set()
                return _CertResult(error=e)
            except TrustBundleError as e:
                abort.set()
                return _CertResult(error=e)
            return _CertResult(block=block)

        logger.debug("Generating bundle from %d certificates", len(items))
        results = concurrency.execute(workers, items, work)

        for (vendor, cert), result in zip(items, results):
            if result.error is not None:
                raise TrustBundleError(
                    f"failed to process certificate '{cert.name}' from vendor "
                    f"'{vendor.name}': {result.error}"
                ) from result.error

        blocks = [result.block for result in results]
        return build_bundle_header(output_path, date, commit, bundle_type) + "\n".join(blocks)


# =============================================================================
# Options-driven entry point
# =============================================================================

@dataclass
class GenerateOptions:
    """Options of a bundle generation run."""
    config_path: str = ".tpm-roots.yaml"
    output_path: str = ""
    workers: int = 0
    date: str = ""
    commit: str = ""
    bundle_type: BundleType = BundleType.ROOT
    timeout: float = DEFAULT_TIMEOUT

    def check_and_set_defaults(self) -> None:
        if not self.date:
            self.date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        try:
            validate_date(self.date)
            validate_commit(self.commit)
        except ValueError as e:
            raise TrustBundleError(f"invalid generate options: {e}") from e
        if self.workers < 0 or self.workers > concurrency.MAX_WORKERS:
            raise TrustBundleError(
                f"workers must be between 0 and {concurrency.MAX_WORKERS}, got {self.workers}"
            )
        self.bundle_type = BundleType(self.bundle_type)
        if not self.output_path:
            self.output_path = self.bundle_type.default_filename


def generate_bundle(opts: GenerateOptions, session: Optional[requests.Session] = None) -> str:
    """
    Load the manifest, generate the bundle and write it to opts.output_path.

    Returns:
        The bundle text
    """
    opts.check_and_set_defaults()
    cfg = load_config_with_dynamic_uri_resolution(opts.config_path)
    logger.info("Generating %s bundle from %s (%d certificates)",
                opts.bundle_type.value, opts.config_path, cfg.total_certificates())
    text = Generator(session=session, timeout=opts.timeout).generate(
        cfg,
        workers=opts.workers,
        output_path=opts.output_path,
        date=opts.date,
        commit=opts.commit,
        bundle_type=opts.bundle_type,
    )
    try:
        with open(opts.output_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
    except OSError as e:
        raise TrustBundleError(f"failed to write bundle to {opts.output_path}: {e}") from e
    return text
