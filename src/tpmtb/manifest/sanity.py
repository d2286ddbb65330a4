"""
Sanity checks of a manifest against the live certificate sources.

Every certificate is downloaded again, re-checked against all of its
fingerprints and tested for upcoming expiry. Download failures abort
the run; fingerprint and expiry findings are collected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests

from .. import concurrency
from ..errors import FetchError, FingerprintMismatch
from ..source import DEFAULT_TIMEOUT, fetch_certificate
from .checks import validate_fingerprint
from .model import Certificate, Config, Vendor

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_DAYS = 365


@dataclass
class ValidationError:
    """A certificate whose downloaded bytes do not match the manifest."""
    vendor_id: str
    vendor_name: str
    cert_name: str
    error: Exception

    def __str__(self) -> str:
        return (
            f"  Vendor: {self.vendor_name} ({self.vendor_id})\n"
            f"  Certificate: {self.cert_name}\n"
            f"  Error: {self.error}\n"
        )


@dataclass
class ExpirationWarning:
    """A certificate that has expired or expires within the threshold."""
    vendor_id: str
    vendor_name: str
    cert_name: str
    days_left: int
    is_expired: bool
    expiry_date: datetime

    @property
    def status(self) -> str:
        day = self.expiry_date.strftime("%Y-%m-%d")
        if self.is_expired:
            return f"Expired on {day}"
        return f"Expires in {self.days_left} days ({day})"

    def __str__(self) -> str:
        return (
            f"  Vendor: {self.vendor_name} ({self.vendor_id})\n"
            f"  Certificate: {self.cert_name}\n"
            f"  Status: {self.status}\n"
        )


@dataclass
class Result:
    validation_errors: List[ValidationError] = field(default_factory=list)
    expiration_warnings: List[ExpirationWarning] = field(default_factory=list)

    def has_issues(self) -> bool:
        return bool(self.validation_errors or self.expiration_warnings)


@dataclass
class _Check:
    validation_error: Optional[ValidationError] = None
    expiration_warning: Optional[ExpirationWarning] = None
    error: Optional[Exception] = None


class Checker:
    """Runs the sanity checks with a bounded worker pool."""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT, now=None):
        self.session = session
        self.timeout = timeout
        self._now = now or (lambda: datetime.now(timezone.utc))

    def check(self, cfg: Config, workers: int = 0,
              threshold_days: int = DEFAULT_THRESHOLD_DAYS) -> Result:
        """
        Check every certificate of cfg.

        Raises:
            FetchError: If any certificate cannot be downloaded
        """
        items: List[Tuple[Vendor, Certificate]] = [
            (vendor, cert) for vendor in cfg.vendors for cert in vendor.certificates
        ]

        def work(_index: int, item: Tuple[Vendor, Certificate]) -> _Check:
            vendor, cert = item
            try:
                return self.check_certificate(cert, vendor, threshold_days)
            except FetchError as e:
                return _Check(error=e)

        result = Result()
        for check in concurrency.execute(workers, items, work):
            if check.error is not None:
                raise check.error
            if check.validation_error is not None:
                result.validation_errors.append(check.validation_error)
            if check.expiration_warning is not None:
                result.expiration_warnings.append(check.expiration_warning)
        return result

    def check_certificate(self, cert: Certificate, vendor: Vendor, threshold_days: int) -> _Check:
        try:
            x509_cert = fetch_certificate(
                cert.source_location, timeout=self.timeout, session=self.session
            )
        except FetchError as e:
            raise FetchError(
                f"failed to download certificate '{cert.name}' from vendor '{vendor.name}': {e}",
                url=e.url,
                status=e.status,
            ) from e

        check = _Check()
        try:
            validate_fingerprint(x509_cert, cert.fingerprint, all_algorithms=True)
        except FingerprintMismatch as e:
            logger.debug("Fingerprint mismatch for %s/%s: %s", vendor.id, cert.name, e)
            check.validation_error = ValidationError(vendor.id, vendor.name, cert.name, e)

        now = self._now()
        expiry = x509_cert.not_valid_after_utc
        days_left = int((expiry - now).total_seconds() / 86400)
        if days_left < threshold_days:
            check.expiration_warning = ExpirationWarning(
                vendor_id=vendor.id,
                vendor_name=vendor.name,
                cert_name=cert.name,
                days_left=days_left,
                is_expired=expiry < now,
                expiry_date=expiry,
            )
        return check
