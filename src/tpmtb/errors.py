"""
Error types shared across the trust bundle toolchain.

Every failure surfaced by the public API is an instance of
TrustBundleError. Callers that only care about the outcome of a
verification should catch BundleVerificationFailed.
"""

from typing import List, Optional


class TrustBundleError(Exception):
    """Base class for all tpmtb errors."""
    pass


# =============================================================================
# Manifest errors
# =============================================================================

class ManifestParseError(TrustBundleError):
    """Raised when a manifest file cannot be read or decoded as YAML."""

    def __init__(self, message: str, path: str = "", line: int = 0):
        self.path = path
        self.line = line
        super().__init__(message)


class ManifestInvariantError(TrustBundleError):
    """Raised when a decoded manifest breaks one of its structural rules."""

    def __init__(self, message: str, path: str = "", line: int = 0):
        self.path = path
        self.line = line
        super().__init__(message)


class InvalidVendorID(ManifestInvariantError):
    """Raised for vendor IDs that are not part of the TCG registry."""

    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(
            f"invalid vendor ID '{vendor_id}': not found in TCG TPM Vendor ID Registry"
        )


class DuplicateCertificateError(ManifestInvariantError):
    """Raised when a certificate already exists in a vendor's list."""

    def __init__(self, kind: str, existing_name: str = ""):
        self.kind = kind  # "uri" or "fingerprint"
        self.existing_name = existing_name
        if kind == "uri":
            message = "certificate already exists (duplicate URI)"
        else:
            message = (
                "certificate already exists (duplicate fingerprint, "
                f"matches '{existing_name}')"
            )
        super().__init__(message)


# =============================================================================
# Fetch errors
# =============================================================================

class FetchError(TrustBundleError):
    """Raised when a certificate or release asset cannot be downloaded."""

    def __init__(self, message: str, url: str = "", status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(message)


class CancelledOrTimedOut(FetchError):
    """Raised when a network operation is cancelled or exceeds its timeout."""
    pass


class FingerprintMismatch(TrustBundleError):
    """Raised when a certificate does not hash to the expected fingerprint."""

    def __init__(self, expected: str, actual: str, algorithm: str):
        self.expected = expected
        self.actual = actual
        self.algorithm = algorithm
        super().__init__(f"fingerprint mismatch: expected {expected}, got {actual}")


# =============================================================================
# Bundle errors
# =============================================================================

class BundleParseError(TrustBundleError):
    """Raised when a bundle file is structurally invalid."""

    def __init__(self, message: str, line: int = 0):
        self.line = line
        super().__init__(message)


class BundleMetadataMismatch(BundleParseError):
    """Raised when a metadata line disagrees with its certificate."""

    def __init__(self, field: str, metadata_value: str, cert_value: str, line: int = 0):
        self.field = field
        self.metadata_value = metadata_value
        self.cert_value = cert_value
        super().__init__(
            f"{field} mismatch: metadata has '{metadata_value}', "
            f"certificate has '{cert_value}'",
            line,
        )


# =============================================================================
# Verification errors
# =============================================================================

class SignatureVerificationFailed(TrustBundleError):
    """Raised when a Sigstore bundle signature does not verify."""
    pass


class TransparencyLogMissing(SignatureVerificationFailed):
    """Raised when a Sigstore bundle carries no usable Rekor entry."""
    pass


class CertificateIdentityMismatch(SignatureVerificationFailed):
    """Raised when the Fulcio certificate identity does not match the policy."""
    pass


class AttestationPolicyFailed(TrustBundleError):
    """Raised when a verified attestation does not satisfy the policy."""

    def __init__(self, reason: str, index: int = -1):
        self.reason = reason
        self.index = index
        super().__init__(reason)


class BundleVerificationFailed(TrustBundleError):
    """
    Raised when a trusted bundle cannot be verified as a whole.

    The underlying cause is chained as __cause__; rejected attestations
    are available in `rejections`.
    """

    def __init__(self, message: str = "trusted bundle verification failed",
                 rejections: Optional[List[AttestationPolicyFailed]] = None):
        self.rejections = rejections or []
        super().__init__(message)


# =============================================================================
# Cache errors
# =============================================================================

class CacheCorrupt(TrustBundleError):
    """Raised when cached files exist but cannot be decoded."""
    pass


class CacheStale(TrustBundleError):
    """Raised when the cache is older than its auto-update interval."""
    pass


class OfflineAndEmpty(TrustBundleError):
    """Raised in offline mode when the cache holds no usable bundle."""
    pass


class CannotPersistTrustedBundle(TrustBundleError):
    """Raised when persisting a bundle whose local cache is disabled."""

    def __init__(self, message: str = "cannot persist trusted bundle: local cache is disabled"):
        super().__init__(message)


class IncompleteCache(CacheCorrupt):
    """Raised when the cache lacks the assets needed to verify its bundle."""

    def __init__(self, message: str = "incomplete cache: missing verification assets"):
        super().__init__(message)


# =============================================================================
# Trusted bundle errors
# =============================================================================

class CertificateVerificationFailed(TrustBundleError):
    """Raised when a certificate does not chain to a bundle root."""
    pass
