"""
Keyless verification of published bundles.

A bundle release is trusted when:

1. ``checksums.txt`` carries a valid Sigstore signature issued to the
   release workflow of the source repository, the signing certificate
   names the expected commit and the Rekor entry was integrated on the
   bundle date, and the file records the bundle's SHA-256.
2. At least one SLSA provenance attestation for the bundle digest is
   validly signed by the same workflow, binds the digest, names the
   expected commit and was logged on the bundle date.

Signature checks, transparency log inclusion and certificate chains are
delegated to sigstore; this module builds the identity policy and
checks the release-specific claims.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID
from sigstore._internal.rekor.client import RekorClient
from sigstore._internal.trust import TrustedRoot
from sigstore._internal.tuf import DEFAULT_TUF_URL, TrustUpdater
from sigstore.errors import Error as SigstoreError
from sigstore.errors import VerificationError
from sigstore.models import Bundle
from sigstore.verify import Verifier
from sigstore.verify.policy import (
    AllOf,
    OIDCBuildSignerURI,
    OIDCIssuer,
    OIDCSourceRepositoryDigest,
    OIDCSourceRepositoryURI,
)

from .errors import (
    AttestationPolicyFailed,
    BundleVerificationFailed,
    CertificateIdentityMismatch,
    SignatureVerificationFailed,
    TransparencyLogMissing,
)
from .github import RELEASE_BUNDLE_WORKFLOW_PATH, SOURCE_REPO, Repo
from .provenance import IN_TOTO_PAYLOAD_TYPE, SLSA_PROVENANCE_V1, Statement, parse_statement

logger = logging.getLogger(__name__)

OIDC_ISSUER = "https://token.actions.githubusercontent.com"

CHECKSUMS_FILENAME = "checksums.txt"
CHECKSUMS_SIGNATURE_FILENAME = "checksums.txt.sigstore.json"

PUBLIC_GOOD_ISSUER_ORG = "sigstore.dev"
TUF_TRUSTED_ROOT_TARGET = "trusted_root.json"


# =============================================================================
# Policy
# =============================================================================

@dataclass
class PolicyConfig:
    """Identity and claims expected from the release workflow."""
    source_repo: str = str(SOURCE_REPO)
    build_workflow: str = RELEASE_BUNDLE_WORKFLOW_PATH
    tag: str = ""
    oidc_issuer: str = OIDC_ISSUER
    predicate_type: str = SLSA_PROVENANCE_V1

    def check_and_set_defaults(self) -> None:
        if not self.source_repo:
            raise ValueError("invalid input: 'source_repo' is required")
        if not self.build_workflow:
            raise ValueError("invalid input: 'build_workflow' is required")
        if not self.tag:
            raise ValueError("invalid input: 'tag' is required")
        if not self.oidc_issuer:
            self.oidc_issuer = OIDC_ISSUER
        if not self.predicate_type:
            self.predicate_type = SLSA_PROVENANCE_V1
        try:
            Repo.parse(self.source_repo)
        except ValueError as e:
            raise ValueError(f"invalid source_repo format: expected 'owner/repo', got '{self.source_repo}'") from e

    @property
    def repo(self) -> Repo:
        return Repo.parse(self.source_repo)

    def build_workflow_ref(self) -> str:
        return f"{self.build_workflow}@refs/tags/{self.tag}"

    def build_signer_repo_url(self) -> str:
        return self.repo.url

    def build_san_regex(self) -> str:
        return f"(?i)^https://github.com/{re.escape(self.repo.owner)}/{re.escape(self.repo.name)}/"

    def build_full_workflow_uri(self) -> str:
        return f"{self.build_signer_repo_url()}/{self.build_workflow_ref()}"


class SANPattern:
    """
    Verifies that one of the certificate's URI SANs matches a pattern.
    """
    def __init__(self, pattern: str) -> None:
        self._pattern = pattern

    def verify(self, cert: x509.Certificate) -> None:
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        except x509.ExtensionNotFound:
            raise VerificationError("Certificate does not contain a SubjectAlternativeName extension")
        uris = san.get_values_for_type(x509.UniformResourceIdentifier)
        if not any(re.match(self._pattern, uri) for uri in uris):
            raise VerificationError(
                f"Certificate's SAN does not match pattern "
                f"(got {uris}, expected pattern '{self._pattern}')"
            )


class IdentityPolicy:
    """
    Certificate identity policy of the release workflow.

    Failures surface as CertificateIdentityMismatch so callers can tell
    them apart from signature errors.
    """
    def __init__(self, cfg: PolicyConfig, commit: str = "") -> None:
        policies = [
            OIDCIssuer(cfg.oidc_issuer),
            SANPattern(cfg.build_san_regex()),
            OIDCBuildSignerURI(cfg.build_full_workflow_uri()),
            OIDCSourceRepositoryURI(cfg.build_signer_repo_url()),
        ]
        if commit:
            policies.append(OIDCSourceRepositoryDigest(commit.lower()))
        self._policy = AllOf(policies)

    def verify(self, cert: x509.Certificate) -> None:
        try:
            self._policy.verify(cert)
        except VerificationError as e:
            raise CertificateIdentityMismatch(f"certificate identity mismatch: {e}") from e


# =============================================================================
# Checksums
# =============================================================================

def sha256_digest(data: bytes) -> str:
    """``sha256:HEX`` digest of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def parse_checksums(data: bytes) -> Dict[str, str]:
    """Map file names to lowercase SHA-256 hex from ``sha256hex  filename`` lines."""
    checksums: Dict[str, str] = {}
    for line in data.decode("utf-8", errors="replace").splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        checksums.setdefault(parts[1], parts[0].lower())
    return checksums


def validate_checksum(checksums_data: bytes, artifact_data: bytes, artifact_name: str) -> None:
    """
    Raises:
        SignatureVerificationFailed: If the artifact is missing from the
                                     checksums or its digest differs
    """
    name = os.path.basename(artifact_name)
    expected = parse_checksums(checksums_data).get(name)
    if expected is None:
        raise SignatureVerificationFailed(f"artifact {name} not found in checksums file")
    actual = hashlib.sha256(artifact_data).hexdigest()
    if actual != expected:
        raise SignatureVerificationFailed(
            f"checksum mismatch for {name}: expected {expected}, got {actual}"
        )


def find_checksum_files(bundle_path: str) -> Tuple[str, str]:
    """
    Locate ``checksums.txt`` and its signature next to a bundle file.

    Returns:
        (checksums path, signature path), or ("", "") unless both exist
    """
    directory = os.path.dirname(os.path.abspath(bundle_path))
    checksums = os.path.join(directory, CHECKSUMS_FILENAME)
    signature = os.path.join(directory, CHECKSUMS_SIGNATURE_FILENAME)
    if os.path.isfile(checksums) and os.path.isfile(signature):
        return checksums, signature
    return "", ""


# =============================================================================
# Trust root
# =============================================================================

def load_trusted_root(path: str) -> TrustedRoot:
    """
    Load a ``trusted_root.json`` and require Fulcio CAs issued by the
    Sigstore public good instance.
    """
    try:
        trusted_root = TrustedRoot.from_file(path)
    except (OSError, ValueError, SigstoreError) as e:
        raise SignatureVerificationFailed(f"failed to parse trusted root JSON: {e}") from e

    for cert in trusted_root.get_fulcio_certs():
        orgs = cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        if not orgs:
            raise SignatureVerificationFailed("certificate authority has no issuer organization")
        if orgs[0].value != PUBLIC_GOOD_ISSUER_ORG:
            raise SignatureVerificationFailed(
                f"untrusted issuer organization: {orgs[0].value} (expected {PUBLIC_GOOD_ISSUER_ORG})"
            )
    return trusted_root


def fetch_trusted_root(cache_dir: str = "", offline: bool = False) -> bytes:
    """
    Refresh the Sigstore trust root through TUF and return its JSON.

    With cache_dir set, the ``trusted_root.json`` target is copied there
    after every refresh, and offline calls read that copy when present.
    """
    cached = os.path.join(cache_dir, TUF_TRUSTED_ROOT_TARGET) if cache_dir else ""
    if offline and cached and os.path.isfile(cached):
        logger.debug("Using cached trusted root %s", cached)
        with open(cached, "rb") as f:
            return f.read()

    path = TrustUpdater(DEFAULT_TUF_URL, offline).get_trusted_root_path()
    with open(path, "rb") as f:
        data = f.read()

    if cached:
        os.makedirs(cache_dir, mode=0o700, exist_ok=True)
        tmp = cached + ".tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, cached)
    return data


# =============================================================================
# Verification
# =============================================================================

@dataclass
class AcceptedAttestation:
    index: int
    statement: Statement
    integrated_time: datetime


@dataclass
class VerifyResult:
    ok: bool
    policy: PolicyConfig
    digest: str = ""
    accepted: List[AcceptedAttestation] = field(default_factory=list)
    rejections: List[AttestationPolicyFailed] = field(default_factory=list)


def _load_bundle(data: bytes, what: str) -> Bundle:
    try:
        bundle = Bundle.from_json(data)
    except (ValueError, SigstoreError) as e:
        raise SignatureVerificationFailed(f"failed to load {what}: {e}") from e
    if bundle.log_entry is None:
        raise TransparencyLogMissing(f"{what} has no transparency log entry")
    return bundle


def _integrated_time(bundle: Bundle) -> datetime:
    return datetime.fromtimestamp(bundle.log_entry.integrated_time, tz=timezone.utc)


def verify_rekor_date(bundle: Bundle, expected_date: str) -> datetime:
    """Check that the Rekor entry was integrated on expected_date (UTC)."""
    when = _integrated_time(bundle)
    actual = when.strftime("%Y-%m-%d")
    if actual != expected_date:
        raise AttestationPolicyFailed(
            f"date mismatch between tag and Rekor entry: expected {expected_date}, "
            f"got {actual} (full timestamp: {when.strftime('%Y-%m-%dT%H:%M:%SZ')})"
        )
    return when


class BundleVerifier:
    """Verifies a bundle release against its signed checksums and provenance."""

    def __init__(self, date: str, commit: str, source_repo: Repo = SOURCE_REPO,
                 workflow_filename: str = RELEASE_BUNDLE_WORKFLOW_PATH,
                 trusted_root_path: str = "", offline: bool = False,
                 require_all_attestations: bool = False, tuf_cache_dir: str = ""):
        if not date:
            raise ValueError("date cannot be empty")
        if not commit:
            raise ValueError("commit cannot be empty")
        source_repo.check_and_set_defaults()
        self.date = date
        self.commit = commit
        self.source_repo = source_repo
        self.workflow_filename = workflow_filename or RELEASE_BUNDLE_WORKFLOW_PATH
        self.trusted_root_path = trusted_root_path
        self.tuf_cache_dir = tuf_cache_dir
        self.offline = offline
        self.require_all_attestations = require_all_attestations
        self._verifier: Optional[Verifier] = None

    def policy_config(self) -> PolicyConfig:
        cfg = PolicyConfig(
            source_repo=str(self.source_repo),
            build_workflow=self.workflow_filename,
            tag=self.date,
        )
        cfg.check_and_set_defaults()
        return cfg

    @property
    def verifier(self) -> Verifier:
        """
        Sigstore verifier built from, in order of preference, the explicit
        trusted root file, the TUF cache directory, or sigstore's own
        production trust root.
        """
        if self._verifier is None:
            path = self.trusted_root_path
            if not path and self.tuf_cache_dir:
                try:
                    fetch_trusted_root(self.tuf_cache_dir, self.offline)
                except (OSError, SigstoreError) as e:
                    raise SignatureVerificationFailed(f"failed to obtain Sigstore trusted root: {e}") from e
                path = os.path.join(self.tuf_cache_dir, TUF_TRUSTED_ROOT_TARGET)
            if path:
                self._verifier = Verifier(
                    rekor=RekorClient.production(),
                    trusted_root=load_trusted_root(path),
                )
            else:
                self._verifier = Verifier.production(offline=self.offline)
        return self._verifier

    def verify(self, bundle_data: bytes, checksums_data: bytes, checksums_signature: bytes,
               attestations: Sequence[bytes], bundle_filename: str) -> VerifyResult:
        """
        Run both verification phases.

        Raises:
            BundleVerificationFailed: If the checksums cannot be verified or
                                      no attestation satisfies the policy
        """
        cfg = self.policy_config()
        result = VerifyResult(ok=False, policy=cfg, digest=sha256_digest(bundle_data))

        try:
            self.verify_checksums(cfg, bundle_data, checksums_data, checksums_signature, bundle_filename)
        except (SignatureVerificationFailed, AttestationPolicyFailed) as e:
            raise BundleVerificationFailed(f"checksum signature verification failed: {e}") from e

        for index, attestation in enumerate(attestations):
            try:
                accepted = self.verify_attestation(cfg, attestation, result.digest, index)
            except AttestationPolicyFailed as e:
                logger.debug("Rejected attestation %d: %s", index, e)
                result.rejections.append(e)
                continue
            result.accepted.append(accepted)

        if not result.accepted:
            if not attestations:
                message = "attestation verification failed: no attestation found"
            else:
                message = "attestation verification failed: no attestation satisfied the policy"
            raise BundleVerificationFailed(message, rejections=result.rejections)
        if self.require_all_attestations and result.rejections:
            raise BundleVerificationFailed(
                f"attestation verification failed: {len(result.rejections)} of "
                f"{len(attestations)} attestations rejected",
                rejections=result.rejections,
            )

        result.ok = True
        logger.debug("Verified %s with %d accepted attestations", result.digest, len(result.accepted))
        return result

    def verify_checksums(self, cfg: PolicyConfig, bundle_data: bytes, checksums_data: bytes,
                         checksums_signature: bytes, bundle_filename: str) -> datetime:
        """Verify the checksums signature, its claims and the bundle digest."""
        bundle = _load_bundle(checksums_signature, "signature bundle")
        policy = IdentityPolicy(cfg, commit=self.commit)
        try:
            self.verifier.verify_artifact(checksums_data, bundle, policy)
        except VerificationError as e:
            raise SignatureVerificationFailed(f"signature verification failed: {e}") from e
        when = verify_rekor_date(bundle, self.date)
        validate_checksum(checksums_data, bundle_data, bundle_filename)
        return when

    def verify_attestation(self, cfg: PolicyConfig, attestation: bytes, digest: str,
                           index: int = -1) -> AcceptedAttestation:
        """
        Verify a single provenance attestation.

        Raises:
            AttestationPolicyFailed: With the reason the attestation was rejected
        """
        try:
            bundle = _load_bundle(attestation, "attestation bundle")
            payload_type, payload = self.verifier.verify_dsse(bundle, IdentityPolicy(cfg))
        except (SignatureVerificationFailed, VerificationError) as e:
            raise AttestationPolicyFailed(f"verification failed: {e}", index) from e

        if payload_type != IN_TOTO_PAYLOAD_TYPE:
            raise AttestationPolicyFailed(f"unsupported payload type: {payload_type}", index)
        try:
            statement = parse_statement(payload)
        except ValueError as e:
            raise AttestationPolicyFailed(str(e), index) from e

        if statement.predicate_type != cfg.predicate_type:
            raise AttestationPolicyFailed(
                f"predicate type mismatch: expected {cfg.predicate_type}, got {statement.predicate_type}",
                index,
            )
        if not statement.has_subject_digest(digest.split(":", 1)[-1]):
            raise AttestationPolicyFailed(f"attestation does not bind artifact digest {digest}", index)

        try:
            when = verify_rekor_date(bundle, self.date)
        except AttestationPolicyFailed as e:
            raise AttestationPolicyFailed(f"timestamp validation failed: {e}", index) from e

        commit = statement.git_commit
        if not commit:
            raise AttestationPolicyFailed("commit validation failed: git commit not found in attestation", index)
        if commit.lower() != self.commit.lower():
            raise AttestationPolicyFailed(
                f"commit validation failed: commit mismatch: expected {self.commit}, got {commit}", index
            )
        return AcceptedAttestation(index=index, statement=statement, integrated_time=when)
