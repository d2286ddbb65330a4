"""
Public API: fetch, verify, load and save trusted TPM bundles.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from sigstore.errors import Error as SigstoreError

from . import cache, concurrency
from .bundle.metadata import (
    INTERMEDIATE_BUNDLE_FILENAME,
    ROOT_BUNDLE_FILENAME,
    BundleMetadata,
    parse_metadata,
    validate_date,
)
from .bundle.parser import parse_bundle
from .cache import AutoUpdateConfig, BundleAssets, CacheConfig, Environment
from .errors import (
    BundleParseError,
    BundleVerificationFailed,
    CacheCorrupt,
    CacheStale,
    CannotPersistTrustedBundle,
    CertificateVerificationFailed,
    FetchError,
    IncompleteCache,
    OfflineAndEmpty,
    TrustBundleError,
)
from .github import SOURCE_REPO, GitHubClient, Repo
from .sigstore import (
    CHECKSUMS_FILENAME,
    CHECKSUMS_SIGNATURE_FILENAME,
    BundleVerifier,
    VerifyResult,
    fetch_trusted_root,
    parse_checksums,
    sha256_digest,
)
from .vendors import validate_vendor_id

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0
MAX_CHAIN_DEPTH = 8


# =============================================================================
# Options
# =============================================================================

def _check_vendor_ids(vendor_ids: Sequence[str]) -> None:
    for vendor_id in vendor_ids:
        validate_vendor_id(vendor_id)


@dataclass
class GetConfig:
    """Options of get_trusted_bundle."""
    date: str = ""  # release tag, latest when empty
    skip_verify: bool = False
    disable_local_cache: bool = False
    offline: bool = False
    auto_update: AutoUpdateConfig = field(default_factory=AutoUpdateConfig)
    vendor_ids: List[str] = field(default_factory=list)
    source_repo: Repo = SOURCE_REPO
    require_all_attestations: bool = False
    env: Optional[Environment] = None

    def check_and_set_defaults(self) -> None:
        if self.date:
            validate_date(self.date)
        if self.offline and self.disable_local_cache:
            raise ValueError("offline mode requires the local cache")
        self.source_repo.check_and_set_defaults()
        self.auto_update.check_and_set_defaults()
        _check_vendor_ids(self.vendor_ids)
        if self.env is None:
            self.env = Environment.from_env()
        self.env.check_and_set_defaults()


@dataclass
class VerifyConfig:
    """
    Inputs of verify_trusted_bundle.

    Checksums, their signature and attestations that are not supplied
    are fetched from the release named by the bundle date.
    """
    bundle: bytes
    metadata: Optional[BundleMetadata] = None
    bundle_filename: str = ""
    checksums: bytes = b""
    checksums_signature: bytes = b""
    attestations: Optional[List[bytes]] = None
    source_repo: Repo = SOURCE_REPO
    trusted_root_path: str = ""
    offline: bool = False
    require_all_attestations: bool = False
    env: Optional[Environment] = None

    def check_and_set_defaults(self) -> None:
        if not self.bundle:
            raise ValueError("bundle cannot be empty")
        if self.metadata is None:
            self.metadata = parse_metadata(self.bundle)
        if not self.bundle_filename:
            self.bundle_filename = self.metadata.filename or self.metadata.type.default_filename
        self.source_repo.check_and_set_defaults()
        if self.env is None:
            self.env = Environment.from_env()
        self.env.check_and_set_defaults()


@dataclass
class LoadConfig:
    """Options of load_trusted_bundle."""
    cache_dir: str = ""
    skip_verify: bool = False
    offline: bool = False
    vendor_ids: List[str] = field(default_factory=list)
    source_repo: Repo = SOURCE_REPO
    require_all_attestations: bool = False
    env: Optional[Environment] = None

    def check_and_set_defaults(self) -> None:
        if self.env is None:
            self.env = Environment.from_env()
        self.env.check_and_set_defaults()
        if not self.cache_dir:
            self.cache_dir = self.env.cache_dir
        if not os.path.isdir(self.cache_dir):
            raise OfflineAndEmpty(f"cache directory does not exist: {self.cache_dir}")
        self.source_repo.check_and_set_defaults()
        _check_vendor_ids(self.vendor_ids)


@dataclass
class SaveConfig:
    """Options of save_trusted_bundle."""
    date: str = ""
    skip_verify: bool = False
    vendor_ids: List[str] = field(default_factory=list)
    source_repo: Repo = SOURCE_REPO
    require_all_attestations: bool = False
    env: Optional[Environment] = None

    def check_and_set_defaults(self) -> None:
        if self.date:
            validate_date(self.date)
        self.source_repo.check_and_set_defaults()
        _check_vendor_ids(self.vendor_ids)
        if self.env is None:
            self.env = Environment.from_env()
        self.env.check_and_set_defaults()


# =============================================================================
# Trusted bundle
# =============================================================================

def _check_validity(cert: x509.Certificate, now: datetime) -> None:
    if now < cert.not_valid_before_utc:
        raise CertificateVerificationFailed(
            f"certificate not yet valid (not before {cert.not_valid_before_utc})"
        )
    if now > cert.not_valid_after_utc:
        raise CertificateVerificationFailed(
            f"certificate expired (not after {cert.not_valid_after_utc})"
        )


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


class TrustedBundle:
    """
    A verified set of TPM root and intermediate certificates.

    The bundle can keep itself up to date: start_watcher() polls the
    release source in a background thread and swaps in newer releases.
    All accessors are safe to call while the watcher runs.
    """

    def __init__(self, assets: BundleAssets, vendor_ids: Sequence[str] = (),
                 cache_dir: str = "", skip_verify: bool = False,
                 auto_update: Optional[AutoUpdateConfig] = None):
        self._lock = threading.RLock()
        self.vendor_ids = list(vendor_ids)
        self.cache_dir = cache_dir
        self.skip_verify = skip_verify
        self.auto_update = auto_update or AutoUpdateConfig(disable_auto_update=True)
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None
        self._set_assets(assets)

    def _filter(self, certs: Dict[str, List[x509.Certificate]]) -> Dict[str, List[x509.Certificate]]:
        if not self.vendor_ids:
            return certs
        return {vendor: c for vendor, c in certs.items() if vendor in self.vendor_ids}

    def _set_assets(self, assets: BundleAssets) -> None:
        root_metadata = parse_metadata(assets.root_bundle)
        roots = self._filter(parse_bundle(assets.root_bundle))
        intermediate_metadata = None
        intermediates: Dict[str, List[x509.Certificate]] = {}
        if assets.intermediate_bundle:
            intermediate_metadata = parse_metadata(assets.intermediate_bundle)
            intermediates = self._filter(parse_bundle(assets.intermediate_bundle))
        with self._lock:
            self._assets = assets
            self._root_metadata = root_metadata
            self._intermediate_metadata = intermediate_metadata
            self._roots = roots
            self._intermediates = intermediates

    @property
    def raw_root(self) -> bytes:
        with self._lock:
            return self._assets.root_bundle

    @property
    def raw_intermediate(self) -> bytes:
        with self._lock:
            return self._assets.intermediate_bundle

    @property
    def root_metadata(self) -> BundleMetadata:
        with self._lock:
            return self._root_metadata

    @property
    def intermediate_metadata(self) -> Optional[BundleMetadata]:
        with self._lock:
            return self._intermediate_metadata

    @property
    def date(self) -> str:
        return self.root_metadata.date

    @property
    def commit(self) -> str:
        return self.root_metadata.commit

    @property
    def assets(self) -> BundleAssets:
        with self._lock:
            return self._assets

    def vendors(self) -> List[str]:
        """Vendor IDs with at least one root certificate."""
        with self._lock:
            return sorted(self._roots)

    def roots(self, vendor_id: str = "") -> List[x509.Certificate]:
        with self._lock:
            return _flatten(self._roots, vendor_id)

    def intermediates(self, vendor_id: str = "") -> List[x509.Certificate]:
        with self._lock:
            return _flatten(self._intermediates, vendor_id)

    def contains(self, cert: x509.Certificate) -> bool:
        """True if cert is one of the bundle's root or intermediate certificates."""
        return any(c == cert for c in self.roots() + self.intermediates())

    def verify_certificate(self, cert: x509.Certificate) -> List[x509.Certificate]:
        """
        Verify that cert chains to one of the bundle roots.

        Intermediate certificates of the bundle are used to build the
        chain. Only names, signatures and validity periods are checked;
        TPM-specific critical extensions (such as the EK certificate SAN)
        are not interpreted.

        Returns:
            The chain [cert, intermediates..., root]

        Raises:
            CertificateVerificationFailed: If no valid chain can be built
        """
        now = datetime.now(timezone.utc)
        roots = self.roots()
        intermediates = self.intermediates()

        chain = [cert]
        current = cert
        for _ in range(MAX_CHAIN_DEPTH):
            _check_validity(current, now)
            for root in roots:
                if _issued_by(current, root):
                    _check_validity(root, now)
                    if current != root:
                        chain.append(root)
                    return chain
            issuer = next(
                (c for c in intermediates if c not in chain and _issued_by(current, c)),
                None,
            )
            if issuer is None:
                raise CertificateVerificationFailed(
                    f"certificate '{current.subject.rfc4514_string()}' is not issued by a trusted certificate"
                )
            chain.append(issuer)
            current = issuer
        raise CertificateVerificationFailed(f"certificate chain exceeds {MAX_CHAIN_DEPTH} certificates")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _cache_config(self) -> CacheConfig:
        metadata = self.root_metadata
        return CacheConfig(
            version=metadata.date,
            commit=metadata.commit,
            skip_verify=self.skip_verify,
            vendor_ids=list(self.vendor_ids),
            auto_update=self.auto_update,
        )

    def persist(self, cache_dir: str = "") -> None:
        """
        Write the bundle and its verification assets to a cache directory.

        Raises:
            CannotPersistTrustedBundle: If no directory is given and the
                                        bundle has no local cache
        """
        cache_dir = cache_dir or self.cache_dir
        if not cache_dir:
            raise CannotPersistTrustedBundle()
        with self._lock:
            assets = self._assets
            cfg = self._cache_config()
        try:
            cache.save(cache_dir, assets, cfg)
        except OSError as e:
            raise CannotPersistTrustedBundle(f"cannot persist trusted bundle: {e}") from e

    # -------------------------------------------------------------------------
    # Auto-update
    # -------------------------------------------------------------------------

    def update(self, refresh: Callable[[str], Optional[BundleAssets]]) -> bool:
        """
        Replace the bundle with a newer release.

        Args:
            refresh: Called with the current bundle date; returns the
                     verified assets of a newer release, or None

        Returns:
            True if the bundle was replaced
        """
        current = self.date
        assets = refresh(current)
        if assets is None:
            logger.debug("Trusted bundle %s is up to date", current)
            if self.cache_dir:
                self.persist()
            return False

        new_date = parse_metadata(assets.root_bundle).date
        if new_date <= current:
            return False
        self._set_assets(assets)
        if self.cache_dir:
            self.persist()
        logger.info("Trusted bundle updated from %s to %s", current, new_date)
        return True

    def _watch(self, refresh: Callable[[str], Optional[BundleAssets]]) -> None:
        interval = self.auto_update.interval.total_seconds()
        while not self._stop.wait(interval):
            try:
                self.update(refresh)
            except TrustBundleError as e:
                logger.warning("Failed to update trusted bundle: %s", e)

    def start_watcher(self, refresh: Callable[[str], Optional[BundleAssets]]) -> None:
        if self.auto_update.disable_auto_update or self._watcher is not None:
            return
        self._stop.clear()
        self._watcher = threading.Thread(
            target=self._watch, args=(refresh,), name="tpmtb-watcher", daemon=True
        )
        self._watcher.start()
        logger.debug("Watching for bundle updates every %s", self.auto_update.interval)

    def stop(self) -> None:
        """Stop the auto-update watcher, waiting at most STOP_TIMEOUT seconds."""
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=STOP_TIMEOUT)
            self._watcher = None


def _flatten(certs: Dict[str, List[x509.Certificate]], vendor_id: str) -> List[x509.Certificate]:
    if vendor_id:
        return list(certs.get(vendor_id, []))
    return [c for vendor in sorted(certs) for c in certs[vendor]]


# =============================================================================
# Release assets
# =============================================================================

def _github_client(env: Environment) -> GitHubClient:
    return GitHubClient(token=env.github_token, session=env.session)


def _resolve_tag(client: GitHubClient, repo: Repo, date: str) -> str:
    if date:
        client.release_exists(repo, date)
        return date
    return client.get_latest_release(repo).tag_name


def download_assets(client: GitHubClient, repo: Repo, tag: str,
                    skip_verify: bool = False) -> BundleAssets:
    """
    Download the bundles of release `tag` and the assets to verify them.

    The intermediate bundle is only downloaded when the checksums file
    lists it.
    """
    assets = BundleAssets()
    assets.checksums = client.download_release_asset(repo, tag, CHECKSUMS_FILENAME)
    if not skip_verify:
        assets.checksums_signature = client.download_release_asset(repo, tag, CHECKSUMS_SIGNATURE_FILENAME)

    listed = parse_checksums(assets.checksums)
    if ROOT_BUNDLE_FILENAME not in listed:
        raise FetchError(f"{ROOT_BUNDLE_FILENAME} is not listed in {CHECKSUMS_FILENAME} of release {tag}")
    names = [n for n in (ROOT_BUNDLE_FILENAME, INTERMEDIATE_BUNDLE_FILENAME) if n in listed]
    contents = concurrency.execute(
        len(names), names, lambda _i, name: client.download_release_asset(repo, tag, name)
    )
    downloaded = dict(zip(names, contents))
    assets.root_bundle = downloaded[ROOT_BUNDLE_FILENAME]
    assets.intermediate_bundle = downloaded.get(INTERMEDIATE_BUNDLE_FILENAME, b"")

    if not skip_verify:
        digest = sha256_digest(assets.root_bundle)
        attestations = client.get_attestations(repo, digest)
        assets.attestations = [a.bundle for a in attestations if a.bundle]
        if not assets.attestations:
            raise FetchError(f"no attestations found for digest {digest}")
    logger.debug("Downloaded release %s from %s", tag, repo)
    return assets


def verify_assets(assets: BundleAssets, source_repo: Repo = SOURCE_REPO,
                  trusted_root_path: str = "", offline: bool = False,
                  require_all_attestations: bool = False,
                  expected_date: str = "", tuf_cache_dir: str = "") -> List[VerifyResult]:
    """
    Verify the root bundle and, if present, the intermediate bundle.

    The intermediate bundle must carry the same date and commit as the
    root bundle.

    Raises:
        BundleVerificationFailed: If either bundle cannot be verified
    """
    try:
        root_metadata = parse_metadata(assets.root_bundle)
        intermediate_metadata = None
        if assets.intermediate_bundle:
            intermediate_metadata = parse_metadata(assets.intermediate_bundle)
    except BundleParseError as e:
        raise BundleVerificationFailed(f"invalid bundle metadata: {e}") from e

    if expected_date and root_metadata.date != expected_date:
        raise BundleVerificationFailed(
            f"bundle date {root_metadata.date} does not match release {expected_date}"
        )
    if intermediate_metadata is not None and (
            intermediate_metadata.date != root_metadata.date
            or intermediate_metadata.commit != root_metadata.commit):
        raise BundleVerificationFailed(
            "intermediate bundle metadata does not match root bundle: "
            f"expected {root_metadata.date}@{root_metadata.commit}, "
            f"got {intermediate_metadata.date}@{intermediate_metadata.commit}"
        )

    verifier = BundleVerifier(
        date=root_metadata.date,
        commit=root_metadata.commit,
        source_repo=source_repo,
        trusted_root_path=trusted_root_path,
        offline=offline,
        require_all_attestations=require_all_attestations,
        tuf_cache_dir=tuf_cache_dir,
    )
    results = [verifier.verify(
        assets.root_bundle, assets.checksums, assets.checksums_signature,
        assets.attestations, ROOT_BUNDLE_FILENAME,
    )]
    if assets.intermediate_bundle:
        results.append(verifier.verify(
            assets.intermediate_bundle, assets.checksums, assets.checksums_signature,
            assets.attestations, INTERMEDIATE_BUNDLE_FILENAME,
        ))
    return results


def _trusted_root(env: Environment, refreshed: bool = False) -> bytes:
    """
    Sigstore trusted root JSON to keep next to a cached bundle.

    With refreshed set, the TUF copy written during verification is
    reused instead of contacting the TUF repository again.
    """
    try:
        return fetch_trusted_root(env.tuf_cache_dir, offline=refreshed)
    except (OSError, SigstoreError) as e:
        raise FetchError(f"failed to fetch Sigstore trusted root: {e}") from e


# =============================================================================
# Entry points
# =============================================================================

def get_trusted_bundle(cfg: Optional[GetConfig] = None) -> TrustedBundle:
    """
    Fetch, verify and cache the trusted bundle of a release.

    Without a date the latest release is used; a cached bundle that is
    not due for a refresh is returned without contacting GitHub. Unless
    auto-update is disabled, the returned bundle watches for newer
    releases until stop() is called.

    Raises:
        OfflineAndEmpty: In offline mode when nothing is cached
        FetchError: If a release or asset cannot be downloaded
        BundleVerificationFailed: If the bundle fails verification
    """
    cfg = cfg or GetConfig()
    cfg.check_and_set_defaults()
    env = cfg.env
    cache_dir = "" if cfg.disable_local_cache else env.cache_dir

    if cfg.offline:
        bundle = load_trusted_bundle(LoadConfig(
            cache_dir=cache_dir,
            skip_verify=cfg.skip_verify,
            offline=True,
            vendor_ids=cfg.vendor_ids,
            source_repo=cfg.source_repo,
            require_all_attestations=cfg.require_all_attestations,
            env=env,
        ))
        if cfg.date and bundle.date != cfg.date:
            raise OfflineAndEmpty(f"release {cfg.date} is not cached (cached: {bundle.date})")
        return bundle

    client = _github_client(env)
    assets: Optional[BundleAssets] = None
    checked_remote = True

    tag = cfg.date
    if not tag and cache_dir:
        try:
            tag = cache.load(cache_dir, with_verification_assets=False, allow_stale=False).config.version
            checked_remote = False
            logger.debug("Using cached release %s", tag)
        except (OfflineAndEmpty, CacheStale, CacheCorrupt) as e:
            logger.debug("Cache not usable, resolving latest release: %s", e)
    if not tag:
        tag = _resolve_tag(client, cfg.source_repo, "")
    elif cfg.date:
        _resolve_tag(client, cfg.source_repo, cfg.date)

    from_cache = bool(cache_dir) and cache.check_cache_exists(cache_dir, tag)
    if from_cache:
        try:
            assets = cache.load(cache_dir, with_verification_assets=not cfg.skip_verify).assets
            logger.info("Loaded bundle %s from cache", tag)
        except IncompleteCache:
            logger.info("Cached bundle %s lacks verification assets, downloading from GitHub", tag)
            from_cache = False
    if assets is None:
        assets = download_assets(client, cfg.source_repo, tag, cfg.skip_verify)

    if not cfg.skip_verify:
        verify_assets(
            assets,
            source_repo=cfg.source_repo,
            require_all_attestations=cfg.require_all_attestations,
            expected_date=tag,
            tuf_cache_dir=env.tuf_cache_dir,
        )
    missing_root = bool(cache_dir) and not cfg.skip_verify and not assets.trusted_root
    if missing_root:
        assets.trusted_root = _trusted_root(env, refreshed=True)

    bundle = TrustedBundle(
        assets,
        vendor_ids=cfg.vendor_ids,
        cache_dir=cache_dir,
        skip_verify=cfg.skip_verify,
        auto_update=cfg.auto_update,
    )
    if cache_dir and (not from_cache or checked_remote or missing_root):
        bundle.persist()

    def refresh(current: str) -> Optional[BundleAssets]:
        latest = client.get_latest_release(cfg.source_repo).tag_name
        if latest <= current:
            return None
        update = download_assets(client, cfg.source_repo, latest, cfg.skip_verify)
        if not cfg.skip_verify:
            verify_assets(
                update,
                source_repo=cfg.source_repo,
                require_all_attestations=cfg.require_all_attestations,
                expected_date=latest,
                tuf_cache_dir=env.tuf_cache_dir,
            )
            update.trusted_root = _trusted_root(env, refreshed=True)
        return update

    bundle.start_watcher(refresh)
    return bundle


def verify_trusted_bundle(cfg: VerifyConfig) -> VerifyResult:
    """
    Verify a bundle against its signed checksums and provenance.

    Inputs missing from cfg are fetched from the release matching the
    bundle date.

    Raises:
        BundleVerificationFailed: With the underlying error as __cause__
    """
    try:
        cfg.check_and_set_defaults()
    except (ValueError, TrustBundleError) as e:
        raise BundleVerificationFailed(f"invalid verification input: {e}") from e

    metadata = cfg.metadata
    checksums = cfg.checksums
    signature = cfg.checksums_signature
    attestations = cfg.attestations
    try:
        if not checksums or not signature or attestations is None:
            if cfg.offline:
                raise OfflineAndEmpty("offline verification requires checksums, signature and attestations")
            client = _github_client(cfg.env)
            if not checksums:
                checksums = client.download_release_asset(cfg.source_repo, metadata.date, CHECKSUMS_FILENAME)
            if not signature:
                signature = client.download_release_asset(
                    cfg.source_repo, metadata.date, CHECKSUMS_SIGNATURE_FILENAME
                )
            if attestations is None:
                digest = sha256_digest(cfg.bundle)
                attestations = [a.bundle for a in client.get_attestations(cfg.source_repo, digest) if a.bundle]
    except TrustBundleError as e:
        raise BundleVerificationFailed(f"failed to obtain verification inputs: {e}") from e

    try:
        verifier = BundleVerifier(
            date=metadata.date,
            commit=metadata.commit,
            source_repo=cfg.source_repo,
            trusted_root_path=cfg.trusted_root_path,
            offline=cfg.offline,
            require_all_attestations=cfg.require_all_attestations,
            tuf_cache_dir=cfg.env.tuf_cache_dir,
        )
    except ValueError as e:
        raise BundleVerificationFailed(f"invalid verification input: {e}") from e
    return verifier.verify(cfg.bundle, checksums, signature, attestations, cfg.bundle_filename)


def load_trusted_bundle(cfg: LoadConfig) -> TrustedBundle:
    """
    Load a bundle persisted by get_trusted_bundle or save_trusted_bundle.

    Unless skip_verify is set, the bundle is verified again against the
    cached assets. Offline verification requires the cached
    ``trusted-root.json``.

    Raises:
        OfflineAndEmpty: If the cache holds no bundle
        IncompleteCache: If verification assets are missing
        BundleVerificationFailed: If the cached bundle fails verification
    """
    cfg.check_and_set_defaults()
    cached = cache.load(cfg.cache_dir, with_verification_assets=not cfg.skip_verify)

    if not cfg.skip_verify:
        trusted_root_path = ""
        if cfg.offline:
            if not cached.assets.trusted_root:
                raise IncompleteCache(
                    f"incomplete cache: {cache.TRUSTED_ROOT_FILENAME} is required for offline verification"
                )
            trusted_root_path = os.path.join(cfg.cache_dir, cache.TRUSTED_ROOT_FILENAME)
        verify_assets(
            cached.assets,
            source_repo=cfg.source_repo,
            trusted_root_path=trusted_root_path,
            offline=cfg.offline,
            require_all_attestations=cfg.require_all_attestations,
            expected_date=cached.config.version,
            tuf_cache_dir=cfg.env.tuf_cache_dir,
        )

    if cached.stale:
        logger.info("Cached bundle %s is due for a refresh", cached.config.version)
    return TrustedBundle(
        cached.assets,
        vendor_ids=cfg.vendor_ids or cached.config.vendor_ids,
        cache_dir=cfg.cache_dir,
        skip_verify=cfg.skip_verify or cached.config.skip_verify,
        auto_update=cached.config.auto_update,
    )


def save_trusted_bundle(cfg: SaveConfig, output_dir: str) -> BundleAssets:
    """
    Download and verify a release, then write everything needed to load
    it offline into output_dir.

    The saved cache has auto-update disabled.

    Returns:
        The saved assets
    """
    cfg.check_and_set_defaults()
    client = _github_client(cfg.env)
    tag = _resolve_tag(client, cfg.source_repo, cfg.date)
    assets = download_assets(client, cfg.source_repo, tag, cfg.skip_verify)
    if not cfg.skip_verify:
        verify_assets(
            assets,
            source_repo=cfg.source_repo,
            require_all_attestations=cfg.require_all_attestations,
            expected_date=tag,
            tuf_cache_dir=cfg.env.tuf_cache_dir,
        )
    assets.trusted_root = _trusted_root(cfg.env, refreshed=not cfg.skip_verify)

    metadata = parse_metadata(assets.root_bundle)
    cache_cfg = CacheConfig(
        version=metadata.date,
        commit=metadata.commit,
        skip_verify=cfg.skip_verify,
        vendor_ids=list(cfg.vendor_ids),
        auto_update=AutoUpdateConfig(disable_auto_update=True),
    )
    try:
        cache.save(output_dir, assets, cache_cfg)
    except OSError as e:
        raise TrustBundleError(f"failed to save trusted bundle to {output_dir}: {e}") from e
    logger.info("Saved bundle %s to %s", metadata.date, output_dir)
    return assets
