"""
On-disk cache of verified trusted bundles.

The cache directory holds the bundle files, the verification assets
they were checked against and a small ``config.json`` describing the
cached release. Files are written atomically with owner-only
permissions.
"""

import json
import logging
import os
import stat
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import platformdirs
import requests

from .bundle.metadata import INTERMEDIATE_BUNDLE_FILENAME, ROOT_BUNDLE_FILENAME
from .errors import CacheCorrupt, CacheStale, IncompleteCache, InvalidVendorID, OfflineAndEmpty
from .sigstore import CHECKSUMS_FILENAME, CHECKSUMS_SIGNATURE_FILENAME
from .vendors import validate_vendor_id

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = ".tpmtb"
TUF_CACHE_DIR_NAME = "tuf-cache"

CONFIG_FILENAME = "config.json"
PROVENANCE_FILENAME = "provenance.json"
TRUSTED_ROOT_FILENAME = "trusted-root.json"

# Cache directory permissions (owner-only)
_CACHE_DIR_MODE = stat.S_IRWXU  # 0700
_CACHE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0600

DEFAULT_AUTO_UPDATE_INTERVAL = timedelta(hours=24)
DEFAULT_MIN_INTERVAL = timedelta(hours=1)
DEFAULT_MAX_INTERVAL = timedelta(days=7)


# =============================================================================
# Environment
# =============================================================================

def default_cache_dir() -> str:
    home = os.path.expanduser("~")
    if home == "~" or not home:
        return platformdirs.user_cache_dir("tpmtb", "tpmtb")
    return os.path.join(home, CACHE_DIR_NAME)


@dataclass
class Environment:
    """Process-wide settings passed explicitly to the public API."""
    cache_dir: str = ""
    tuf_cache_dir: str = ""
    github_token: str = ""
    session: Optional[requests.Session] = None
    version: str = ""

    def check_and_set_defaults(self) -> None:
        if not self.cache_dir:
            self.cache_dir = default_cache_dir()
        if not self.tuf_cache_dir:
            self.tuf_cache_dir = os.path.join(self.cache_dir, TUF_CACHE_DIR_NAME)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Environment":
        """Build an Environment from TPMTB_* and GitHub token variables."""
        environ = os.environ if environ is None else environ
        env = cls(
            cache_dir=environ.get("TPMTB_CACHE_DIR", ""),
            tuf_cache_dir=environ.get("TPMTB_TUF_CACHE_DIR", ""),
            github_token=environ.get("GITHUB_TOKEN") or environ.get("GH_TOKEN") or "",
        )
        env.check_and_set_defaults()
        return env


# =============================================================================
# Cache configuration
# =============================================================================

def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AutoUpdateConfig:
    """Refresh policy of a cached bundle."""
    disable_auto_update: bool = False
    interval: timedelta = DEFAULT_AUTO_UPDATE_INTERVAL
    min_interval: timedelta = DEFAULT_MIN_INTERVAL
    max_interval: timedelta = DEFAULT_MAX_INTERVAL

    def check_and_set_defaults(self) -> None:
        if self.min_interval > self.max_interval:
            raise ValueError("invalid auto-update config: min interval exceeds max interval")
        if not self.interval:
            self.interval = DEFAULT_AUTO_UPDATE_INTERVAL
        self.interval = max(self.min_interval, min(self.interval, self.max_interval))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "disableAutoUpdate": self.disable_auto_update,
            "interval": int(self.interval.total_seconds()),
            "minInterval": int(self.min_interval.total_seconds()),
            "maxInterval": int(self.max_interval.total_seconds()),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoUpdateConfig":
        return cls(
            disable_auto_update=bool(data.get("disableAutoUpdate", False)),
            interval=timedelta(seconds=data.get("interval") or 0),
            min_interval=timedelta(seconds=data.get("minInterval", DEFAULT_MIN_INTERVAL.total_seconds())),
            max_interval=timedelta(seconds=data.get("maxInterval", DEFAULT_MAX_INTERVAL.total_seconds())),
        )


@dataclass
class CacheConfig:
    """Contents of ``config.json``."""
    version: str
    commit: str = ""
    skip_verify: bool = False
    vendor_ids: List[str] = field(default_factory=list)
    last_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    auto_update: Optional[AutoUpdateConfig] = None

    def check_and_set_defaults(self) -> None:
        if not self.version:
            raise ValueError("version cannot be empty")
        if self.auto_update is not None:
            self.auto_update.check_and_set_defaults()
        for vendor_id in self.vendor_ids:
            validate_vendor_id(vendor_id)

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True if auto-update is enabled and the last check is older than its interval."""
        if self.auto_update is None or self.auto_update.disable_auto_update:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self.last_timestamp > self.auto_update.interval

    def to_json(self) -> bytes:
        data: Dict[str, Any] = {
            "version": self.version,
            "lastTimestamp": _format_time(self.last_timestamp),
        }
        if self.commit:
            data["commit"] = self.commit
        if self.skip_verify:
            data["skipVerify"] = True
        if self.vendor_ids:
            data["vendorIDs"] = list(self.vendor_ids)
        if self.auto_update is not None:
            data["autoUpdate"] = self.auto_update.to_dict()
        return json.dumps(data, indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "CacheConfig":
        """
        Raises:
            CacheCorrupt: If raw is not a valid cache configuration
        """
        try:
            data = json.loads(raw)
            auto_update = data.get("autoUpdate")
            cfg = cls(
                version=data.get("version") or "",
                commit=data.get("commit") or "",
                skip_verify=bool(data.get("skipVerify", False)),
                vendor_ids=list(data.get("vendorIDs") or []),
                last_timestamp=_parse_time(data["lastTimestamp"]),
                auto_update=AutoUpdateConfig.from_dict(auto_update) if auto_update is not None else None,
            )
            cfg.check_and_set_defaults()
        except (ValueError, KeyError, TypeError, AttributeError, InvalidVendorID) as e:
            raise CacheCorrupt(f"invalid cache config: {e}") from e
        return cfg


# =============================================================================
# Files
# =============================================================================

def ensure_cache_dir(path: str) -> None:
    """Create path with 0700 permissions, tightening an existing directory."""
    if not os.path.exists(path):
        os.makedirs(path, mode=_CACHE_DIR_MODE)
    else:
        os.chmod(path, _CACHE_DIR_MODE)


def write_file(cache_dir: str, filename: str, data: bytes) -> None:
    """
    Write a cache file atomically with 0600 permissions.

    Empty data is not written.
    """
    if not data:
        return
    path = os.path.join(cache_dir, filename)
    tmp_path = path + ".tmp"
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _CACHE_FILE_MODE)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_file(cache_dir: str, filename: str, required: bool = True) -> bytes:
    """
    Read a cache file.

    Returns:
        The file contents, or b"" for a missing optional file
    """
    path = os.path.join(cache_dir, filename)
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError as e:
        if not required:
            return b""
        raise CacheCorrupt(f"failed to read {filename} from cache: {e}") from e
    except OSError as e:
        raise CacheCorrupt(f"failed to read {filename} from cache: {e}") from e


def encode_provenance(attestations: List[bytes]) -> bytes:
    """Serialise attestation bundles as a compact JSON array."""
    return json.dumps(
        [json.loads(a) for a in attestations], separators=(",", ":")
    ).encode("utf-8")


def decode_provenance(data: bytes) -> List[bytes]:
    """Inverse of encode_provenance; a single bundle object is also accepted."""
    if not data:
        return []
    try:
        decoded = json.loads(data)
    except ValueError as e:
        raise CacheCorrupt(f"invalid {PROVENANCE_FILENAME}: {e}") from e
    if isinstance(decoded, dict):
        decoded = [decoded]
    if not isinstance(decoded, list):
        raise CacheCorrupt(f"invalid {PROVENANCE_FILENAME}: expected a JSON array")
    return [json.dumps(item).encode("utf-8") for item in decoded]


# =============================================================================
# Bundle assets
# =============================================================================

@dataclass
class BundleAssets:
    """A release's bundles and the assets needed to verify them."""
    root_bundle: bytes = b""
    intermediate_bundle: bytes = b""
    checksums: bytes = b""
    checksums_signature: bytes = b""
    attestations: List[bytes] = field(default_factory=list)
    trusted_root: bytes = b""

    @property
    def has_verification_assets(self) -> bool:
        return bool(self.checksums and self.checksums_signature and self.attestations)


@dataclass
class CachedBundle:
    assets: BundleAssets
    config: CacheConfig
    stale: bool = False


def load_config(cache_dir: str) -> CacheConfig:
    return CacheConfig.from_json(read_file(cache_dir, CONFIG_FILENAME))


def check_cache_exists(cache_dir: str, version: str) -> bool:
    """True if cache_dir holds a complete cache for release `version`."""
    try:
        cfg = load_config(cache_dir)
    except CacheCorrupt:
        return False
    if cfg.version != version:
        return False
    required = [ROOT_BUNDLE_FILENAME]
    if not cfg.skip_verify:
        required += [CHECKSUMS_FILENAME, CHECKSUMS_SIGNATURE_FILENAME, PROVENANCE_FILENAME]
    return all(os.path.isfile(os.path.join(cache_dir, name)) for name in required)


def load(cache_dir: str, with_verification_assets: bool = True,
         allow_stale: bool = True) -> CachedBundle:
    """
    Load the cached bundle and, if requested, its verification assets.

    Raises:
        OfflineAndEmpty: If the cache holds no bundle
        CacheCorrupt: If a cache file cannot be decoded
        IncompleteCache: If verification assets were requested but are missing
        CacheStale: If allow_stale is False and the cache is due for a refresh
    """
    if not os.path.isfile(os.path.join(cache_dir, CONFIG_FILENAME)) or \
            not os.path.isfile(os.path.join(cache_dir, ROOT_BUNDLE_FILENAME)):
        raise OfflineAndEmpty(f"no cached bundle found in {cache_dir}")

    cfg = load_config(cache_dir)
    stale = cfg.is_stale()
    if stale and not allow_stale:
        raise CacheStale(
            f"cached bundle {cfg.version} was last checked at {_format_time(cfg.last_timestamp)}"
        )

    assets = BundleAssets(
        root_bundle=read_file(cache_dir, ROOT_BUNDLE_FILENAME),
        intermediate_bundle=read_file(cache_dir, INTERMEDIATE_BUNDLE_FILENAME, required=False),
        trusted_root=read_file(cache_dir, TRUSTED_ROOT_FILENAME, required=False),
    )
    if with_verification_assets:
        if cfg.skip_verify:
            raise IncompleteCache()
        assets.checksums = read_file(cache_dir, CHECKSUMS_FILENAME, required=False)
        assets.checksums_signature = read_file(cache_dir, CHECKSUMS_SIGNATURE_FILENAME, required=False)
        assets.attestations = decode_provenance(read_file(cache_dir, PROVENANCE_FILENAME, required=False))
        if not assets.has_verification_assets:
            raise IncompleteCache()

    logger.debug("Loaded bundle %s from cache %s", cfg.version, cache_dir)
    return CachedBundle(assets=assets, config=cfg, stale=stale)


def save(cache_dir: str, assets: BundleAssets, cfg: CacheConfig) -> None:
    """Write every non-empty asset and the cache configuration."""
    ensure_cache_dir(cache_dir)
    write_file(cache_dir, ROOT_BUNDLE_FILENAME, assets.root_bundle)
    write_file(cache_dir, INTERMEDIATE_BUNDLE_FILENAME, assets.intermediate_bundle)
    write_file(cache_dir, CHECKSUMS_FILENAME, assets.checksums)
    write_file(cache_dir, CHECKSUMS_SIGNATURE_FILENAME, assets.checksums_signature)
    if assets.attestations:
        write_file(cache_dir, PROVENANCE_FILENAME, encode_provenance(assets.attestations))
    write_file(cache_dir, TRUSTED_ROOT_FILENAME, assets.trusted_root)
    # Written last so a partial save is never taken for a complete cache
    write_file(cache_dir, CONFIG_FILENAME, cfg.to_json())
    logger.debug("Saved bundle %s to cache %s", cfg.version, cache_dir)
