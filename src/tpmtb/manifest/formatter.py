"""
Canonical formatting of the manifest.

Formatting sorts vendors by ID and certificates by name (both in byte
order), rewrites fingerprints in canonical form, re-encodes URLs and
double-quotes every string value. Formatting is idempotent.
"""

import copy
from urllib.parse import urlsplit

from .. import fingerprint as fp
from ..errors import ManifestParseError
from .model import Config, canonical_url, dump_config, load_config, parse_config


def _encode_uri(raw_uri: str) -> str:
    if not raw_uri:
        return raw_uri
    try:
        scheme = urlsplit(raw_uri).scheme
    except ValueError:
        return raw_uri
    if scheme == "https":
        return canonical_url(raw_uri)
    return raw_uri


def apply_formatting(cfg: Config) -> Config:
    """Return a canonicalised copy of cfg."""
    out = copy.deepcopy(cfg)
    out.vendors.sort(key=lambda vendor: vendor.id)
    for vendor in out.vendors:
        vendor.certificates.sort(key=lambda cert: cert.name)
        for cert in vendor.certificates:
            cert.url = canonical_url(cert.url)
            cert.uri = _encode_uri(cert.uri)
            fingerprints = cert.fingerprint
            fingerprints.sha1 = fp.format_fingerprint(fingerprints.sha1)
            fingerprints.sha256 = fp.format_fingerprint(fingerprints.sha256)
            fingerprints.sha384 = fp.format_fingerprint(fingerprints.sha384)
            fingerprints.sha512 = fp.format_fingerprint(fingerprints.sha512)
    return out


def format_config(cfg: Config) -> str:
    """Canonical serialisation of cfg."""
    return dump_config(apply_formatting(cfg))


def format_text(text: str, path: str = "") -> str:
    """Canonical serialisation of manifest text."""
    return format_config(parse_config(text, path))


def format_file(input_path: str, output_path: str = "") -> str:
    """
    Format a manifest file.

    Args:
        input_path: Manifest to read
        output_path: Destination, defaults to input_path

    Returns:
        The formatted text that was written
    """
    formatted = format_config(load_config(input_path))
    destination = output_path or input_path
    try:
        with open(destination, "w", encoding="utf-8") as f:
            f.write(formatted)
    except OSError as e:
        raise ManifestParseError(f"failed to write output file: {e}", path=destination) from e
    return formatted


def needs_formatting(path: str) -> bool:
    """True if the canonical serialisation differs from the file's bytes."""
    cfg = load_config(path)
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            original = f.read()
    except OSError as e:
        raise ManifestParseError(f"failed to read original file: {e}", path=path) from e
    return format_config(cfg) != original
