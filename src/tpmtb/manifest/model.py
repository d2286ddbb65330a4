"""
In-memory model of the TPM roots manifest (``.tpm-roots.yaml``).

The manifest lists vendors keyed by their TCG vendor ID, each with an
ordered list of certificate sources and the fingerprints they must
match. File URIs may be anchored at the manifest directory through the
``{repo}`` token, which is expanded on load and restored on save.
"""

import copy
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

import yaml

from .. import fingerprint as fp
from ..errors import ManifestInvariantError, ManifestParseError

REPO_PLACEHOLDER = "{repo}"

ALLOWED_URI_SCHEMES = ("https", "file")

# Characters left untouched when re-encoding a URL path
_URL_PATH_SAFE = "/:@!$&'()*+,;=%~"


def canonical_url(raw_url: str) -> str:
    """
    Re-emit a URL through the URL parser so its percent-encoding is stable.

    Spaces and other unsafe characters in the path are escaped, existing
    escapes are kept as they are.
    """
    if not raw_url:
        return raw_url
    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return raw_url
    return urlunsplit((
        parts.scheme,
        parts.netloc,
        quote(parts.path, safe=_URL_PATH_SAFE),
        parts.query,
        parts.fragment,
    ))


# =============================================================================
# Manifest entities
# =============================================================================

@dataclass
class Fingerprint:
    """Expected digests of a certificate's DER encoding."""
    sha1: str = ""
    sha256: str = ""
    sha384: str = ""
    sha512: str = ""

    def check_and_set_defaults(self) -> None:
        if not (self.sha1 or self.sha256 or self.sha384 or self.sha512):
            raise ManifestInvariantError(
                "invalid input: at least one fingerprint (sha1, sha256, sha384, sha512) must be provided"
            )

    def value(self) -> Tuple[str, str]:
        """Return (fingerprint, algorithm) for the most secure algorithm present."""
        for alg in fp.ALGORITHMS:
            current = getattr(self, alg)
            if current:
                return current, alg
        return self.sha1, fp.SHA1

    def items(self) -> List[Tuple[str, str]]:
        """Non-empty (algorithm, fingerprint) pairs in file order."""
        pairs = [
            (fp.SHA1, self.sha1),
            (fp.SHA256, self.sha256),
            (fp.SHA384, self.sha384),
            (fp.SHA512, self.sha512),
        ]
        return [(alg, value) for alg, value in pairs if value]

    @classmethod
    def of(cls, alg: str, value: str) -> "Fingerprint":
        result = cls()
        setattr(result, alg.lower(), value)
        return result


@dataclass
class Certificate:
    """A single certificate source within a vendor."""
    name: str
    fingerprint: Fingerprint
    url: str = ""  # Deprecated in favour of uri
    uri: str = ""

    def check_and_set_defaults(self) -> None:
        if not self.name:
            raise ManifestInvariantError("invalid input: 'name' cannot be empty")
        if not self.url and not self.uri:
            raise ManifestInvariantError("invalid input: either 'url' or 'uri' must be provided")
        if self.uri:
            try:
                scheme = urlsplit(self.uri).scheme
            except ValueError as e:
                raise ManifestInvariantError(f"invalid uri: {e}") from e
            if scheme not in ALLOWED_URI_SCHEMES:
                raise ManifestInvariantError(
                    f"invalid uri scheme '{scheme}': must be 'https' or 'file'"
                )
        try:
            self.fingerprint.check_and_set_defaults()
        except ManifestInvariantError as e:
            raise ManifestInvariantError(f"validation: {e}") from e

    @property
    def source_location(self) -> str:
        return self.uri or self.url

    @property
    def is_remote_source(self) -> bool:
        return self.source_location.startswith("https://")

    def equal(self, other: Optional["Certificate"]) -> bool:
        """
        Two entries describe the same certificate if they share a name,
        a source location or any fingerprint value.
        """
        if other is None:
            return False
        if self.name == other.name or self.source_location == other.source_location:
            return True
        mine = {fp.format_fingerprint(value) for _, value in self.fingerprint.items()}
        theirs = {fp.format_fingerprint(value) for _, value in other.fingerprint.items()}
        return bool(mine & theirs)


@dataclass
class Vendor:
    """A TPM manufacturer and its root certificates."""
    id: str
    name: str
    certificates: List[Certificate] = field(default_factory=list)

    def check_and_set_defaults(self) -> None:
        if not self.name:
            raise ManifestInvariantError("invalid input: 'name' cannot be empty")
        for i, cert in enumerate(self.certificates):
            try:
                cert.check_and_set_defaults()
            except ManifestInvariantError as e:
                label = f"certificate.name: {cert.name}" if cert.name else f"certificate[{i}]"
                raise ManifestInvariantError(f"{label}: {e}") from e


@dataclass
class Config:
    """The whole manifest document."""
    version: str
    vendors: List[Vendor] = field(default_factory=list)

    def check_and_set_defaults(self) -> None:
        if not self.version:
            raise ManifestInvariantError("invalid input: 'version' cannot be empty")
        if not self.vendors:
            raise ManifestInvariantError("invalid input: at least one vendor must be defined")
        for i, vendor in enumerate(self.vendors):
            try:
                vendor.check_and_set_defaults()
            except ManifestInvariantError as e:
                label = f"vendor.name: {vendor.name}" if vendor.name else f"vendor[{i}]"
                raise ManifestInvariantError(f"{label}: {e}") from e

    def total_certificates(self) -> int:
        return sum(len(vendor.certificates) for vendor in self.vendors)

    def find_vendor(self, vendor_id: str) -> Optional[Vendor]:
        for vendor in self.vendors:
            if vendor.id == vendor_id:
                return vendor
        return None

    def resolve_file_placeholders(self, source_dir: str) -> None:
        """Replace ``/{repo}`` in file URIs with the absolute source_dir."""
        self._transform_file_placeholders(source_dir, to_placeholder=False)

    def create_file_placeholders(self, source_dir: str) -> None:
        """Replace the absolute source_dir in file URIs with ``/{repo}``."""
        self._transform_file_placeholders(source_dir, to_placeholder=True)

    def _transform_file_placeholders(self, source_dir: str, to_placeholder: bool) -> None:
        abs_dir = os.path.abspath(source_dir)
        token = "/" + REPO_PLACEHOLDER
        for vendor in self.vendors:
            for cert in vendor.certificates:
                if not cert.uri or cert.is_remote_source:
                    continue
                parts = urlsplit(cert.uri)
                if to_placeholder:
                    path = parts.path
                    if path == abs_dir:
                        path = token
                    elif path.startswith(abs_dir + "/"):
                        path = token + path[len(abs_dir):]
                else:
                    path = parts.path.replace(token, abs_dir)
                cert.uri = f"{parts.scheme}://{path}"


# =============================================================================
# Decoding
# =============================================================================

def _node_to_python(node: yaml.Node) -> Any:
    """
    Convert a composed YAML node into plain Python values.

    Scalars are kept as their source text so that values like
    ``12:34:56`` are never resolved as YAML 1.1 sexagesimal numbers.
    """
    if isinstance(node, yaml.MappingNode):
        return {
            _node_to_python(key): _node_to_python(value)
            for key, value in node.value
        }
    if isinstance(node, yaml.SequenceNode):
        return [_node_to_python(item) for item in node.value]
    if node.tag == "tag:yaml.org,2002:null":
        return None
    return node.value


def _expect(value: Any, kind: type, where: str, path: str) -> Any:
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ManifestParseError(
            f"failed to parse YAML: '{where}' must be a {kind.__name__}", path=path
        )
    return value


def _decode_certificate(data: Any, path: str) -> Certificate:
    data = _expect(data, dict, "certificate", path)
    validation = _expect(data.get("validation"), dict, "validation", path)
    fingerprints = _expect(validation.get("fingerprint"), dict, "fingerprint", path)
    return Certificate(
        name=data.get("name") or "",
        url=data.get("url") or "",
        uri=data.get("uri") or "",
        fingerprint=Fingerprint(
            sha1=fingerprints.get("sha1") or "",
            sha256=fingerprints.get("sha256") or "",
            sha384=fingerprints.get("sha384") or "",
            sha512=fingerprints.get("sha512") or "",
        ),
    )


def _decode_config(data: Any, path: str) -> Config:
    data = _expect(data, dict, "document", path)
    vendors = []
    for item in _expect(data.get("vendors"), list, "vendors", path):
        item = _expect(item, dict, "vendor", path)
        vendors.append(Vendor(
            id=item.get("id") or "",
            name=item.get("name") or "",
            certificates=[
                _decode_certificate(cert, path)
                for cert in _expect(item.get("certificates"), list, "certificates", path)
            ],
        ))
    return Config(version=data.get("version") or "", vendors=vendors)


def compose_document(text: str, path: str = "") -> Optional[yaml.Node]:
    """Compose text into a YAML node graph, wrapping parser errors."""
    try:
        return yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as e:
        line = 0
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line = mark.line + 1
        raise ManifestParseError(f"failed to parse YAML: {e}", path=path, line=line) from e


def parse_config(text: str, path: str = "") -> Config:
    """Decode and validate manifest text."""
    node = compose_document(text, path)
    cfg = _decode_config(_node_to_python(node) if node is not None else None, path)
    try:
        cfg.check_and_set_defaults()
    except ManifestInvariantError as e:
        raise ManifestInvariantError(f"invalid configuration: {e}", path=path) from e
    return cfg


def load_config(path: str) -> Config:
    """
    Load a manifest from disk.

    Raises:
        ManifestParseError: If the file cannot be read or decoded
        ManifestInvariantError: If the decoded manifest is invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ManifestParseError(f"failed to read config file: {e}", path=path) from e
    return parse_config(text, path)


def load_config_with_dynamic_uri_resolution(path: str) -> Config:
    """Load a manifest and expand ``{repo}`` tokens against its directory."""
    cfg = load_config(path)
    cfg.resolve_file_placeholders(os.path.dirname(path) or ".")
    return cfg


# =============================================================================
# Encoding
# =============================================================================

def _quote(value: str) -> str:
    # A JSON string literal is a valid YAML double-quoted scalar
    return json.dumps(value, ensure_ascii=False)


def dump_config(cfg: Config) -> str:
    """
    Serialise a manifest with every string value double-quoted.

    Collections are written in their current order; sorting is the
    formatter's job. The output starts with the ``---`` marker.
    """
    lines = ["---", f"version: {_quote(cfg.version)}"]
    if not cfg.vendors:
        lines.append("vendors: []")
    else:
        lines.append("vendors:")
    for vendor in cfg.vendors:
        lines.append(f"    - id: {_quote(vendor.id)}")
        lines.append(f"      name: {_quote(vendor.name)}")
        if not vendor.certificates:
            lines.append("      certificates: []")
            continue
        lines.append("      certificates:")
        for cert in vendor.certificates:
            lines.append(f"        - name: {_quote(cert.name)}")
            if cert.url:
                lines.append(f"          url: {_quote(cert.url)}")
            if cert.uri:
                lines.append(f"          uri: {_quote(cert.uri)}")
            lines.append("          validation:")
            lines.append("            fingerprint:")
            for alg, value in cert.fingerprint.items():
                lines.append(f"                {alg}: {_quote(value)}")
    return "\n".join(lines) + "\n"


def to_dict(cfg: Config) -> Dict[str, Any]:
    """Plain-data view of a manifest, used for JSON output."""
    return {
        "version": cfg.version,
        "vendors": [
            {
                "id": vendor.id,
                "name": vendor.name,
                "certificates": [
                    {
                        "name": cert.name,
                        "location": cert.source_location,
                        "fingerprint": dict(cert.fingerprint.items()),
                    }
                    for cert in vendor.certificates
                ],
            }
            for vendor in cfg.vendors
        ],
    }


def save_config(path: str, cfg: Config) -> None:
    """
    Validate and write a manifest, restoring ``{repo}`` tokens.

    The caller's Config is left untouched.
    """
    try:
        cfg.check_and_set_defaults()
    except ManifestInvariantError as e:
        raise ManifestInvariantError(f"invalid configuration: {e}", path=path) from e
    out = copy.deepcopy(cfg)
    out.create_file_placeholders(os.path.dirname(path) or ".")
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(dump_config(out))
    except OSError as e:
        raise ManifestParseError(f"failed to write config file: {e}", path=path) from e
