"""
Line-aware validation of the manifest file.

The validator reports up to `max_errors` problems, each tied to the
source line of the offending YAML node. Structural decoding errors are
raised rather than collected.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import yaml

from .. import fingerprint as fp
from ..errors import ManifestParseError
from ..vendors import is_valid_vendor_id
from .checks import contains_certificate
from .model import Config, canonical_url, compose_document, parse_config

DEFAULT_MAX_ERRORS = 10

_STR_TAG = "tag:yaml.org,2002:str"


@dataclass
class ValidationError:
    """A single problem found in a manifest, with its 1-based line."""
    line: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.message}"


class YAMLValidator:
    """Collects canonical-form violations for a manifest document."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS):
        self.max_errors = max_errors
        self.errors: List[ValidationError] = []
        self._line_mapping: Dict[str, int] = {}

    def validate_file(self, path: str) -> List[ValidationError]:
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                text = f.read()
        except OSError as e:
            raise ManifestParseError(f"failed to read file: {e}", path=path) from e
        return self.validate_text(text, path)

    def validate_text(self, text: str, path: str = "") -> List[ValidationError]:
        self.errors = []
        self._line_mapping = {}

        self._validate_document_marker(text)
        cfg = parse_config(text, path)
        root = compose_document(text, path)
        self._walk(root, "")

        self._validate_vendor_ids(cfg)
        self._validate_duplicate_vendor_ids(cfg)
        self._validate_vendors_sorting(cfg)
        self._validate_certificates_sorting(cfg)
        self._validate_duplicate_certificates(cfg)
        self._validate_url_encoding(cfg)
        self._validate_fingerprint_format(cfg)
        self._check_quotes(root, "")
        return self.errors

    def _add(self, line: int, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(ValidationError(line=line, message=message))

    def _add_at(self, path: str, message: str) -> None:
        self._add(self._line_mapping.get(path) or 1, message)

    # -------------------------------------------------------------------------
    # Line mapping
    # -------------------------------------------------------------------------

    def _walk(self, node: Optional[yaml.Node], path: str) -> None:
        if not isinstance(node, yaml.MappingNode):
            return
        for key_node, value_node in node.value:
            new_path = f"{path}.{key_node.value}" if path else key_node.value
            self._line_mapping[new_path] = key_node.start_mark.line + 1
            if isinstance(value_node, yaml.SequenceNode):
                for i, item in enumerate(value_node.value):
                    item_path = f"{new_path}[{i}]"
                    self._line_mapping[item_path] = item.start_mark.line + 1
                    self._walk(item, item_path)
            else:
                self._walk(value_node, new_path)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _validate_document_marker(self, text: str) -> None:
        if text.split("\n", 1)[0] != "---":
            self._add(1, "file must start with YAML document marker '---' on the first line")

    def _validate_vendor_ids(self, cfg: Config) -> None:
        for i, vendor in enumerate(cfg.vendors):
            if not is_valid_vendor_id(vendor.id):
                self._add_at(
                    f"vendors[{i}].id",
                    f"invalid vendor ID '{vendor.id}': not found in TCG TPM Vendor ID Registry",
                )

    def _validate_duplicate_vendor_ids(self, cfg: Config) -> None:
        seen: Dict[str, int] = {}
        for i, vendor in enumerate(cfg.vendors):
            if vendor.id in seen:
                self._add_at(
                    f"vendors[{i}].id",
                    f"duplicate vendor ID '{vendor.id}' (first defined at vendors[{seen[vendor.id]}])",
                )
            else:
                seen[vendor.id] = i

    def _validate_vendors_sorting(self, cfg: Config) -> None:
        ids = [vendor.id for vendor in cfg.vendors]
        for i, (got, expected) in enumerate(zip(ids, sorted(ids))):
            if got != expected:
                self._add_at(
                    f"vendors[{i}].id",
                    f"vendors not sorted by ID: expected '{expected}' at position {i}, got '{got}'",
                )

    def _validate_certificates_sorting(self, cfg: Config) -> None:
        for i, vendor in enumerate(cfg.vendors):
            names = [cert.name for cert in vendor.certificates]
            for j, (got, expected) in enumerate(zip(names, sorted(names))):
                if got != expected:
                    self._add_at(
                        f"vendors[{i}].certificates[{j}].name",
                        f"certificates not sorted by name in vendor '{vendor.id}': "
                        f"expected '{expected}' at position {j}, got '{got}'",
                    )

    def _validate_duplicate_certificates(self, cfg: Config) -> None:
        for i, vendor in enumerate(cfg.vendors):
            for j, cert in enumerate(vendor.certificates):
                if contains_certificate(vendor.certificates[:j], cert):
                    self._add_at(
                        f"vendors[{i}].certificates[{j}]",
                        f"duplicate certificate '{cert.name}' in vendor '{vendor.id}'",
                    )

    def _validate_url_encoding(self, cfg: Config) -> None:
        for i, vendor in enumerate(cfg.vendors):
            for j, cert in enumerate(vendor.certificates):
                field_name = "uri" if cert.uri else "url"
                location = cert.source_location
                path = f"vendors[{i}].certificates[{j}].{field_name}"
                try:
                    scheme = urlsplit(location).scheme
                except ValueError as e:
                    self._add_at(path, f"invalid URL: {e}")
                    continue
                if cert.uri and scheme == "file":
                    continue
                if scheme != "https":
                    self._add_at(path, f"URL must use HTTPS scheme: got '{scheme}'")
                    continue
                encoded = canonical_url(location)
                if encoded != location:
                    self._add_at(
                        path,
                        f"URL not properly encoded: got '{location}', expected '{encoded}'",
                    )

    def _validate_fingerprint_format(self, cfg: Config) -> None:
        for i, vendor in enumerate(cfg.vendors):
            for j, cert in enumerate(vendor.certificates):
                for alg, value in cert.fingerprint.items():
                    if not fp.is_canonical(value):
                        self._add_at(
                            f"vendors[{i}].certificates[{j}].validation.fingerprint.{alg}",
                            f"fingerprint not in uppercase with colons: got '{value}'",
                        )

    def _check_quotes(self, node: Optional[yaml.Node], path: str) -> None:
        if not isinstance(node, yaml.MappingNode):
            return
        for key_node, value_node in node.value:
            new_path = f"{path}.{key_node.value}" if path else key_node.value
            if isinstance(value_node, yaml.SequenceNode):
                for i, item in enumerate(value_node.value):
                    self._check_quotes(item, f"{new_path}[{i}]")
            elif isinstance(value_node, yaml.ScalarNode):
                if value_node.tag == _STR_TAG and value_node.style != '"':
                    self._add(
                        value_node.start_mark.line + 1,
                        f"string value not double-quoted at {new_path}: '{value_node.value}'",
                    )
            else:
                self._check_quotes(value_node, new_path)


def validate_file(path: str, max_errors: int = DEFAULT_MAX_ERRORS) -> List[ValidationError]:
    """Validate a manifest file and return the problems found."""
    return YAMLValidator(max_errors=max_errors).validate_file(path)
