from .model import (
    Certificate,
    Config,
    Fingerprint,
    Vendor,
    dump_config,
    load_config,
    load_config_with_dynamic_uri_resolution,
    parse_config,
    save_config,
)
from .formatter import format_config, format_file, format_text, needs_formatting
from .validator import YAMLValidator, validate_file
from .sanity import Checker as SanityChecker

__all__ = [
    'Certificate',
    'Config',
    'Fingerprint',
    'Vendor',
    'dump_config',
    'load_config',
    'load_config_with_dynamic_uri_resolution',
    'parse_config',
    'save_config',
    'format_config',
    'format_file',
    'format_text',
    'needs_formatting',
    'YAMLValidator',
    'validate_file',
    'SanityChecker',
]
