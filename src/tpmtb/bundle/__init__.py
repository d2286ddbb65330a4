from .metadata import (
    BundleMetadata,
    BundleType,
    INTERMEDIATE_BUNDLE_FILENAME,
    ROOT_BUNDLE_FILENAME,
    parse_metadata,
)
from .generator import GenerateOptions, Generator, generate_bundle
from .parser import parse_bundle, parse_entries
from .validator import BundleValidator, check_bundle, validate_bundle

__all__ = [
    'BundleMetadata',
    'BundleType',
    'INTERMEDIATE_BUNDLE_FILENAME',
    'ROOT_BUNDLE_FILENAME',
    'parse_metadata',
    'GenerateOptions',
    'Generator',
    'generate_bundle',
    'parse_bundle',
    'parse_entries',
    'BundleValidator',
    'check_bundle',
    'validate_bundle',
]
