__version__ = "0.1.0"

from .cache import AutoUpdateConfig, Environment
from .client import (
    GetConfig,
    LoadConfig,
    SaveConfig,
    TrustedBundle,
    VerifyConfig,
    get_trusted_bundle,
    load_trusted_bundle,
    save_trusted_bundle,
    verify_trusted_bundle,
)
from .errors import BundleVerificationFailed, TrustBundleError
from .sigstore import VerifyResult

__all__ = [
    'AutoUpdateConfig',
    'Environment',
    'GetConfig',
    'LoadConfig',
    'SaveConfig',
    'TrustedBundle',
    'VerifyConfig',
    'get_trusted_bundle',
    'load_trusted_bundle',
    'save_trusted_bundle',
    'verify_trusted_bundle',
    'BundleVerificationFailed',
    'TrustBundleError',
    'VerifyResult',
]
