"""
Command line interface.

Usage:
    tpmtb bundle generate --commit <sha> [--config .tpm-roots.yaml] [--output <file>]
    tpmtb bundle verify <bundle> [--checksums-file <file>] [--checksums-signature <file>]
    tpmtb bundle download [--date YYYY-MM-DD] [--output-dir <dir>|-]
    tpmtb bundle list [--limit N] [--sort asc|desc]
    tpmtb bundle validate <bundle>
    tpmtb bundle save --output-dir <dir>
    tpmtb config format|validate|sanity [--config <file>]
    tpmtb config certificates add|remove|list
    tpmtb config vendors add|list
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .bundle import BundleType, GenerateOptions, generate_bundle, parse_metadata, validate_bundle
from .cache import AutoUpdateConfig, Environment, decode_provenance
from .client import GetConfig, SaveConfig, VerifyConfig, get_trusted_bundle, save_trusted_bundle, verify_trusted_bundle
from .errors import TrustBundleError
from .github import SORT_ASC, SORT_DESC, SOURCE_REPO, GitHubClient, Repo
from .manifest import SanityChecker, format_file, load_config_with_dynamic_uri_resolution, needs_formatting, validate_file
from .manifest import editor
from .manifest.sanity import DEFAULT_THRESHOLD_DAYS
from .sigstore import find_checksum_files

DEFAULT_ROOTS_CONFIG = ".tpm-roots.yaml"
STDOUT = "-"

logger = logging.getLogger(__name__)


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _environment() -> Environment:
    return Environment.from_env()


# =============================================================================
# bundle
# =============================================================================

def cmd_bundle_generate(args) -> int:
    """Generate a bundle from a manifest."""
    opts = GenerateOptions(
        config_path=args.config,
        output_path=args.output or "",
        workers=args.workers,
        date=args.date or "",
        commit=args.commit,
        bundle_type=BundleType(args.type),
    )
    text = generate_bundle(opts, session=_environment().session)
    logger.info("Bundle written to %s (%d bytes)", opts.output_path, len(text))
    return 0


def cmd_bundle_verify(args) -> int:
    """Verify a bundle against its signed checksums and provenance."""
    bundle = _read(args.bundle)
    metadata = parse_metadata(bundle)
    if args.date:
        metadata.date = args.date
    if args.commit:
        metadata.commit = args.commit

    checksums_path, signature_path = args.checksums_file, args.checksums_signature
    if not checksums_path and not signature_path:
        checksums_path, signature_path = find_checksum_files(args.bundle)
        if checksums_path:
            logger.debug("Using %s and %s", checksums_path, signature_path)

    cfg = VerifyConfig(
        bundle=bundle,
        metadata=metadata,
        bundle_filename=os.path.basename(args.bundle),
        checksums=_read(checksums_path) if checksums_path else b"",
        checksums_signature=_read(signature_path) if signature_path else b"",
        attestations=decode_provenance(_read(args.provenance)) if args.provenance else None,
        source_repo=Repo.parse(args.source_repo),
        trusted_root_path=args.trusted_root or "",
        offline=args.offline,
        require_all_attestations=args.require_all_attestations,
        env=_environment(),
    )
    result = verify_trusted_bundle(cfg)
    logger.info("Bundle verified: %s (%d attestation(s) accepted)", result.digest, len(result.accepted))
    return 0


def cmd_bundle_download(args) -> int:
    """Download and verify a released bundle."""
    bundle_type = BundleType(args.type)
    trusted = get_trusted_bundle(GetConfig(
        date=args.date or "",
        skip_verify=args.skip_verify,
        disable_local_cache=True,
        auto_update=AutoUpdateConfig(disable_auto_update=True),
        source_repo=Repo.parse(args.source_repo),
        env=_environment(),
    ))
    data = trusted.raw_intermediate if bundle_type is BundleType.INTERMEDIATE else trusted.raw_root
    if not data:
        raise TrustBundleError(f"release {trusted.date} has no {bundle_type.value} bundle")

    if args.output_dir == STDOUT:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        return 0

    path = os.path.join(args.output_dir, bundle_type.default_filename)
    if os.path.exists(path) and not args.force:
        raise TrustBundleError(f"file {path} already exists (use --force to overwrite)")
    os.makedirs(args.output_dir, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    logger.info("Bundle %s saved to %s", trusted.date, path)
    return 0


def cmd_bundle_list(args) -> int:
    """List bundle releases."""
    env = _environment()
    client = GitHubClient(token=env.github_token, session=env.session)
    for release in client.get_releases(Repo.parse(args.source_repo), page_size=args.limit,
                                       sort_order=args.sort):
        print(release.tag_name)
    return 0


def cmd_bundle_validate(args) -> int:
    """Check the format of a bundle file."""
    errors = validate_bundle(_read(args.bundle))
    if errors:
        if not args.quiet:
            for error in errors:
                logger.error("%s: %s", args.bundle, error)
        return 1
    logger.info("%s is valid", args.bundle)
    return 0


def cmd_bundle_save(args) -> int:
    """Save a verified release for offline use."""
    assets = save_trusted_bundle(
        SaveConfig(
            date=args.date or "",
            skip_verify=args.skip_verify,
            source_repo=Repo.parse(args.source_repo),
            env=_environment(),
        ),
        args.output_dir,
    )
    logger.info("Saved %s to %s", parse_metadata(assets.root_bundle).date, args.output_dir)
    return 0


# =============================================================================
# config
# =============================================================================

def cmd_config_format(args) -> int:
    """Format a manifest in place."""
    if args.dry_run:
        if needs_formatting(args.config):
            logger.warning("%s needs formatting", args.config)
            return 1
        logger.info("%s is already formatted", args.config)
        return 0
    format_file(args.config, args.output or args.config)
    logger.info("Formatted %s", args.output or args.config)
    return 0


def cmd_config_validate(args) -> int:
    """Validate a manifest."""
    errors = validate_file(args.config)
    if errors:
        if not args.quiet:
            for error in errors:
                logger.error("%s: %s", args.config, error)
        return 1
    logger.info("%s is valid", args.config)
    return 0


def cmd_config_sanity(args) -> int:
    """Download every certificate and report fingerprint and expiry problems."""
    cfg = load_config_with_dynamic_uri_resolution(args.config)
    result = SanityChecker(session=_environment().session).check(
        cfg, workers=args.workers, threshold_days=args.threshold
    )
    if not args.quiet:
        if result.validation_errors:
            logger.error("Validation errors:")
            for error in result.validation_errors:
                logger.error("%s", error)
        if result.expiration_warnings:
            logger.warning("Certificates expiring within %d days:", args.threshold)
            for warning in result.expiration_warnings:
                logger.warning("%s", warning)
    if result.has_issues():
        return 1
    logger.info("All %d certificates passed", cfg.total_certificates())
    return 0


def cmd_certificates_add(args) -> int:
    """Add certificates to a vendor."""
    result = editor.add_certificates(
        args.config,
        args.vendor_id,
        args.uri,
        name=args.name or "",
        fingerprints=args.fingerprint or (),
        hash_algorithm=args.hash_algorithm,
        workers=args.workers,
        session=_environment().session,
    )
    for cert in result.added:
        logger.info("Added certificate '%s' to vendor %s", cert.name, args.vendor_id)
    for failure in result.failures:
        logger.error("Failed to add %s", failure)
    return 1 if result.failures else 0


def cmd_certificates_remove(args) -> int:
    """Remove a certificate from a vendor."""
    removed = editor.remove_certificate(args.config, args.vendor_id, args.name)
    logger.info("Removed certificate '%s' from vendor %s", removed.name, args.vendor_id)
    return 0


def cmd_certificates_list(args) -> int:
    """List the certificates of the manifest."""
    for vendor, cert in editor.list_certificates(args.config, args.vendor_id or ""):
        print(f"{vendor.id}\t{cert.name}\t{cert.source_location}")
    return 0


def cmd_vendors_add(args) -> int:
    """Add a vendor."""
    vendor = editor.add_vendor(args.config, args.id, args.name)
    logger.info("Added vendor %s (%s)", vendor.id, vendor.name)
    return 0


def cmd_vendors_list(args) -> int:
    """List the vendors of the manifest."""
    for vendor in editor.list_vendors(args.config):
        print(f"{vendor.id}\t{vendor.name}\t{len(vendor.certificates)}")
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    common.add_argument("-q", "--quiet", action="store_true", help="Only report the exit code")

    parser = argparse.ArgumentParser(
        prog="tpmtb",
        description="Build, verify and distribute TPM trust bundles",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    groups = parser.add_subparsers(dest="group", required=True)

    # bundle
    bundle = groups.add_parser("bundle", help="Generate, verify and download bundles")
    bundle_cmds = bundle.add_subparsers(dest="command", required=True)

    p = bundle_cmds.add_parser("generate", help="Generate a bundle from a manifest", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--output", help="Output file (default depends on --type)")
    p.add_argument("--workers", type=int, default=0, help="Parallel downloads (0 = auto)")
    p.add_argument("--date", help="Bundle date (YYYY-MM-DD, default today)")
    p.add_argument("--commit", required=True, help="Source commit (40 hex characters)")
    p.add_argument("--type", choices=[t.value for t in BundleType], default=BundleType.ROOT.value)
    p.set_defaults(func=cmd_bundle_generate)

    p = bundle_cmds.add_parser("verify", help="Verify a bundle", parents=[common])
    p.add_argument("bundle", help="Bundle file")
    p.add_argument("--checksums-file", help="checksums.txt (default: next to the bundle)")
    p.add_argument("--checksums-signature", help="checksums.txt.sigstore.json")
    p.add_argument("--provenance", help="JSON file of attestation bundles")
    p.add_argument("--trusted-root", help="Sigstore trusted_root.json for offline verification")
    p.add_argument("--date", help="Override the bundle date")
    p.add_argument("--commit", help="Override the bundle commit")
    p.add_argument("--offline", action="store_true", help="Do not contact GitHub or TUF")
    p.add_argument("--require-all-attestations", action="store_true",
                   help="Fail if any attestation is rejected")
    p.add_argument("--source-repo", default=str(SOURCE_REPO), help="owner/name of the release repository")
    p.set_defaults(func=cmd_bundle_verify)

    p = bundle_cmds.add_parser("download", help="Download a verified bundle", parents=[common])
    p.add_argument("--date", help="Release date (default: latest)")
    p.add_argument("--output-dir", default=".", help="Output directory, '-' for stdout")
    p.add_argument("--type", choices=[t.value for t in BundleType], default=BundleType.ROOT.value)
    p.add_argument("--skip-verify", action="store_true", help="Skip verification")
    p.add_argument("--force", action="store_true", help="Overwrite existing files")
    p.add_argument("--source-repo", default=str(SOURCE_REPO), help="owner/name of the release repository")
    p.set_defaults(func=cmd_bundle_download)

    p = bundle_cmds.add_parser("list", help="List bundle releases", parents=[common])
    p.add_argument("--limit", type=int, default=10, help="Number of releases (max 100)")
    p.add_argument("--sort", choices=[SORT_ASC, SORT_DESC], default=SORT_DESC)
    p.add_argument("--source-repo", default=str(SOURCE_REPO), help="owner/name of the release repository")
    p.set_defaults(func=cmd_bundle_list)

    p = bundle_cmds.add_parser("validate", help="Validate a bundle file", parents=[common])
    p.add_argument("bundle", help="Bundle file")
    p.set_defaults(func=cmd_bundle_validate)

    p = bundle_cmds.add_parser("save", help="Save a release for offline use", parents=[common])
    p.add_argument("--date", help="Release date (default: latest)")
    p.add_argument("--output-dir", required=True, help="Destination directory")
    p.add_argument("--skip-verify", action="store_true", help="Skip verification")
    p.add_argument("--source-repo", default=str(SOURCE_REPO), help="owner/name of the release repository")
    p.set_defaults(func=cmd_bundle_save)

    # config
    config = groups.add_parser("config", help="Edit and check manifests")
    config_cmds = config.add_subparsers(dest="command", required=True)

    p = config_cmds.add_parser("format", help="Format a manifest", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--output", help="Write to this file instead of in place")
    p.add_argument("--dry-run", action="store_true", help="Only report whether formatting is needed")
    p.set_defaults(func=cmd_config_format)

    p = config_cmds.add_parser("validate", help="Validate a manifest", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.set_defaults(func=cmd_config_validate)

    p = config_cmds.add_parser("sanity", help="Check fingerprints and expiry", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--workers", type=int, default=0, help="Parallel downloads (0 = auto)")
    p.add_argument("--threshold", type=int, default=DEFAULT_THRESHOLD_DAYS,
                   help="Warn about certificates expiring within this many days")
    p.set_defaults(func=cmd_config_sanity)

    certificates = config_cmds.add_parser("certificates", help="Manage certificates")
    cert_cmds = certificates.add_subparsers(dest="action", required=True)

    p = cert_cmds.add_parser("add", help="Add certificates", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--vendor-id", required=True)
    p.add_argument("--uri", action="append", required=True, help="https:// or file:// URI (repeatable)")
    p.add_argument("--name", help="Certificate name (single URI only)")
    p.add_argument("--fingerprint", action="append", help="Expected ALG:HEX fingerprint (repeatable)")
    p.add_argument("--hash-algorithm", default="sha256", help="Algorithm of computed fingerprints")
    p.add_argument("--workers", type=int, default=0, help="Parallel downloads (0 = auto)")
    p.set_defaults(func=cmd_certificates_add)

    p = cert_cmds.add_parser("remove", help="Remove a certificate", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--vendor-id", required=True)
    p.add_argument("--name", required=True)
    p.set_defaults(func=cmd_certificates_remove)

    p = cert_cmds.add_parser("list", help="List certificates", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--vendor-id")
    p.set_defaults(func=cmd_certificates_list)

    vendors = config_cmds.add_parser("vendors", help="Manage vendors")
    vendor_cmds = vendors.add_subparsers(dest="action", required=True)

    p = vendor_cmds.add_parser("add", help="Add a vendor", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.add_argument("--id", required=True, help="TCG vendor ID")
    p.add_argument("--name", required=True, help="Display name")
    p.set_defaults(func=cmd_vendors_add)

    p = vendor_cmds.add_parser("list", help="List vendors", parents=[common])
    p.add_argument("--config", default=DEFAULT_ROOTS_CONFIG, help="Manifest path")
    p.set_defaults(func=cmd_vendors_list)

    return parser


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.CRITICAL
    logging.basicConfig(format="%(message)s", level=level, stream=sys.stderr, force=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        return args.func(args)
    except (TrustBundleError, ValueError, OSError) as e:
        logger.error("Error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
