"""
Unit tests for keyless bundle verification.

Signature and transparency log checks belong to sigstore and are mocked
here; the tests cover the identity policy and the release claims
checked on top of them.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from sigstore.errors import VerificationError

from tpmtb.errors import (
    BundleVerificationFailed,
    CertificateIdentityMismatch,
    SignatureVerificationFailed,
)
from tpmtb.github import Repo
from tpmtb.provenance import IN_TOTO_PAYLOAD_TYPE, SLSA_PROVENANCE_V1, parse_statement
from tpmtb.sigstore import (
    BundleVerifier,
    IdentityPolicy,
    PolicyConfig,
    SANPattern,
    find_checksum_files,
    fetch_trusted_root,
    load_trusted_root,
    parse_checksums,
    sha256_digest,
    validate_checksum,
)

from conftest import COMMIT, DATE, make_certificate


# =============================================================================
# Sample Data
# =============================================================================

BUNDLE_DATA = b"##\n## tpm-ca-certificates.pem\n##\n"
BUNDLE_FILENAME = "tpm-ca-certificates.pem"
BUNDLE_HEX = sha256_digest(BUNDLE_DATA).split(":", 1)[1]
CHECKSUMS = f"{BUNDLE_HEX}  {BUNDLE_FILENAME}\n{'0' * 64}  other.pem\n".encode()

ON_DATE = datetime(2025, 12, 10, 14, 30, tzinfo=timezone.utc).timestamp()
DAY_AFTER = datetime(2025, 12, 11, 0, 0, 5, tzinfo=timezone.utc).timestamp()


def _statement(commit=COMMIT, digest=BUNDLE_HEX, predicate_type=SLSA_PROVENANCE_V1):
    return json.dumps({
        "_type": "https://in-toto.io/Statement/v1",
        "predicateType": predicate_type,
        "subject": [
            {"name": "tpm-intermediate-ca-certificates.pem", "digest": {"sha256": "ff" * 32}},
            {"name": BUNDLE_FILENAME, "digest": {"sha256": digest}},
        ],
        "predicate": {
            "buildDefinition": {
                "externalParameters": {
                    "workflow": {
                        "repository": "https://github.com/loicsikidi/tpm-ca-certificates",
                        "path": ".github/workflows/release-bundle.yaml",
                        "ref": f"refs/tags/{DATE}",
                    },
                },
                "resolvedDependencies": [
                    {"uri": "git+https://github.com/loicsikidi/tpm-ca-certificates@refs/tags/2025-12-10",
                     "digest": {"gitCommit": commit}},
                ],
            },
            "runDetails": {"builder": {"id": "https://github.com/actions/runner/github-hosted"}},
        },
    }).encode()


def _sigstore_bundle(integrated_time=ON_DATE, has_log_entry=True):
    bundle = MagicMock()
    if has_log_entry:
        bundle.log_entry.integrated_time = integrated_time
    else:
        bundle.log_entry = None
    return bundle


class _Harness:
    """Patches sigstore's Bundle and Verifier for one BundleVerifier run."""

    def __init__(self, statements, signature_time=ON_DATE, attestation_time=ON_DATE):
        self.bundles = {b"signature": _sigstore_bundle(signature_time)}
        for i in range(len(statements)):
            self.bundles[f"attestation-{i}".encode()] = _sigstore_bundle(attestation_time)
        self.verifier = MagicMock()
        self.verifier.verify_dsse.side_effect = [(IN_TOTO_PAYLOAD_TYPE, s) for s in statements]
        self.attestations = [f"attestation-{i}".encode() for i in range(len(statements))]

    def run(self, verifier=None, bundle_data=BUNDLE_DATA):
        verifier = verifier or BundleVerifier(date=DATE, commit=COMMIT)
        with patch("tpmtb.sigstore.Bundle") as bundle_cls, patch("tpmtb.sigstore.Verifier") as verifier_cls:
            bundle_cls.from_json.side_effect = lambda data: self.bundles[data]
            verifier_cls.production.return_value = self.verifier
            return verifier.verify(bundle_data, CHECKSUMS, b"signature", self.attestations, BUNDLE_FILENAME)


class TestBundleVerifier:
    """Tests for BundleVerifier.verify()."""

    def test_valid_release(self):
        harness = _Harness([_statement()])

        result = harness.run()

        assert result.ok
        assert result.digest == f"sha256:{BUNDLE_HEX}"
        assert len(result.accepted) == 1
        assert result.accepted[0].statement.git_commit == COMMIT
        assert result.policy.build_full_workflow_uri() == (
            "https://github.com/loicsikidi/tpm-ca-certificates/"
            ".github/workflows/release-bundle.yaml@refs/tags/2025-12-10"
        )
        harness.verifier.verify_artifact.assert_called_once()
        assert harness.verifier.verify_artifact.call_args[0][0] == CHECKSUMS

    def test_wrong_commit_is_rejected(self):
        harness = _Harness([_statement(commit="a" * 40)])

        with pytest.raises(BundleVerificationFailed, match="no attestation satisfied the policy") as exc_info:
            harness.run()

        rejection = exc_info.value.rejections[0]
        assert rejection.index == 0
        assert "commit mismatch" in rejection.reason
        assert COMMIT in rejection.reason

    def test_one_valid_attestation_is_enough(self):
        harness = _Harness([_statement(commit="a" * 40), _statement()])
        result = harness.run()
        assert [a.index for a in result.accepted] == [1]
        assert len(result.rejections) == 1

    def test_malformed_digest_rejects_only_that_attestation(self):
        harness = _Harness([_statement(digest=12345), _statement()])
        result = harness.run()
        assert [a.index for a in result.accepted] == [1]
        assert "does not bind artifact digest" in result.rejections[0].reason

    def test_require_all_attestations(self):
        harness = _Harness([_statement(commit="a" * 40), _statement()])
        verifier = BundleVerifier(date=DATE, commit=COMMIT, require_all_attestations=True)
        with pytest.raises(BundleVerificationFailed, match="1 of 2 attestations rejected"):
            harness.run(verifier)

    def test_no_attestations(self):
        with pytest.raises(BundleVerificationFailed, match="no attestation found"):
            _Harness([]).run()

    def test_digest_not_bound(self):
        harness = _Harness([_statement(digest="00" * 32)])
        with pytest.raises(BundleVerificationFailed) as exc_info:
            harness.run()
        assert "does not bind artifact digest" in exc_info.value.rejections[0].reason

    def test_predicate_type_mismatch(self):
        harness = _Harness([_statement(predicate_type="https://slsa.dev/provenance/v0.2")])
        with pytest.raises(BundleVerificationFailed) as exc_info:
            harness.run()
        assert "predicate type mismatch" in exc_info.value.rejections[0].reason

    def test_attestation_logged_on_other_day(self):
        harness = _Harness([_statement()], attestation_time=DAY_AFTER)
        with pytest.raises(BundleVerificationFailed) as exc_info:
            harness.run()
        assert "timestamp validation failed" in exc_info.value.rejections[0].reason

    def test_signature_logged_on_other_day(self):
        harness = _Harness([_statement()], signature_time=DAY_AFTER)
        with pytest.raises(BundleVerificationFailed,
                           match="checksum signature verification failed: date mismatch"):
            harness.run()

    def test_bad_checksums_signature(self):
        harness = _Harness([_statement()])
        harness.verifier.verify_artifact.side_effect = VerificationError("invalid signature")
        with pytest.raises(BundleVerificationFailed, match="signature verification failed: invalid signature"):
            harness.run()

    def test_tampered_bundle(self):
        harness = _Harness([_statement()])
        with pytest.raises(BundleVerificationFailed, match="checksum mismatch for tpm-ca-certificates.pem"):
            harness.run(bundle_data=BUNDLE_DATA + b"#")

    def test_missing_log_entry(self):
        harness = _Harness([_statement()])
        harness.bundles[b"signature"] = _sigstore_bundle(has_log_entry=False)
        with pytest.raises(BundleVerificationFailed, match="no transparency log entry"):
            harness.run()

    def test_signature_failure_on_attestation(self):
        harness = _Harness([_statement()])
        harness.verifier.verify_dsse.side_effect = VerificationError("bad DSSE")
        with pytest.raises(BundleVerificationFailed) as exc_info:
            harness.run()
        assert "verification failed: bad DSSE" in exc_info.value.rejections[0].reason

    def test_requires_date_and_commit(self):
        with pytest.raises(ValueError, match="date cannot be empty"):
            BundleVerifier(date="", commit=COMMIT)
        with pytest.raises(ValueError, match="commit cannot be empty"):
            BundleVerifier(date=DATE, commit="")

    def test_trusted_root_path(self):
        verifier = BundleVerifier(date=DATE, commit=COMMIT, trusted_root_path="/tmp/trusted-root.json")
        with patch("tpmtb.sigstore.load_trusted_root") as load, \
                patch("tpmtb.sigstore.Verifier") as verifier_cls, \
                patch("tpmtb.sigstore.RekorClient") as rekor_cls, \
                patch("tpmtb.sigstore.fetch_trusted_root") as fetch:
            assert verifier.verifier is verifier_cls.return_value
        load.assert_called_once_with("/tmp/trusted-root.json")
        verifier_cls.assert_called_once_with(
            rekor=rekor_cls.production.return_value, trusted_root=load.return_value,
        )
        fetch.assert_not_called()

    def test_tuf_cache_dir(self, tmp_path):
        verifier = BundleVerifier(date=DATE, commit=COMMIT, offline=True, tuf_cache_dir=str(tmp_path))
        with patch("tpmtb.sigstore.load_trusted_root") as load, \
                patch("tpmtb.sigstore.Verifier") as verifier_cls, \
                patch("tpmtb.sigstore.RekorClient") as rekor_cls, \
                patch("tpmtb.sigstore.fetch_trusted_root") as fetch:
            assert verifier.verifier is verifier_cls.return_value
        fetch.assert_called_once_with(str(tmp_path), True)
        load.assert_called_once_with(str(tmp_path / "trusted_root.json"))
        verifier_cls.assert_called_once_with(
            rekor=rekor_cls.production.return_value, trusted_root=load.return_value,
        )
        verifier_cls.production.assert_not_called()

    def test_tuf_refresh_failure(self, tmp_path):
        harness = _Harness([_statement()])
        verifier = BundleVerifier(date=DATE, commit=COMMIT, tuf_cache_dir=str(tmp_path))
        with patch("tpmtb.sigstore.fetch_trusted_root", side_effect=OSError("no route to host")):
            with pytest.raises(BundleVerificationFailed, match="failed to obtain Sigstore trusted root") as exc_info:
                harness.run(verifier)
        assert isinstance(exc_info.value.__cause__, SignatureVerificationFailed)

    def test_default_production_root(self):
        verifier = BundleVerifier(date=DATE, commit=COMMIT, offline=True)
        with patch("tpmtb.sigstore.Verifier") as verifier_cls:
            assert verifier.verifier is verifier_cls.production.return_value
        verifier_cls.production.assert_called_once_with(offline=True)


class TestPolicyConfig:

    def test_custom_source_repo(self):
        cfg = PolicyConfig(source_repo="acme/tpm-roots", tag=DATE)
        cfg.check_and_set_defaults()
        assert cfg.build_signer_repo_url() == "https://github.com/acme/tpm-roots"
        assert cfg.build_workflow_ref() == ".github/workflows/release-bundle.yaml@refs/tags/2025-12-10"

    def test_tag_required(self):
        with pytest.raises(ValueError, match="'tag' is required"):
            PolicyConfig().check_and_set_defaults()

    def test_invalid_source_repo(self):
        with pytest.raises(ValueError, match="invalid source_repo format"):
            PolicyConfig(source_repo="acme", tag=DATE).check_and_set_defaults()

    def test_san_regex_escapes_repo(self):
        cfg = PolicyConfig(source_repo="a.b/c.d", tag=DATE)
        assert cfg.build_san_regex() == r"(?i)^https://github.com/a\.b/c\.d/"


def _cert_with_san(uri):
    cert, key = make_certificate("signer")
    builder = (
        x509.CertificateBuilder()
        .subject_name(cert.subject)
        .issuer_name(cert.issuer)
        .public_key(key.public_key())
        .serial_number(cert.serial_number)
        .not_valid_before(cert.not_valid_before_utc)
        .not_valid_after(cert.not_valid_after_utc)
        .add_extension(x509.SubjectAlternativeName([x509.UniformResourceIdentifier(uri)]), critical=False)
    )
    return builder.sign(key, hashes.SHA256())


class TestIdentityPolicy:
    """Tests for the SAN pattern and identity policy."""

    def test_san_pattern_matches(self):
        cert = _cert_with_san("https://github.com/Loicsikidi/tpm-ca-certificates/.github/workflows/x.yaml@refs/tags/1")
        SANPattern(PolicyConfig(tag=DATE).build_san_regex()).verify(cert)

    def test_san_pattern_other_repo(self):
        cert = _cert_with_san("https://github.com/evil/tpm-ca-certificates/.github/workflows/x.yaml@refs/tags/1")
        with pytest.raises(VerificationError, match="does not match pattern"):
            SANPattern(PolicyConfig(tag=DATE).build_san_regex()).verify(cert)

    def test_san_missing(self):
        cert, _ = make_certificate("no san")
        with pytest.raises(VerificationError, match="SubjectAlternativeName"):
            SANPattern(".*").verify(cert)

    def test_certificate_without_oidc_claims(self):
        cert, _ = make_certificate("no claims")
        with pytest.raises(CertificateIdentityMismatch, match="certificate identity mismatch"):
            IdentityPolicy(PolicyConfig(tag=DATE), commit=COMMIT).verify(cert)


class TestChecksums:
    """Tests for checksums.txt helpers."""

    def test_parse(self):
        checksums = parse_checksums(b"ABCD  a.pem\n\nbadline\n1234 b.pem\n")
        assert checksums == {"a.pem": "abcd", "b.pem": "1234"}

    def test_validate(self):
        validate_checksum(CHECKSUMS, BUNDLE_DATA, f"/some/dir/{BUNDLE_FILENAME}")

    def test_not_listed(self):
        with pytest.raises(SignatureVerificationFailed, match="artifact missing.pem not found in checksums file"):
            validate_checksum(CHECKSUMS, BUNDLE_DATA, "missing.pem")

    def test_find_checksum_files(self, tmp_path):
        bundle = tmp_path / BUNDLE_FILENAME
        bundle.write_bytes(BUNDLE_DATA)
        assert find_checksum_files(str(bundle)) == ("", "")

        (tmp_path / "checksums.txt").write_bytes(CHECKSUMS)
        (tmp_path / "checksums.txt.sigstore.json").write_bytes(b"{}")
        checksums, signature = find_checksum_files(str(bundle))
        assert checksums == str(tmp_path / "checksums.txt")
        assert signature == str(tmp_path / "checksums.txt.sigstore.json")


class TestTrustedRoot:
    """Tests for trusted root loading and refresh."""

    def test_public_good_ca_accepted(self):
        ca, _ = make_certificate("sigstore", organization="sigstore.dev")
        with patch("tpmtb.sigstore.TrustedRoot") as trusted_root_cls:
            trusted_root_cls.from_file.return_value.get_fulcio_certs.return_value = [ca]
            assert load_trusted_root("root.json") is trusted_root_cls.from_file.return_value

    def test_private_ca_rejected(self):
        ca, _ = make_certificate("private", organization="Acme Corp")
        with patch("tpmtb.sigstore.TrustedRoot") as trusted_root_cls:
            trusted_root_cls.from_file.return_value.get_fulcio_certs.return_value = [ca]
            with pytest.raises(SignatureVerificationFailed, match="untrusted issuer organization: Acme Corp"):
                load_trusted_root("root.json")

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(SignatureVerificationFailed, match="failed to parse trusted root JSON"):
            load_trusted_root(str(tmp_path / "missing.json"))

    def test_fetch_copies_target_to_cache(self, tmp_path):
        target = tmp_path / "target.json"
        target.write_bytes(b"{\"root\": 1}")
        cache_dir = tmp_path / "tuf-cache"
        with patch("tpmtb.sigstore.TrustUpdater") as updater_cls:
            updater_cls.return_value.get_trusted_root_path.return_value = str(target)
            assert fetch_trusted_root(str(cache_dir)) == b"{\"root\": 1}"
        assert (cache_dir / "trusted_root.json").read_bytes() == b"{\"root\": 1}"

        with patch("tpmtb.sigstore.TrustUpdater") as updater_cls:
            assert fetch_trusted_root(str(cache_dir), offline=True) == b"{\"root\": 1}"
        updater_cls.assert_not_called()


class TestProvenance:
    """Tests for SLSA statement decoding."""

    def test_fields(self):
        statement = parse_statement(_statement())
        assert statement.predicate_type == SLSA_PROVENANCE_V1
        assert statement.git_commit == COMMIT
        assert statement.workflow.path == ".github/workflows/release-bundle.yaml"
        assert statement.builder_id == "https://github.com/actions/runner/github-hosted"
        assert statement.has_subject_digest(BUNDLE_HEX.upper())
        assert not statement.has_subject_digest("00" * 32)

    def test_non_string_digests_are_ignored(self):
        statement = parse_statement(json.dumps({
            "subject": [{"name": "a", "digest": {"sha256": ["ab"]}}],
            "predicate": {"buildDefinition": {"resolvedDependencies": [{"digest": {"gitCommit": 7}}]}},
        }).encode())
        assert not statement.has_subject_digest("ab")
        assert statement.git_commit == ""

    def test_missing_dependencies(self):
        statement = parse_statement(b'{"predicateType": "x", "predicate": {}}')
        assert statement.git_commit == ""
        assert statement.subjects == []

    def test_not_an_object(self):
        with pytest.raises(ValueError, match="expected a JSON object"):
            parse_statement(b"[]")

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="invalid in-toto statement"):
            parse_statement(b"{")


class TestRepoDefaults:

    def test_source_repo_required(self):
        with pytest.raises(ValueError, match="'owner' is required"):
            BundleVerifier(date=DATE, commit=COMMIT, source_repo=Repo(owner="", name="x"))
