"""
Unit tests for the public API: TrustedBundle and the get/verify/load/save
entry points.

GitHub and sigstore are mocked; bundles are generated from throwaway
certificate hierarchies.
"""

import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from cryptography import x509

from tpmtb import cache
from tpmtb.bundle import BundleType, Generator
from tpmtb.cache import AutoUpdateConfig, BundleAssets, Environment
from tpmtb.client import (
    GetConfig,
    LoadConfig,
    SaveConfig,
    TrustedBundle,
    VerifyConfig,
    download_assets,
    get_trusted_bundle,
    load_trusted_bundle,
    save_trusted_bundle,
    verify_assets,
    verify_trusted_bundle,
)
from tpmtb.errors import (
    BundleVerificationFailed,
    CannotPersistTrustedBundle,
    CertificateVerificationFailed,
    FetchError,
    IncompleteCache,
    InvalidVendorID,
    OfflineAndEmpty,
)
from tpmtb.github import Attestation, Repo
from tpmtb.manifest import Config, Vendor
from tpmtb.sigstore import sha256_digest

from conftest import COMMIT, DATE, make_certificate, manifest_entry, write_certificate


# =============================================================================
# Fixtures
# =============================================================================

NEXT_DATE = "2025-12-11"
ATTESTATION = json.dumps({"mediaType": "application/vnd.dev.sigstore.bundle.v0.3+json"}).encode()


@dataclass
class PKI:
    root: x509.Certificate
    other_root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    intermediate_key: object
    roots_cfg: Config
    intermediates_cfg: Config

    def assets(self, date=DATE, commit=COMMIT, with_intermediate=True):
        root_bundle = Generator().generate(self.roots_cfg, date=date, commit=commit).encode()
        intermediate_bundle = b""
        if with_intermediate:
            intermediate_bundle = Generator().generate(
                self.intermediates_cfg, date=date, commit=commit, bundle_type=BundleType.INTERMEDIATE
            ).encode()
        checksums = (
            f"{sha256_digest(root_bundle).split(':')[1]}  tpm-ca-certificates.pem\n"
            f"{sha256_digest(intermediate_bundle).split(':')[1]}  tpm-intermediate-ca-certificates.pem\n"
        ).encode()
        return BundleAssets(
            root_bundle=root_bundle,
            intermediate_bundle=intermediate_bundle,
            checksums=checksums,
            checksums_signature=b'{"signature": true}',
            attestations=[ATTESTATION],
        )


@pytest.fixture
def pki(certs_dir):
    root, root_key = make_certificate("INTC Root CA")
    other_root, _ = make_certificate("STM Root CA")
    intermediate, intermediate_key = make_certificate("INTC EK CA", issuer=root, issuer_key=root_key)
    leaf, _ = make_certificate("EK", issuer=intermediate, issuer_key=intermediate_key, ca=False)

    roots_cfg = Config(version="v1", vendors=[
        Vendor(id="INTC", name="Intel", certificates=[
            manifest_entry("INTC Root CA", write_certificate(certs_dir, "intc.der", root), root),
        ]),
        Vendor(id="STM", name="STMicroelectronics", certificates=[
            manifest_entry("STM Root CA", write_certificate(certs_dir, "stm.der", other_root), other_root),
        ]),
    ])
    intermediates_cfg = Config(version="v1", vendors=[
        Vendor(id="INTC", name="Intel", certificates=[
            manifest_entry("INTC EK CA", write_certificate(certs_dir, "intc-ek.der", intermediate), intermediate),
        ]),
    ])
    return PKI(root, other_root, intermediate, leaf, intermediate_key, roots_cfg, intermediates_cfg)


def _github_mock(assets, tag=DATE):
    """A GitHubClient mock serving `assets` as release `tag`."""
    files = {
        "checksums.txt": assets.checksums,
        "checksums.txt.sigstore.json": assets.checksums_signature,
        "tpm-ca-certificates.pem": assets.root_bundle,
        "tpm-intermediate-ca-certificates.pem": assets.intermediate_bundle,
    }
    client = MagicMock()
    client.get_latest_release.return_value = MagicMock(tag_name=tag)
    client.download_release_asset.side_effect = lambda repo, t, name: files[name]
    client.get_attestations.return_value = [Attestation(bundle=a) for a in assets.attestations]
    return client


def _env(tmp_path):
    return Environment(cache_dir=str(tmp_path / "cache"))


DISABLED = AutoUpdateConfig(disable_auto_update=True)
TRUSTED_ROOT = b'{"mediaType": "application/vnd.dev.sigstore.trustedroot+json;version=0.1"}'


@pytest.fixture(autouse=True)
def trusted_root():
    """Serve a fixed Sigstore trusted root instead of refreshing it through TUF."""
    with patch("tpmtb.client.fetch_trusted_root", return_value=TRUSTED_ROOT) as fetch:
        yield fetch


# =============================================================================
# TrustedBundle
# =============================================================================

class TestTrustedBundle:
    """Tests for TrustedBundle accessors."""

    def test_accessors(self, pki):
        bundle = TrustedBundle(pki.assets())

        assert bundle.date == DATE
        assert bundle.commit == COMMIT
        assert bundle.root_metadata.type is BundleType.ROOT
        assert bundle.intermediate_metadata.type is BundleType.INTERMEDIATE
        assert bundle.vendors() == ["INTC", "STM"]
        assert bundle.roots() == [pki.root, pki.other_root]
        assert bundle.roots("STM") == [pki.other_root]
        assert bundle.roots("IFX") == []
        assert bundle.intermediates() == [pki.intermediate]
        assert bundle.raw_root == pki.assets().root_bundle

    def test_without_intermediate_bundle(self, pki):
        bundle = TrustedBundle(pki.assets(with_intermediate=False))
        assert bundle.intermediate_metadata is None
        assert bundle.intermediates() == []
        assert bundle.raw_intermediate == b""

    def test_vendor_filter(self, pki):
        bundle = TrustedBundle(pki.assets(), vendor_ids=["STM"])
        assert bundle.vendors() == ["STM"]
        assert bundle.intermediates() == []
        assert not bundle.contains(pki.root)
        assert bundle.contains(pki.other_root)

    def test_contains(self, pki):
        bundle = TrustedBundle(pki.assets())
        assert bundle.contains(pki.root)
        assert bundle.contains(pki.intermediate)
        assert not bundle.contains(pki.leaf)


class TestVerifyCertificate:
    """Tests for TrustedBundle.verify_certificate()."""

    def test_chain_through_intermediate(self, pki):
        chain = TrustedBundle(pki.assets()).verify_certificate(pki.leaf)
        assert chain == [pki.leaf, pki.intermediate, pki.root]

    def test_root_itself(self, pki):
        assert TrustedBundle(pki.assets()).verify_certificate(pki.root) == [pki.root]

    def test_unknown_issuer(self, pki):
        stranger, _ = make_certificate("Stranger")
        with pytest.raises(CertificateVerificationFailed, match="is not issued by a trusted certificate"):
            TrustedBundle(pki.assets()).verify_certificate(stranger)

    def test_missing_intermediate(self, pki):
        with pytest.raises(CertificateVerificationFailed, match="CN=EK"):
            TrustedBundle(pki.assets(with_intermediate=False)).verify_certificate(pki.leaf)

    def test_expired_leaf(self, pki):
        expired, _ = make_certificate(
            "Old EK", issuer=pki.intermediate, issuer_key=pki.intermediate_key, ca=False,
            not_before=datetime(2020, 1, 1, tzinfo=timezone.utc), days=30,
        )
        with pytest.raises(CertificateVerificationFailed, match="certificate expired"):
            TrustedBundle(pki.assets()).verify_certificate(expired)

    def test_filtered_vendor_is_not_trusted(self, pki):
        with pytest.raises(CertificateVerificationFailed):
            TrustedBundle(pki.assets(), vendor_ids=["STM"]).verify_certificate(pki.leaf)


class TestPersistAndUpdate:
    """Tests for persistence and auto-update."""

    def test_persist_without_cache(self, pki):
        with pytest.raises(CannotPersistTrustedBundle, match="local cache is disabled"):
            TrustedBundle(pki.assets()).persist()

    def test_persist(self, pki, tmp_path):
        bundle = TrustedBundle(pki.assets(), vendor_ids=["INTC"], auto_update=DISABLED)
        bundle.persist(str(tmp_path))

        loaded = cache.load(str(tmp_path))
        assert loaded.assets.root_bundle == bundle.raw_root
        assert loaded.config.version == DATE
        assert loaded.config.commit == COMMIT
        assert loaded.config.vendor_ids == ["INTC"]

    def test_update_to_newer_release(self, pki):
        bundle = TrustedBundle(pki.assets())
        newer = pki.assets(date=NEXT_DATE)

        assert bundle.update(lambda current: newer)
        assert bundle.date == NEXT_DATE
        assert bundle.raw_root == newer.root_bundle

    def test_update_up_to_date(self, pki):
        bundle = TrustedBundle(pki.assets())
        seen = []
        assert not bundle.update(lambda current: seen.append(current))
        assert seen == [DATE]

    def test_update_ignores_older_release(self, pki):
        bundle = TrustedBundle(pki.assets(date=NEXT_DATE))
        assert not bundle.update(lambda current: pki.assets(date=DATE))
        assert bundle.date == NEXT_DATE

    def test_update_persists(self, pki, tmp_path):
        bundle = TrustedBundle(pki.assets(), cache_dir=str(tmp_path), auto_update=DISABLED)
        bundle.update(lambda current: pki.assets(date=NEXT_DATE))
        assert cache.load_config(str(tmp_path)).version == NEXT_DATE

    def test_watcher_polls_until_stopped(self, pki):
        polled = threading.Event()
        auto_update = AutoUpdateConfig(interval=timedelta(milliseconds=10))
        bundle = TrustedBundle(pki.assets(), auto_update=auto_update)

        def refresh(current):
            polled.set()
            return None

        bundle.start_watcher(refresh)
        try:
            assert polled.wait(timeout=5)
        finally:
            bundle.stop()
        assert bundle._watcher is None

    def test_watcher_disabled(self, pki):
        bundle = TrustedBundle(pki.assets(), auto_update=DISABLED)
        bundle.start_watcher(lambda current: None)
        assert bundle._watcher is None
        bundle.stop()


# =============================================================================
# Release assets
# =============================================================================

class TestDownloadAssets:
    """Tests for download_assets()."""

    def test_downloads_everything(self, pki):
        assets = pki.assets()
        client = _github_mock(assets)

        downloaded = download_assets(client, Repo("o", "r"), DATE)

        assert downloaded == assets
        client.get_attestations.assert_called_once_with(Repo("o", "r"), sha256_digest(assets.root_bundle))

    def test_skip_verify(self, pki):
        client = _github_mock(pki.assets())
        downloaded = download_assets(client, Repo("o", "r"), DATE, skip_verify=True)
        assert downloaded.checksums_signature == b""
        assert downloaded.attestations == []
        client.get_attestations.assert_not_called()

    def test_root_not_listed(self, pki):
        assets = pki.assets()
        assets.checksums = b"abcd  other.pem\n"
        with pytest.raises(FetchError, match="tpm-ca-certificates.pem is not listed in checksums.txt"):
            download_assets(_github_mock(assets), Repo("o", "r"), DATE)

    def test_no_attestations(self, pki):
        assets = pki.assets()
        assets.attestations = []
        with pytest.raises(FetchError, match="no attestations found for digest sha256:"):
            download_assets(_github_mock(assets), Repo("o", "r"), DATE)


class TestVerifyAssets:
    """Tests for verify_assets()."""

    def test_both_bundles_verified(self, pki):
        assets = pki.assets()
        with patch("tpmtb.client.BundleVerifier") as verifier_cls:
            results = verify_assets(assets, expected_date=DATE)
        assert len(results) == 2
        verifier_cls.assert_called_once()
        assert verifier_cls.call_args[1]["date"] == DATE
        assert verifier_cls.call_args[1]["commit"] == COMMIT
        names = [c[0][4] for c in verifier_cls.return_value.verify.call_args_list]
        assert names == ["tpm-ca-certificates.pem", "tpm-intermediate-ca-certificates.pem"]

    def test_release_date_mismatch(self, pki):
        with pytest.raises(BundleVerificationFailed, match="does not match release 2025-12-11"):
            verify_assets(pki.assets(), expected_date=NEXT_DATE)

    def test_intermediate_from_other_release(self, pki):
        assets = pki.assets()
        assets.intermediate_bundle = pki.assets(commit="b" * 40).intermediate_bundle
        with pytest.raises(BundleVerificationFailed, match="intermediate bundle metadata does not match"):
            verify_assets(assets)

    def test_invalid_metadata(self):
        with pytest.raises(BundleVerificationFailed, match="invalid bundle metadata"):
            verify_assets(BundleAssets(root_bundle=b"not a bundle"))


# =============================================================================
# Entry points
# =============================================================================

class TestGetTrustedBundle:
    """Tests for get_trusted_bundle()."""

    def test_fetch_verify_and_cache(self, pki, tmp_path):
        client = _github_mock(pki.assets())
        env = _env(tmp_path)
        with patch("tpmtb.client.GitHubClient", return_value=client), \
                patch("tpmtb.client.verify_assets") as verify:
            bundle = get_trusted_bundle(GetConfig(auto_update=DISABLED, env=env))

        assert bundle.date == DATE
        assert bundle.vendors() == ["INTC", "STM"]
        verify.assert_called_once()
        assert verify.call_args[1]["expected_date"] == DATE
        assert cache.check_cache_exists(env.cache_dir, DATE)

    def test_fresh_cache_skips_release_lookup(self, pki, tmp_path):
        client = _github_mock(pki.assets())
        env = _env(tmp_path)
        with patch("tpmtb.client.GitHubClient", return_value=client), \
                patch("tpmtb.client.verify_assets") as verify:
            get_trusted_bundle(GetConfig(auto_update=DISABLED, env=env))
            downloads = client.download_release_asset.call_count
            bundle = get_trusted_bundle(GetConfig(auto_update=DISABLED, env=env))

        assert bundle.date == DATE
        assert client.get_latest_release.call_count == 1
        assert client.download_release_asset.call_count == downloads
        assert verify.call_count == 2

    def test_explicit_date(self, pki, tmp_path):
        client = _github_mock(pki.assets())
        with patch("tpmtb.client.GitHubClient", return_value=client), patch("tpmtb.client.verify_assets"):
            get_trusted_bundle(GetConfig(date=DATE, auto_update=DISABLED, env=_env(tmp_path)))
        client.release_exists.assert_called_once()
        client.get_latest_release.assert_not_called()

    def test_verification_failure_is_not_cached(self, pki, tmp_path):
        env = _env(tmp_path)
        with patch("tpmtb.client.GitHubClient", return_value=_github_mock(pki.assets())), \
                patch("tpmtb.client.verify_assets", side_effect=BundleVerificationFailed("bad")):
            with pytest.raises(BundleVerificationFailed, match="bad"):
                get_trusted_bundle(GetConfig(auto_update=DISABLED, env=env))
        assert not os.path.exists(os.path.join(env.cache_dir, cache.CONFIG_FILENAME))

    def test_disabled_cache_writes_nothing(self, pki, tmp_path):
        env = _env(tmp_path)
        with patch("tpmtb.client.GitHubClient", return_value=_github_mock(pki.assets())), \
                patch("tpmtb.client.verify_assets"):
            bundle = get_trusted_bundle(GetConfig(disable_local_cache=True, auto_update=DISABLED, env=env))
        assert not os.path.exists(env.cache_dir)
        with pytest.raises(CannotPersistTrustedBundle):
            bundle.persist()

    def test_skip_verify(self, pki, tmp_path, trusted_root):
        with patch("tpmtb.client.GitHubClient", return_value=_github_mock(pki.assets())), \
                patch("tpmtb.client.verify_assets") as verify:
            get_trusted_bundle(GetConfig(skip_verify=True, auto_update=DISABLED, env=_env(tmp_path)))
        verify.assert_not_called()
        trusted_root.assert_not_called()

    def test_online_cache_supports_offline_use(self, pki, tmp_path, trusted_root):
        env = _env(tmp_path)
        with patch("tpmtb.client.GitHubClient", return_value=_github_mock(pki.assets())), \
                patch("tpmtb.client.verify_assets") as verify:
            get_trusted_bundle(GetConfig(auto_update=DISABLED, env=env))
        assert verify.call_args[1]["tuf_cache_dir"] == os.path.join(env.cache_dir, "tuf-cache")
        trusted_root.assert_called_once_with(env.tuf_cache_dir, offline=True)

        with patch("tpmtb.client.GitHubClient") as client_cls, \
                patch("tpmtb.client.verify_assets") as verify:
            bundle = get_trusted_bundle(GetConfig(offline=True, auto_update=DISABLED, env=env))

        client_cls.assert_not_called()
        assert bundle.date == DATE
        cached_root = os.path.join(env.cache_dir, cache.TRUSTED_ROOT_FILENAME)
        assert verify.call_args[1]["trusted_root_path"] == cached_root
        with open(cached_root, "rb") as f:
            assert f.read() == TRUSTED_ROOT

    def test_offline_and_empty(self, tmp_path):
        with pytest.raises(OfflineAndEmpty):
            get_trusted_bundle(GetConfig(offline=True, env=_env(tmp_path)))

    def test_offline_requires_cache(self, tmp_path):
        with pytest.raises(ValueError, match="offline mode requires the local cache"):
            get_trusted_bundle(GetConfig(offline=True, disable_local_cache=True, env=_env(tmp_path)))

    def test_invalid_vendor(self, tmp_path):
        with pytest.raises(InvalidVendorID):
            get_trusted_bundle(GetConfig(vendor_ids=["NOPE"], env=_env(tmp_path)))


class TestVerifyTrustedBundle:
    """Tests for verify_trusted_bundle()."""

    def test_supplied_inputs(self, pki):
        assets = pki.assets()
        with patch("tpmtb.client.BundleVerifier") as verifier_cls, \
                patch("tpmtb.client.GitHubClient") as client_cls:
            verify_trusted_bundle(VerifyConfig(
                bundle=assets.root_bundle,
                checksums=assets.checksums,
                checksums_signature=assets.checksums_signature,
                attestations=assets.attestations,
                env=Environment(cache_dir="/nonexistent"),
            ))
        client_cls.assert_not_called()
        assert verifier_cls.call_args[1]["commit"] == COMMIT
        assert verifier_cls.call_args[1]["tuf_cache_dir"] == os.path.join("/nonexistent", "tuf-cache")
        args = verifier_cls.return_value.verify.call_args[0]
        assert args[4] == "tpm-ca-certificates.pem"

    def test_missing_inputs_are_fetched(self, pki):
        assets = pki.assets()
        client = _github_mock(assets)
        with patch("tpmtb.client.BundleVerifier") as verifier_cls, \
                patch("tpmtb.client.GitHubClient", return_value=client):
            verify_trusted_bundle(VerifyConfig(bundle=assets.root_bundle, env=Environment(cache_dir="/nonexistent")))
        args = verifier_cls.return_value.verify.call_args[0]
        assert args[1:4] == (assets.checksums, assets.checksums_signature, assets.attestations)

    def test_offline_without_inputs(self, pki):
        with pytest.raises(BundleVerificationFailed, match="failed to obtain verification inputs") as exc_info:
            verify_trusted_bundle(VerifyConfig(
                bundle=pki.assets().root_bundle, offline=True, env=Environment(cache_dir="/nonexistent"),
            ))
        assert isinstance(exc_info.value.__cause__, OfflineAndEmpty)

    def test_not_a_bundle(self):
        with pytest.raises(BundleVerificationFailed, match="invalid verification input"):
            verify_trusted_bundle(VerifyConfig(bundle=b"garbage", env=Environment(cache_dir="/nonexistent")))


class TestLoadAndSave:
    """Tests for load_trusted_bundle() and save_trusted_bundle()."""

    def test_save_then_load_offline(self, pki, tmp_path):
        output = str(tmp_path / "saved")
        with patch("tpmtb.client.GitHubClient", return_value=_github_mock(pki.assets())), \
                patch("tpmtb.client.verify_assets"), \
                patch("tpmtb.client.fetch_trusted_root", return_value=b'{"trusted": "root"}'):
            save_trusted_bundle(SaveConfig(env=_env(tmp_path)), output)

        cfg = cache.load_config(output)
        assert cfg.auto_update.disable_auto_update
        assert os.path.isfile(os.path.join(output, cache.TRUSTED_ROOT_FILENAME))

        with patch("tpmtb.client.verify_assets") as verify:
            bundle = load_trusted_bundle(LoadConfig(cache_dir=output, offline=True))
        assert bundle.date == DATE
        assert verify.call_args[1]["trusted_root_path"] == os.path.join(output, cache.TRUSTED_ROOT_FILENAME)
        assert verify.call_args[1]["offline"]

    def test_offline_load_needs_trusted_root(self, pki, tmp_path):
        TrustedBundle(pki.assets(), auto_update=DISABLED).persist(str(tmp_path))
        with pytest.raises(IncompleteCache, match="trusted-root.json is required for offline verification"):
            load_trusted_bundle(LoadConfig(cache_dir=str(tmp_path), offline=True))

    def test_load_skip_verify(self, pki, tmp_path):
        TrustedBundle(pki.assets(), auto_update=DISABLED).persist(str(tmp_path))
        with patch("tpmtb.client.verify_assets") as verify:
            bundle = load_trusted_bundle(LoadConfig(cache_dir=str(tmp_path), skip_verify=True))
        verify.assert_not_called()
        assert bundle.roots("INTC") == [pki.root]

    def test_load_keeps_cached_vendor_filter(self, pki, tmp_path):
        TrustedBundle(pki.assets(), vendor_ids=["STM"], auto_update=DISABLED).persist(str(tmp_path))
        bundle = load_trusted_bundle(LoadConfig(cache_dir=str(tmp_path), skip_verify=True))
        assert bundle.vendors() == ["STM"]

    def test_load_missing_dir(self, tmp_path):
        with pytest.raises(OfflineAndEmpty, match="cache directory does not exist"):
            load_trusted_bundle(LoadConfig(cache_dir=str(tmp_path / "missing")))
