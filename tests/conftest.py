"""
Shared fixtures: throwaway CA hierarchies and manifests backed by
``file://`` certificate sources.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tpmtb.manifest import Certificate, Config, Fingerprint, Vendor, save_config
from tpmtb import fingerprint as fp

COMMIT = "63e6a017f0a3d6a5e4a1c1f1d3b5a7e9c0b2d4f6"
DATE = "2025-12-10"


def make_certificate(common_name, issuer=None, issuer_key=None, ca=True,
                     not_before=None, days=3650, organization="Test TPM Vendor"):
    """Create an EC certificate, self-signed unless issuer is given."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    not_before = not_before or datetime(2024, 1, 1, tzinfo=timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    cert = builder.sign(issuer_key if issuer_key is not None else key, hashes.SHA256())
    return cert, key


def der(cert):
    return cert.public_bytes(serialization.Encoding.DER)


def write_certificate(directory, filename, cert, pem=False):
    """Write cert to directory and return its file:// URI."""
    path = os.path.join(str(directory), filename)
    encoding = serialization.Encoding.PEM if pem else serialization.Encoding.DER
    with open(path, "wb") as f:
        f.write(cert.public_bytes(encoding))
    return "file://" + os.path.abspath(path)


def manifest_entry(name, uri, cert, alg=fp.SHA256):
    return Certificate(
        name=name,
        uri=uri,
        fingerprint=Fingerprint.of(alg, fp.new(der(cert), alg)),
    )


@pytest.fixture
def certs_dir(tmp_path):
    path = tmp_path / "certs"
    path.mkdir()
    return path


@pytest.fixture
def two_vendor_manifest(tmp_path, certs_dir):
    """
    A manifest with vendors INTC (cert A) and STM (certs Alpha, Bravo).

    Returns:
        Tuple of (manifest path, {name: x509 certificate})
    """
    certs = {}
    for name in ("A", "Alpha", "Bravo"):
        certs[name], _ = make_certificate(f"{name} Root CA")

    cfg = Config(version="alpha", vendors=[
        Vendor(id="INTC", name="Intel", certificates=[
            manifest_entry("A", write_certificate(certs_dir, "a.der", certs["A"]), certs["A"]),
        ]),
        Vendor(id="STM", name="STMicroelectronics", certificates=[
            manifest_entry("Alpha", write_certificate(certs_dir, "alpha.der", certs["Alpha"]), certs["Alpha"]),
            manifest_entry("Bravo", write_certificate(certs_dir, "bravo.pem", certs["Bravo"], pem=True),
                           certs["Bravo"], alg=fp.SHA512),
        ]),
    ])
    path = str(tmp_path / ".tpm-roots.yaml")
    save_config(path, cfg)
    return path, certs
