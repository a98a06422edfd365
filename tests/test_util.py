import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

import agwcert.util

from .fakes import TestCA


@pytest.mark.parametrize("key_type, cls", [("rsa", rsa.RSAPrivateKey), ("ec", ec.EllipticCurvePrivateKey)])
def test_load_or_create_key(tmp_path, key_type, cls):
    path = tmp_path / "keys" / "account.key"

    pem = agwcert.util.load_or_create_key(path, key_type)

    assert path.stat().st_mode & 0o777 == 0o600
    (key,) = agwcert.util.pem_split(pem.decode())
    assert isinstance(key, cls)

    # a second run reuses the key
    assert agwcert.util.load_or_create_key(path, key_type) == pem


def test_generate_key_unsupported(tmp_path):
    with pytest.raises(ValueError):
        agwcert.util.generate_key(tmp_path / "key.pem", "dsa")


def test_generate_csr(tmp_path):
    key = agwcert.util.generate_rsa_key(tmp_path / "certificate.key")

    csr = agwcert.util.generate_csr("example.com", key, tmp_path / "certificate.csr", ["example.com", "www.example.com"])

    assert csr.is_signature_valid
    assert agwcert.util.names_of(csr) == {"example.com", "www.example.com"}
    (stored,) = agwcert.util.pem_split((tmp_path / "certificate.csr").read_text())
    assert isinstance(stored, x509.CertificateSigningRequest)
    assert stored.subject == csr.subject


def test_names_of_lower(tmp_path):
    key = agwcert.util.generate_ec_key(tmp_path / "certificate.key")
    csr = agwcert.util.generate_csr("Example.COM", key, tmp_path / "certificate.csr", ["Example.COM"])

    assert agwcert.util.names_of(csr, lower=True) == {"example.com"}


def test_export_pfx(tmp_path):
    ca = TestCA()
    key = agwcert.util.generate_rsa_key(tmp_path / "certificate.key")
    csr = agwcert.util.generate_csr("example.com", key, tmp_path / "certificate.csr", ["example.com"])
    fullchain = ca.issue(csr)

    pfx = agwcert.util.export_pfx(fullchain, key, "Passw@rd123***", "example.com")

    loaded = pkcs12.load_pkcs12(pfx, b"Passw@rd123***")
    assert loaded.cert.friendly_name == b"example.com"
    assert loaded.cert.certificate.subject == csr.subject
    assert [c.certificate for c in loaded.additional_certs] == [ca.cert]
    assert loaded.key.private_numbers() == key.private_numbers()

    with pytest.raises(ValueError):
        pkcs12.load_pkcs12(pfx, b"wrong")


def test_export_pfx_without_certificates(tmp_path):
    key = agwcert.util.generate_rsa_key(tmp_path / "certificate.key")

    with pytest.raises(ValueError):
        agwcert.util.export_pfx("", key, "Passw@rd123***", "example.com")


def test_write_private(tmp_path):
    path = tmp_path / "secret.pfx"
    path.write_bytes(b"old")
    path.chmod(0o644)

    agwcert.util.write_private(path, b"new")

    assert path.read_bytes() == b"new"
    assert path.stat().st_mode & 0o777 == 0o600
