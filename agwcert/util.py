import logging
import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import NameOID

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o600

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def write_private(path: Path, data: bytes) -> None:
    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as out:
        out.write(data)


def generate_csr(
    CN: str, private_key: PrivateKey, path: Path, names: typing.List[str]
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param path: The path to write the PEM-serialized CSR to.
    :param names: The requested names in the CSR.
    :return: The generated CSR.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    with open(path, "wb") as pem_out:
        pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def generate_rsa_key(path: Path, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    write_private(path, pem)

    return private_key


def generate_ec_key(path: Path, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())

    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    write_private(path, pem)

    return private_key


def generate_key(path: Path, key_type: str = "rsa") -> PrivateKey:
    """Generates a private key of the given type (*rsa* or *ec*) with its default size."""
    if key_type == "rsa":
        return generate_rsa_key(path)
    elif key_type == "ec":
        return generate_ec_key(path)

    raise ValueError(f"Unsupported key type {key_type}")


def load_or_create_key(path: Path, key_type: str = "rsa") -> bytes:
    """Returns the PEM-encoded private key stored at the given path.

    The key is generated first if the file does not exist yet, so that subsequent runs reuse it.

    :param path: The path of the PEM-encoded key file.
    :param key_type: The type of key to generate if there is none, *rsa* or *ec*.
    :return: The key file's contents.
    """
    path = Path(path)
    if not path.exists():
        logger.info("No key found at %s, generating a new %s key", path, key_type)
        path.parent.mkdir(parents=True, exist_ok=True)
        generate_key(path, key_type)
    else:
        logger.debug("Reusing key %s", path)

    return path.read_bytes()


def names_of(
    csr: "cryptography.x509.CertificateSigningRequest", lower: bool = False
) -> typing.Set[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CRS whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: Set of the contained identifier strings.
    """
    names = [
        v.value
        for v in csr.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    ]
    names.extend(
        csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value.get_values_for_type(x509.DNSName)
    )

    return set([name.lower() if lower else name for name in names])


def pem_split(
    pem: str,
) -> typing.List[
    typing.Union[
        "cryptography.x509.CertificateSigningRequest",
        "cryptography.x509.Certificate",
        PrivateKey,
    ]
]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and private keys.

    :param pem: The concatenated PEM encoded CSRs and certificates.
    :return: List of all objects found in the PEM string, in order of appearance.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
        b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(
            x, password=None
        ),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [
        _PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0))
        for match in _PEM_RE.finditer(pem.encode())
    ]


def export_pfx(
    fullchain: str, private_key: PrivateKey, password: str, name: str
) -> bytes:
    """Packages a certificate chain and its private key as a password-protected PKCS#12 container.

    The first certificate of the chain is the leaf, the rest are stored as CA certificates.

    :param fullchain: The PEM-encoded certificate chain.
    :param private_key: The certificate's private key.
    :param password: The password that protects the container.
    :param name: The friendly name of the leaf certificate.
    :raises: :class:`ValueError` If the chain contains no certificate or the password is empty.
    :return: The DER-encoded PKCS#12 container.
    """
    certificates = [
        obj for obj in pem_split(fullchain) if isinstance(obj, x509.Certificate)
    ]
    if not certificates:
        raise ValueError("The certificate chain does not contain any certificates")

    # Legacy 3DES/SHA1 encryption, older PKCS#12 readers reject AES.
    encryption = (
        serialization.PrivateFormat.PKCS12.encryption_builder()
        .kdf_rounds(50000)
        .key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC)
        .hmac_hash(hashes.SHA1())
        .build(password.encode())
    )

    return pkcs12.serialize_key_and_certificates(
        name=name.encode(),
        key=private_key,
        cert=certificates[0],
        cas=certificates[1:] or None,
        encryption_algorithm=encryption,
    )
