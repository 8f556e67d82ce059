"""TLS credential loading for the embedded server and its clients.

Key-stores and trust-stores are PKCS#12 files protected by a password.
Loading produces handshake material that can be installed into an
ssl.SSLContext for either side of a connection.
"""

import datetime
import ipaddress
import logging
import os
import secrets
import ssl
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

# Store defaults
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 2048
KEYSTORE_NAME = "keystore.p12"
TRUSTSTORE_NAME = "truststore.p12"

# DER tags and the fixed parts of a PKCS#12 PFX
DER_INTEGER = 0x02
DER_OID = 0x06
DER_SEQUENCE = 0x30
PFX_VERSION = b"\x03"
PKCS7_DATA_OID = bytes.fromhex("2a864886f70d010701")  # 1.2.840.113549.1.7.1

# Private key types OpenSSL can present during a handshake
SUPPORTED_KEY_TYPES = (
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
    dsa.DSAPrivateKey,
)

StorePath = Union[str, Path]


class CredentialFailure(Enum):
    """Why a store could not be loaded."""

    NOT_FOUND = "not-found"
    MALFORMED = "malformed"
    UNSUPPORTED_ALGORITHM = "unsupported-algorithm"
    BAD_PASSWORD = "bad-password"


class CredentialError(Exception):
    """A key-store or trust-store could not be loaded."""

    def __init__(self, reason: CredentialFailure, path: StorePath, message: str):
        self.reason = reason
        self.path = str(path)
        self.message = message
        super().__init__(f"{reason.value}: {path}: {message}")


@dataclass(frozen=True)
class KeyMaterial:
    """Private key and certificate chain presented during a handshake."""

    private_key: object
    certificate: x509.Certificate
    chain: tuple = ()

    def chain_pem(self) -> bytes:
        """Return the certificate followed by its chain, PEM encoded."""
        certs = (self.certificate,) + tuple(self.chain)
        return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


@dataclass(frozen=True)
class TrustMaterial:
    """Certificates trusted when validating a peer."""

    certificates: tuple

    def cadata(self) -> str:
        """Return the trusted certificates as a PEM bundle."""
        return "".join(
            c.public_bytes(serialization.Encoding.PEM).decode("ascii")
            for c in self.certificates
        )


@dataclass(frozen=True)
class HandshakeMaterial:
    """Both halves of a mutually authenticated TLS setup."""

    key: KeyMaterial
    trust: TrustMaterial


def _read_store(path: StorePath) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise CredentialError(
            CredentialFailure.NOT_FOUND, path, f"cannot read store: {e.strerror or e}"
        ) from e


def _read_tlv(data: bytes, offset: int, end: int) -> Optional[tuple[int, int, int]]:
    """Read one DER element header at offset.

    Returns (tag, content_start, content_end), or None if the element is
    truncated or uses an indefinite length.
    """
    if end - offset < 2:
        return None
    tag = data[offset]
    length = data[offset + 1]
    start = offset + 2
    if length & 0x80:
        count = length & 0x7F
        if count == 0 or count > 4 or end < start + count:
            return None
        length = int.from_bytes(data[start:start + count], "big")
        start += count
    if start + length > end:
        return None
    return tag, start, start + length


def _is_der_sequence(data: bytes) -> bool:
    """Check that data is a single definite-length DER SEQUENCE."""
    element = _read_tlv(data, 0, len(data))
    return element is not None and element[0] == DER_SEQUENCE and element[2] == len(data)


def _is_pfx(data: bytes) -> bool:
    """Check the PFX outline: SEQUENCE { INTEGER 3, ContentInfo { pkcs7-data, ... } }."""
    if not _is_der_sequence(data):
        return False
    _, start, end = _read_tlv(data, 0, len(data))

    version = _read_tlv(data, start, end)
    if version is None or version[0] != DER_INTEGER:
        return False
    if data[version[1]:version[2]] != PFX_VERSION:
        return False

    auth_safe = _read_tlv(data, version[2], end)
    if auth_safe is None or auth_safe[0] != DER_SEQUENCE:
        return False
    content_type = _read_tlv(data, auth_safe[1], auth_safe[2])
    return (
        content_type is not None
        and content_type[0] == DER_OID
        and data[content_type[1]:content_type[2]] == PKCS7_DATA_OID
    )


def _load_store(path: StorePath, password: str):
    """Decode a PKCS#12 store into (key, certificate, additional certificates)."""
    data = _read_store(path)
    if not _is_pfx(data):
        raise CredentialError(CredentialFailure.MALFORMED, path, "not a PKCS#12 store")

    try:
        return pkcs12.load_key_and_certificates(
            data, password.encode("utf-8") if password else None
        )
    except UnsupportedAlgorithm as e:
        raise CredentialError(
            CredentialFailure.UNSUPPORTED_ALGORITHM, path, str(e)
        ) from e
    except ValueError as e:
        # PFX outline already checked: the MAC or decryption key did not match
        raise CredentialError(
            CredentialFailure.BAD_PASSWORD, path, "store cannot be decrypted with the given password"
        ) from e


def load_key_material(path: StorePath, password: str) -> KeyMaterial:
    """Load the private key and certificate to present to peers.

    Args:
        path: PKCS#12 key-store file
        password: Store password (empty for an unprotected store)

    Returns:
        KeyMaterial for the first key entry

    Raises:
        CredentialError: If the store is missing, malformed, uses an
            unsupported algorithm or the password is wrong
    """
    key, certificate, additional = _load_store(path, password)
    if key is None or certificate is None:
        raise CredentialError(
            CredentialFailure.MALFORMED, path, "key-store has no private key entry"
        )
    if not isinstance(key, SUPPORTED_KEY_TYPES):
        raise CredentialError(
            CredentialFailure.UNSUPPORTED_ALGORITHM,
            path,
            f"unsupported key type {type(key).__name__}",
        )
    return KeyMaterial(private_key=key, certificate=certificate, chain=tuple(additional))


def load_trust_material(path: StorePath, password: str) -> TrustMaterial:
    """Load the certificates used to validate peers.

    Every certificate in the store is trusted, including the certificate
    of a key entry, so a key-store can double as its own trust-store.

    Raises:
        CredentialError: As for load_key_material, or if the store holds
            no certificates
    """
    _, certificate, additional = _load_store(path, password)
    certificates = tuple(additional)
    if certificate is not None:
        certificates = (certificate,) + certificates
    if not certificates:
        raise CredentialError(
            CredentialFailure.MALFORMED, path, "trust-store has no certificates"
        )
    return TrustMaterial(certificates=certificates)


def load_handshake_material(
    key_store: StorePath,
    key_store_password: str,
    trust_store: StorePath,
    trust_store_password: str,
) -> HandshakeMaterial:
    """Load key and trust material together; fails without partial results."""
    key = load_key_material(key_store, key_store_password)
    trust = load_trust_material(trust_store, trust_store_password)
    return HandshakeMaterial(key=key, trust=trust)


def _install_key_material(context: ssl.SSLContext, key: KeyMaterial) -> None:
    """Load key material into a context.

    SSLContext only reads keys from files, so the material goes through a
    private temp file with the key encrypted under a one-time passphrase.
    """
    passphrase = secrets.token_hex(16).encode("ascii")
    key_pem = key.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase),
    )

    with tempfile.NamedTemporaryFile(mode="wb", suffix=".pem", delete=False) as f:
        f.write(key.chain_pem())
        f.write(key_pem)
        pem_path = f.name

    try:
        context.load_cert_chain(certfile=pem_path, password=passphrase)
    finally:
        Path(pem_path).unlink(missing_ok=True)


def build_client_context(material: HandshakeMaterial) -> ssl.SSLContext:
    """Create a client context that verifies the server's certificate and host name."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cadata=material.trust.cadata())
    _install_key_material(context, material.key)
    return context


def build_server_context(material: HandshakeMaterial) -> ssl.SSLContext:
    """Create a server context that requires a trusted client certificate."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cadata=material.trust.cadata())
    _install_key_material(context, material.key)
    return context


def _store_encryption(password: str):
    if password:
        return serialization.BestAvailableEncryption(password.encode("utf-8"))
    return serialization.NoEncryption()


def create_self_signed_stores(
    directory: Path,
    hostname: str = "localhost",
    password: str = "",
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
    ip: Optional[str] = "127.0.0.1",
) -> tuple[Path, Path]:
    """Generate a self-signed key-store and a trust-store that trusts it.

    Creates a certificate with:
    - CN = hostname
    - SAN = hostname + IP address (if given)
    - serverAuth and clientAuth usage, so both ends can present it

    Args:
        directory: Directory for keystore.p12 and truststore.p12
        hostname: Hostname for certificate CN and SAN
        password: Password for both stores (empty for none)
        days: Certificate validity in days
        key_size: RSA key size in bits
        ip: IP address added to the SAN

    Returns:
        (keystore_path, truststore_path) tuple
    """
    directory.mkdir(parents=True, exist_ok=True)
    logger.info("Generating self-signed key-store for %s", hostname)

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])

    san_entries: list[x509.GeneralName] = [x509.DNSName(hostname)]
    if ip:
        san_entries.append(x509.IPAddress(ipaddress.ip_address(ip)))

    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .add_extension(x509.SubjectAlternativeName(san_entries), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    keystore_path = directory / KEYSTORE_NAME
    truststore_path = directory / TRUSTSTORE_NAME

    keystore_path.write_bytes(pkcs12.serialize_key_and_certificates(
        hostname.encode("utf-8"), key, certificate, None, _store_encryption(password),
    ))
    truststore_path.write_bytes(pkcs12.serialize_key_and_certificates(
        b"trusted", None, None, [certificate], _store_encryption(password),
    ))

    # Key-store holds the private key
    os.chmod(keystore_path, 0o600)
    os.chmod(truststore_path, 0o644)

    return keystore_path, truststore_path
