"""Tests for zkserver/tls.py - key-store and trust-store loading."""

import ssl
from unittest.mock import patch

import pytest
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID

from zkserver.tls import (
    CredentialError,
    CredentialFailure,
    HandshakeMaterial,
    build_client_context,
    build_server_context,
    create_self_signed_stores,
    load_handshake_material,
    load_key_material,
    load_trust_material,
    _is_der_sequence,
    _is_pfx,
)


class TestLoadKeyMaterial:
    """Tests for load_key_material."""

    def test_loads_key_and_certificate(self, stores):
        """A valid key-store yields the key and its certificate."""
        material = load_key_material(stores.key_store, stores.password)

        cn = material.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        assert cn[0].value == "localhost"
        assert material.private_key is not None
        assert b"BEGIN CERTIFICATE" in material.chain_pem()

    def test_missing_file(self, tmp_path):
        """A nonexistent path fails with NOT_FOUND."""
        path = tmp_path / "nonexistent.p12"

        with pytest.raises(CredentialError) as exc_info:
            load_key_material(path, "changeit")

        assert exc_info.value.reason is CredentialFailure.NOT_FOUND
        assert exc_info.value.path == str(path)

    def test_directory_is_unreadable(self, tmp_path):
        """A directory cannot be read as a store."""
        with pytest.raises(CredentialError) as exc_info:
            load_key_material(tmp_path, "changeit")
        assert exc_info.value.reason is CredentialFailure.NOT_FOUND

    def test_wrong_password(self, stores):
        """A well-formed store with the wrong password fails with BAD_PASSWORD."""
        with pytest.raises(CredentialError) as exc_info:
            load_key_material(stores.key_store, "wrong-password")
        assert exc_info.value.reason is CredentialFailure.BAD_PASSWORD

    def test_not_a_store(self, tmp_path):
        """Arbitrary bytes fail with MALFORMED."""
        path = tmp_path / "garbage.p12"
        path.write_bytes(b"this is not a key-store")

        with pytest.raises(CredentialError) as exc_info:
            load_key_material(path, "changeit")
        assert exc_info.value.reason is CredentialFailure.MALFORMED

    @pytest.mark.parametrize("data", [
        b"\x30\x03\x02\x01\x00",
        b"\x30\x05\x02\x01\x03\x30\x00",
        b"\x30\x0a\x02\x01\x03\x30\x05\x06\x03\x55\x04\x03",
    ])
    def test_der_but_not_pkcs12(self, tmp_path, data):
        """Well-formed DER that is not a PFX is MALFORMED, not BAD_PASSWORD."""
        path = tmp_path / "notpkcs12.p12"
        path.write_bytes(data)

        with pytest.raises(CredentialError) as exc_info:
            load_key_material(path, "changeit")
        assert exc_info.value.reason is CredentialFailure.MALFORMED

    def test_truncated_store(self, stores, tmp_path):
        """A truncated store fails with MALFORMED, not BAD_PASSWORD."""
        data = open(stores.key_store, "rb").read()
        path = tmp_path / "truncated.p12"
        path.write_bytes(data[: len(data) // 2])

        with pytest.raises(CredentialError) as exc_info:
            load_key_material(path, stores.password)
        assert exc_info.value.reason is CredentialFailure.MALFORMED

    def test_store_without_key(self, stores):
        """A trust-store has no key entry to present."""
        with pytest.raises(CredentialError) as exc_info:
            load_key_material(stores.trust_store, stores.password)
        assert exc_info.value.reason is CredentialFailure.MALFORMED
        assert "no private key" in str(exc_info.value)

    def test_unsupported_algorithm(self, stores):
        """Algorithm errors from the PKCS#12 decoder are reported as such."""
        with patch("zkserver.tls.pkcs12.load_key_and_certificates",
                   side_effect=UnsupportedAlgorithm("RC2 is not supported")):
            with pytest.raises(CredentialError) as exc_info:
                load_key_material(stores.key_store, stores.password)
        assert exc_info.value.reason is CredentialFailure.UNSUPPORTED_ALGORITHM

    def test_unprotected_store(self, tmp_path):
        """Stores written without a password load with an empty password."""
        key_store, _ = create_self_signed_stores(tmp_path, password="")
        material = load_key_material(key_store, "")
        assert material.certificate is not None


class TestLoadTrustMaterial:
    """Tests for load_trust_material."""

    def test_loads_certificates(self, stores):
        """A trust-store yields its trusted certificates."""
        material = load_trust_material(stores.trust_store, stores.password)

        assert len(material.certificates) == 1
        assert "BEGIN CERTIFICATE" in material.cadata()

    def test_key_store_doubles_as_trust_store(self, stores):
        """The certificate of a key entry is trusted too."""
        material = load_trust_material(stores.key_store, stores.password)
        assert len(material.certificates) == 1

    def test_wrong_password(self, stores):
        """Wrong trust-store password fails with BAD_PASSWORD."""
        with pytest.raises(CredentialError) as exc_info:
            load_trust_material(stores.trust_store, "wrong-password")
        assert exc_info.value.reason is CredentialFailure.BAD_PASSWORD


class TestLoadHandshakeMaterial:
    """Tests for combined loading."""

    def test_loads_both(self, stores):
        """Both halves are returned together."""
        material = load_handshake_material(
            stores.key_store, stores.password, stores.trust_store, stores.password
        )
        assert isinstance(material, HandshakeMaterial)
        assert material.key.certificate == material.trust.certificates[0]

    def test_trust_failure_fails_whole_load(self, stores, tmp_path):
        """A bad trust-store fails the load even though the key-store is fine."""
        with pytest.raises(CredentialError) as exc_info:
            load_handshake_material(
                stores.key_store, stores.password, tmp_path / "missing.p12", stores.password
            )
        assert exc_info.value.reason is CredentialFailure.NOT_FOUND


class TestContexts:
    """Tests for SSLContext builders."""

    def test_client_context_verifies_host(self, stores):
        """Client contexts require a valid certificate and matching host name."""
        material = load_handshake_material(
            stores.key_store, stores.password, stores.trust_store, stores.password
        )
        context = build_client_context(material)

        assert context.check_hostname is True
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert len(context.get_ca_certs()) == 1

    def test_server_context_requires_client_cert(self, stores):
        """Server contexts require a trusted client certificate."""
        material = load_handshake_material(
            stores.key_store, stores.password, stores.trust_store, stores.password
        )
        context = build_server_context(material)

        assert context.verify_mode == ssl.CERT_REQUIRED


class TestDerSequence:
    """Tests for the PKCS#12 structure check."""

    def test_short_form_length(self):
        assert _is_der_sequence(b"\x30\x02\x05\x00") is True

    def test_long_form_length(self):
        body = b"\x04\x81\x80" + b"a" * 128
        assert _is_der_sequence(b"\x30\x81" + bytes([len(body)]) + body) is True

    def test_length_mismatch(self):
        assert _is_der_sequence(b"\x30\x05\x05\x00") is False

    def test_wrong_tag(self):
        assert _is_der_sequence(b"\x31\x02\x05\x00") is False

    def test_empty(self):
        assert _is_der_sequence(b"") is False


class TestPfxShape:
    """Tests for the PFX outline check."""

    def test_generated_stores(self, stores):
        for path in (stores.key_store, stores.trust_store):
            with open(path, "rb") as f:
                assert _is_pfx(f.read()) is True

    def test_wrong_version(self):
        assert _is_pfx(b"\x30\x03\x02\x01\x00") is False

    def test_missing_auth_safe(self):
        assert _is_pfx(b"\x30\x03\x02\x01\x03") is False

    def test_wrong_content_type(self):
        # ContentInfo with id-at-commonName instead of pkcs7-data
        assert _is_pfx(b"\x30\x0a\x02\x01\x03\x30\x05\x06\x03\x55\x04\x03") is False


class TestCreateSelfSignedStores:
    """Tests for create_self_signed_stores."""

    def test_writes_both_stores(self, tmp_path):
        """Both files are written, the key-store readable only by its owner."""
        key_store, trust_store = create_self_signed_stores(
            tmp_path / "tls", hostname="zk.example", password="secret", ip=None
        )

        assert key_store.exists()
        assert trust_store.exists()
        assert key_store.stat().st_mode & 0o777 == 0o600

        material = load_key_material(key_store, "secret")
        cn = material.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        assert cn[0].value == "zk.example"
