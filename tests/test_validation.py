"""Tests for validation functions."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_certificate_pem
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acme_certmanager import validation


@pytest.fixture(scope="module")
def sample_pem():
    """A self-signed certificate for example.com and www.example.com."""
    return make_certificate_pem(["example.com", "www.example.com"])


class TestValidateEmail:
    """Tests for validate_email function."""

    @pytest.mark.parametrize("email", ["admin@example.com", "first.last+tag@sub.example.co.uk"])
    def test_valid(self, email):
        is_valid, error = validation.validate_email(email)

        assert is_valid
        assert error == ""

    @pytest.mark.parametrize("email", ["not-an-email", "admin@", "@example.com", "a@b@example.com"])
    def test_invalid(self, email):
        is_valid, error = validation.validate_email(email)

        assert not is_valid
        assert error

    @pytest.mark.parametrize("email", ["", "   ", None])
    def test_empty(self, email):
        is_valid, error = validation.validate_email(email)

        assert not is_valid
        assert "empty" in error


class TestValidateDomain:
    """Tests for validate_domain function."""

    @pytest.mark.parametrize(
        "domain", ["example.com", "www.example.com", "*.example.com", "xn--bcher-kva.example", "a-b.example.org"]
    )
    def test_valid(self, domain):
        is_valid, error = validation.validate_domain(domain)

        assert is_valid, error

    @pytest.mark.parametrize(
        "domain,reason",
        [
            ("", "empty"),
            ("localhost", "two labels"),
            ("*.com", "two labels"),
            ("foo.*.example.com", "leftmost"),
            ("*foo.example.com", "leftmost"),
            ("-bad.example.com", "invalid label"),
            ("bad-.example.com", "invalid label"),
            ("exa mple.com", "invalid label"),
            ("example..com", "invalid label"),
            ("192.168.0.1", "IP addresses"),
        ],
    )
    def test_invalid(self, domain, reason):
        is_valid, error = validation.validate_domain(domain)

        assert not is_valid
        assert reason in error

    def test_too_long(self):
        domain = ".".join(["a" * 63] * 4) + ".com"

        is_valid, error = validation.validate_domain(domain)

        assert not is_valid
        assert "253" in error


class TestValidateCertificateFormat:
    """Tests for validate_certificate_format function."""

    def test_valid_pem_format(self):
        """Test valid PEM certificate format."""
        cert = "-----BEGIN CERTIFICATE-----\nMIIC...\n-----END CERTIFICATE-----"
        is_valid, error = validation.validate_certificate_format(cert)

        assert is_valid
        assert error == ""

    def test_missing_begin_marker(self):
        """Test certificate without BEGIN marker."""
        cert = "MIICertificateData\n-----END CERTIFICATE-----"
        is_valid, error = validation.validate_certificate_format(cert)

        assert not is_valid
        assert "BEGIN CERTIFICATE" in error

    def test_missing_end_marker(self):
        """Test certificate without END marker."""
        cert = "-----BEGIN CERTIFICATE-----\nMIICertificateData"
        is_valid, error = validation.validate_certificate_format(cert)

        assert not is_valid
        assert "END CERTIFICATE" in error

    def test_whitespace_handling(self):
        """Test that whitespace is properly handled."""
        cert = "\n  -----BEGIN CERTIFICATE-----\nMIIC...\n-----END CERTIFICATE-----  \n"
        is_valid, _ = validation.validate_certificate_format(cert)

        assert is_valid


class TestNormalizeCertificate:
    """Tests for normalize_certificate function."""

    def test_converts_line_endings(self):
        """Test conversion of different line endings."""
        cert = "-----BEGIN CERTIFICATE-----\r\nMIIC\r\n-----END CERTIFICATE-----\r\n"
        normalized = validation.normalize_certificate(cert)

        assert "\r" not in normalized
        assert normalized.count("\n") == 3

    def test_adds_trailing_newline(self):
        """Test that trailing newline is added if missing."""
        cert = "-----BEGIN CERTIFICATE-----\nMIIC\n-----END CERTIFICATE-----"

        assert validation.normalize_certificate(cert) == cert + "\n"


class TestCertificateChain:
    """Tests for parse_certificate_chain, get_certificate_domains and validate_certificate_chain."""

    def test_extracts_cn_and_sans(self, sample_pem):
        """Test extraction of CN and SANs."""
        cert = validation.parse_certificate_chain(sample_pem)[0]

        cn, sans = validation.get_certificate_domains(cert)

        assert cn == "example.com"
        assert sans == ["example.com", "www.example.com"]

    def test_certificate_without_san(self):
        """Test certificate without SAN extension."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test.com")])
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(datetime.now(timezone.utc))
            .not_valid_after(datetime.now(timezone.utc) + timedelta(days=365))
            .sign(private_key, hashes.SHA256())
        )

        cn, sans = validation.get_certificate_domains(cert)

        assert cn == "test.com"
        assert sans == []

    def test_parses_chain(self, sample_pem):
        """Test parsing a certificate chain."""
        certs = validation.parse_certificate_chain(sample_pem + sample_pem)

        assert len(certs) == 2
        assert all(isinstance(c, x509.Certificate) for c in certs)

    def test_invalid_certificate_raises(self):
        """Test that invalid certificate raises ValueError."""
        invalid_pem = "-----BEGIN CERTIFICATE-----\nINVALID\n-----END CERTIFICATE-----"

        with pytest.raises(ValueError, match="Failed to parse"):
            validation.parse_certificate_chain(invalid_pem)

    def test_valid_chain(self, sample_pem):
        """Test validation of a valid certificate chain."""
        is_valid, error, count = validation.validate_certificate_chain(
            sample_pem + sample_pem, ["example.com", "www.example.com"]
        )

        assert is_valid
        assert error == ""
        assert count == 2

    def test_domain_not_covered(self, sample_pem):
        """Test validation fails when a requested domain is missing from the leaf."""
        is_valid, error, _ = validation.validate_certificate_chain(sample_pem, ["example.com", "api.example.com"])

        assert not is_valid
        assert "api.example.com" in error

    def test_domain_case_ignored(self):
        """Test that requested names match the leaf regardless of letter case."""
        pem = make_certificate_pem(["example.com", "www.example.com"])

        is_valid, error, _ = validation.validate_certificate_chain(pem, ["Example.com", "WWW.EXAMPLE.COM"])

        assert is_valid
        assert error == ""

    def test_wildcard_covered(self):
        pem = make_certificate_pem(["example.com", "*.example.com"])

        is_valid, _, _ = validation.validate_certificate_chain(pem, ["example.com", "*.example.com"])

        assert is_valid

    def test_empty_chain(self):
        """Test validation of empty chain."""
        is_valid, error, count = validation.validate_certificate_chain("", ["example.com"])

        assert not is_valid
        assert "No certificates" in error
        assert count == 0

    def test_garbage_chain(self):
        is_valid, error, count = validation.validate_certificate_chain(
            "-----BEGIN CERTIFICATE-----\nINVALID\n-----END CERTIFICATE-----", ["example.com"]
        )

        assert not is_valid
        assert "Failed to validate" in error
        assert count == 1
