"""
Validation utilities for account emails, domain names and issued certificates.
"""

import logging
import re

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID
from email_validator import EmailNotValidError
from email_validator import validate_email as _validate_email

logger = logging.getLogger(__name__)

MAX_DOMAIN_LENGTH = 253

_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"


def validate_email(email: str) -> tuple[bool, str]:
    """
    Validate that an email address is well formed.

    Deliverability (DNS MX lookups) is not checked.

    Args:
        email (str): Email address.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    if not isinstance(email, str) or not email.strip():
        return (False, "email address is empty")

    try:
        _validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        return (False, str(e))

    return (True, "")


def validate_domain(domain: str) -> tuple[bool, str]:
    """
    Validate a hostname or a wildcard pattern such as ``*.example.com``.

    Args:
        domain (str): Domain name.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    if not isinstance(domain, str) or not domain:
        return (False, "domain is empty")

    if len(domain) > MAX_DOMAIN_LENGTH:
        return (False, f"domain exceeds {MAX_DOMAIN_LENGTH} characters")

    labels = domain.split(".")
    if labels[0] == "*":
        labels = labels[1:]
    elif "*" in domain:
        return (False, "wildcard is only allowed as the complete leftmost label")

    if len(labels) < 2:
        return (False, "domain must contain at least two labels")

    for label in labels:
        if not _LABEL_RE.match(label):
            return (False, f"invalid label '{label}'")

    if labels[-1].isdigit():
        return (False, "IP addresses are not supported")

    return (True, "")


def validate_certificate_format(certificate: str) -> tuple[bool, str]:
    """
    Validate the format of a PEM certificate.

    Args:
        certificate (str): Certificate in PEM format.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    if not certificate.strip().startswith(PEM_BEGIN):
        return (False, "Certificate does not start with BEGIN CERTIFICATE marker")

    if not certificate.strip().endswith(PEM_END):
        return (False, "Certificate does not end with END CERTIFICATE marker")

    return (True, "")


def normalize_certificate(certificate: str) -> str:
    """Normalize certificate line endings and ensure a trailing newline."""
    certificate = certificate.replace("\r\n", "\n").replace("\r", "\n")

    if not certificate.endswith("\n"):
        certificate = certificate + "\n"

    return certificate


def parse_certificate_chain(certificate: str) -> list[x509.Certificate]:
    """
    Parse a PEM certificate chain into individual certificate objects.

    Raises:
        ValueError: If certificate parsing fails.
    """
    certificates = []

    for i, block in enumerate(certificate.split(PEM_BEGIN)[1:], 1):
        cert_pem = PEM_BEGIN + block.split(PEM_END)[0] + PEM_END
        try:
            certificates.append(x509.load_pem_x509_certificate(cert_pem.encode()))
        except Exception as e:
            raise ValueError(f"Failed to parse certificate {i}: {e}")

    return certificates


def get_certificate_domains(cert: x509.Certificate) -> tuple[str | bytes, list[str]]:
    """
    Extract CN and SANs from a certificate.

    Returns:
        tuple[str, list[str]]: (common_name, subject_alternative_names)
    """
    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    cn = cn_attrs[0].value if cn_attrs else "N/A"

    sans: list[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        if isinstance(san_ext.value, x509.SubjectAlternativeName):
            sans = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return (cn, sans)


def validate_certificate_chain(certificate: str, expected_domains: list[str]) -> tuple[bool, str, int]:
    """
    Validate a certificate chain and check that its leaf covers every expected domain.

    Args:
        certificate (str): Certificate chain in PEM format.
        expected_domains (list[str]): Domains the leaf certificate must name, in any letter case.

    Returns:
        tuple[bool, str, int]: (is_valid, error_message, cert_count)
    """
    cert_count = certificate.count(PEM_BEGIN)

    if cert_count == 0:
        return (False, "No certificates found in chain", 0)

    try:
        certificates = parse_certificate_chain(certificate)
    except ValueError as e:
        return (False, f"Failed to validate certificate chain: {e}", cert_count)

    cn, sans = get_certificate_domains(certificates[0])
    # DNS names compare case-insensitively
    covered = {name.lower() for name in sans}
    if isinstance(cn, str):
        covered.add(cn.lower())
    missing = [d for d in expected_domains if d.lower() not in covered]
    if missing:
        return (
            False,
            f"Certificate does not cover {', '.join(missing)}. "
            f"Certificate is for: CN={cn}, SANs={sans}",
            cert_count,
        )

    for i, cert in enumerate(certificates, 1):
        issuer_cn = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        logger.debug(f"Certificate {i}: Issued by {issuer_cn[0].value if issuer_cn else 'unknown'}")

    return (True, "", cert_count)
