"""
Certificate key generation and the issuance transaction.
"""

import logging
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acme_certmanager import exceptions, validation
from acme_certmanager.records import (
    Account,
    Certificate,
    CertificateBundle,
    CertificateConfig,
    ChallengeType,
    new_id,
)

if TYPE_CHECKING:
    from acme_certmanager.challenge import ChallengeConfigurator
    from acme_certmanager.directory import CertificateDirectory
    from acme_certmanager.storage import KeyMaterialStore

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537
MIN_KEY_SIZE = 2048


def generate_private_key(key_size: int, public_exponent: int = PUBLIC_EXPONENT) -> rsa.RSAPrivateKey:
    """
    Generate an RSA private key.

    Args:
        key_size: Size of the key in bits, at least 2048.
        public_exponent: Public exponent value.

    Raises:
        ValueError: If the key size is below 2048 bits.
    """
    if key_size < MIN_KEY_SIZE:
        raise ValueError(f"RSA keys must be at least {MIN_KEY_SIZE} bits, got {key_size}")
    logger.info(f"Generating {key_size}-bit RSA private key")
    return rsa.generate_private_key(public_exponent=public_exponent, key_size=key_size)


def generate_csr(
    domain: str, private_key: rsa.RSAPrivateKey, additional_domains: list[str] | None = None
) -> x509.CertificateSigningRequest:
    """
    Generate a Certificate Signing Request (CSR).

    Args:
        domain: Primary domain name for the certificate (used as CN).
        private_key: RSA private key.
        additional_domains: Additional domains to include in SAN (optional).

    Returns:
        x509.CertificateSigningRequest: Generated CSR.
    """
    san_domains = [domain]
    if additional_domains:
        for additional_domain in additional_domains:
            if additional_domain not in san_domains:
                san_domains.append(additional_domain)

    logger.info(f"Creating CSR for domains: {', '.join(san_domains)}")
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in san_domains]), critical=False)
        .sign(private_key, hashes.SHA256())
    )


def key_ref_for(certificate_id: str) -> str:
    """Storage key of a certificate's own private key."""
    return f"{certificate_id}.key"


class CertificateIssuer:
    """
    Runs one issuance transaction for a resolved account.

    Nothing is persisted unless the CA returns signed material. After that the
    certificate's private key and chain are written to the key material store,
    and only then is the metadata record created, so a record always points at
    a stored chain.
    """

    def __init__(
        self,
        key_store: "KeyMaterialStore",
        configurator: "ChallengeConfigurator",
        certificates: "CertificateDirectory | None" = None,
    ) -> None:
        self.key_store = key_store
        self.configurator = configurator
        self.certificates = certificates

    def issue(
        self, domains: list[str], account: Account, config: CertificateConfig | None = None
    ) -> Certificate:
        """
        Obtain and persist a certificate covering ``domains``.

        Raises:
            exceptions.InvalidDomain: If the domain list is empty or holds an invalid name.
            exceptions.AccountNotResolved: If the account has no key or ACME client loaded.
            exceptions.UnsupportedChallengeType: If the configured challenge type is unknown.
            exceptions.UnsupportedDNSProvider: If the DNS provider is not supported.
            exceptions.ChallengeSetupFailure: If the challenge provider cannot be installed.
            exceptions.ObtainFailure: If the CA exchange fails. Nothing was persisted.
            exceptions.PostIssuancePersistenceFailure: If the CA issued the certificate but it
                could not be stored, or its chain failed verification. Retrying ``issue`` would
                request a second certificate.
        """
        domains = list(domains)
        if not domains:
            raise exceptions.InvalidDomain("", "at least one domain is required")
        for domain in domains:
            is_valid, error = validation.validate_domain(domain)
            if not is_valid:
                raise exceptions.InvalidDomain(domain, error)

        if not account.is_resolved:
            raise exceptions.AccountNotResolved(account.id)

        if config is None:
            config = CertificateConfig()
        challenge_type = getattr(config.challenge_type, "value", config.challenge_type) or ChallengeType.HTTP.value

        certificate = Certificate(
            id=new_id(),
            account_id=account.id,
            domains=domains,
            challenge_type=challenge_type,
        )
        logger.info(f"Requesting certificate {certificate.id} for {', '.join(domains)} ({challenge_type})")

        client = account.client.clone()
        try:
            self.configurator.configure(client, challenge_type, config)

            try:
                bundle = client.obtain_certificate(domains)
            except exceptions.ChainVerificationFailure as e:
                logger.critical(
                    f"Certificate {certificate.id} for {', '.join(domains)} was issued by the CA "
                    f"but its chain failed verification: {e.reason}. Nothing was stored."
                )
                raise exceptions.PostIssuancePersistenceFailure(certificate, e.bundle, e) from e
            except Exception as e:
                logger.error(f"Failed to obtain certificate for {', '.join(domains)}: {e}")
                raise exceptions.ObtainFailure(domains, e) from e
        finally:
            client.close()

        self.persist(certificate, bundle)
        logger.info(f"Certificate {certificate.id} issued for {', '.join(domains)}")
        return certificate

    def persist(self, certificate: Certificate, bundle: CertificateBundle) -> Certificate:
        """
        Store issued material, then mark and record the certificate.

        Also used to re-save material carried by a PostIssuancePersistenceFailure.

        Raises:
            exceptions.PostIssuancePersistenceFailure: If any write fails.
        """
        key_ref = key_ref_for(certificate.id)
        try:
            self.key_store.save(key_ref, bundle.private_key)
            self.key_store.save(certificate.id, bundle.certificate)
            certificate.mark_issued(certificate.id, key_ref)
            if self.certificates is not None:
                self.certificates.create(certificate)
        except Exception as e:
            logger.critical(
                f"Certificate {certificate.id} for {', '.join(certificate.domains)} was issued by the CA "
                f"but could not be persisted: {e}. Re-save the material; do not re-issue."
            )
            raise exceptions.PostIssuancePersistenceFailure(certificate, bundle, e) from e

        return certificate
