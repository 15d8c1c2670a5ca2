"""
Core library interface for ACME account and certificate management.

This module wires the account resolver, challenge configurator and
certificate issuer together behind a small API. Every collaborator is
passed in; nothing here reads the environment or opens connections on its
own (see :mod:`acme_certmanager.config` for that).

Example usage:
    ```python
    from acme_certmanager import CertificateManager, acme
    from acme_certmanager.directory import AccountDirectory, CertificateDirectory, Database
    from acme_certmanager.storage import FileKeyStore

    db = Database("certmanager.db")
    manager = CertificateManager(
        accounts=AccountDirectory(db),
        key_store=FileKeyStore("keys"),
        client_factory=acme.client_factory(dry_run=True),
        certificates=CertificateDirectory(db),
        database=db,
    )

    account = manager.new_account("admin@example.com")
    certificate = manager.new_certificate(["example.com", "www.example.com"], account)
    chain = manager.read_certificate_chain(certificate.id)
    ```
"""

import logging

from acme_certmanager import exceptions
from acme_certmanager.account import DEFAULT_KEY_SIZE, AccountResolver, ClientFactory
from acme_certmanager.certificate import CertificateIssuer
from acme_certmanager.challenge import ChallengeConfigurator
from acme_certmanager.directory import AccountDirectory, CertificateDirectory, Database
from acme_certmanager.records import Account, Certificate, CertificateConfig
from acme_certmanager.storage import KeyMaterialStore

logger = logging.getLogger(__name__)


class CertificateManager:
    """
    High-level manager for ACME accounts and the certificates they own.

    Attributes:
        resolver: Looks up or creates accounts and loads their keys.
        issuer: Runs issuance transactions.
        configurator: Installs challenge providers on ACME clients.
        key_store: Blob store shared by accounts and certificates.
        certificates: Certificate metadata directory, if any.
    """

    def __init__(
        self,
        accounts: AccountDirectory,
        key_store: KeyMaterialStore,
        client_factory: ClientFactory,
        certificates: CertificateDirectory | None = None,
        configurator: ChallengeConfigurator | None = None,
        key_size: int = DEFAULT_KEY_SIZE,
        register_accounts: bool = True,
        database: Database | None = None,
    ):
        """
        Initialize the manager.

        Args:
            accounts: Account directory.
            key_store: Store for account keys, certificate keys and chains.
            client_factory: Builds an ACME client from ``(private_key, email)``.
            certificates: Certificate directory. Without one, issued certificates
                are stored as blobs only and cannot be looked up by id.
            configurator: Challenge configurator (defaults to http-01 on port 80
                and manual dns-01).
            key_size: RSA key size for new account keys.
            register_accounts: Register accounts with the CA when they are resolved.
            database: Database closed together with the manager.
        """
        self.key_store = key_store
        self.certificates = certificates
        self.configurator = configurator or ChallengeConfigurator()
        self.resolver = AccountResolver(
            accounts,
            key_store,
            client_factory,
            key_size=key_size,
            register=register_accounts,
        )
        self.issuer = CertificateIssuer(key_store, self.configurator, certificates)
        self._database = database

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close the key store and the database."""
        self.key_store.close()
        if self._database is not None:
            self._database.close()

    def new_account(self, email: str) -> Account:
        """
        Return the account for ``email``, creating and registering it on first use.

        Raises:
            exceptions.InvalidEmail: If the address is malformed.
            exceptions.KeyMaterialUnavailable: If an existing account's key cannot be loaded.
            exceptions.KeyGenerationFailure: If a new key cannot be generated.
        """
        return self.resolver.get_or_create(email)

    def get_account(self, account_id: str) -> Account:
        """
        Load an existing account by id.

        Raises:
            exceptions.AccountNotFound: If no account has this id.
            exceptions.KeyMaterialUnavailable: If the account's key cannot be loaded.
        """
        return self.resolver.get(account_id)

    def new_certificate(
        self, domains: list[str], account: Account, config: CertificateConfig | None = None
    ) -> Certificate:
        """
        Issue a certificate for ``domains`` on behalf of ``account``.

        Uses the http-01 challenge unless ``config`` says otherwise. See
        :meth:`CertificateIssuer.issue` for the errors raised.
        """
        return self.issuer.issue(domains, account, config)

    def get_certificate(self, certificate_id: str) -> Certificate:
        """
        Look up certificate metadata by id.

        Raises:
            exceptions.CertificateNotFound: If no certificate has this id.
        """
        certificate = None
        if self.certificates is not None:
            certificate = self.certificates.find_by_id(certificate_id)
        if certificate is None:
            raise exceptions.CertificateNotFound(certificate_id)
        return certificate

    def read_certificate_chain(self, certificate_id: str) -> bytes:
        """
        Return the PEM chain of an issued certificate.

        Raises:
            exceptions.CertificateNotFound: If no certificate has this id or its chain is missing.
        """
        certificate = self.get_certificate(certificate_id)
        try:
            return self.key_store.read(certificate.certificate_ref)
        except exceptions.KeyNotFoundError:
            logger.error(f"Chain for certificate {certificate_id} is missing from the key store")
            raise exceptions.CertificateNotFound(certificate_id) from None

    def recover(self, failure: exceptions.PostIssuancePersistenceFailure) -> Certificate:
        """
        Retry persisting the material carried by a PostIssuancePersistenceFailure.

        No request is sent to the CA.
        """
        logger.info(f"Re-saving issued material for certificate {failure.certificate_id}")
        return self.issuer.persist(failure.certificate, failure.bundle)

    def __repr__(self) -> str:
        return f"<CertificateManager {type(self.key_store).__name__}>"
