"""
Resolution of a reusable ACME identity (record, key and client) for an email.
"""

import logging
from typing import Any, Callable

from cryptography.hazmat.primitives.asymmetric import rsa

from acme_certmanager import exceptions, validation
from acme_certmanager.certificate import generate_private_key
from acme_certmanager.directory import AccountDirectory
from acme_certmanager.records import Account, new_id
from acme_certmanager.storage import KeyMaterialStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_SIZE = 2048

ClientFactory = Callable[[rsa.RSAPrivateKey, str], Any]


class AccountResolver:
    """
    Looks up or creates the account for an email and loads its key and ACME client.

    A new account's key is stored before its record is created. A record that
    exists is therefore expected to have a key; when it does not, loading it
    fails with KeyMaterialUnavailable rather than generating a replacement.

    Attributes:
        directory: Account records.
        key_store: Blob store for account keys.
        client_factory: Builds an ACME client from ``(private_key, email)``.
        key_size: RSA key size for new accounts.
        register: Register (or load) the account with the CA whenever it is resolved.
    """

    def __init__(
        self,
        directory: AccountDirectory,
        key_store: KeyMaterialStore,
        client_factory: ClientFactory,
        key_size: int = DEFAULT_KEY_SIZE,
        register: bool = True,
    ) -> None:
        self.directory = directory
        self.key_store = key_store
        self.client_factory = client_factory
        self.key_size = key_size
        self.register = register

    def get_or_create(self, email: str) -> Account:
        """
        Return the account for ``email``, creating it on first use.

        Lookup-then-create is not atomic. When a concurrent caller creates the
        same email first, the unique constraint rejects this create and the
        winner's account is loaded instead.

        Raises:
            exceptions.InvalidEmail: If the address is malformed. Nothing is written.
            exceptions.KeyMaterialUnavailable: If an existing account's key cannot be read or decoded.
            exceptions.KeyGenerationFailure: If a key for a new account cannot be generated.
            exceptions.DirectoryError: If the directory lookup or insert fails.
            exceptions.StorageError: If a new account's key cannot be stored.
        """
        is_valid, error = validation.validate_email(email)
        if not is_valid:
            raise exceptions.InvalidEmail(email, error)

        logger.info(f"Checking if account for {email} already exists")
        existing = self.directory.find_by_email(email)
        if existing is not None:
            logger.info(f"Found account {existing.id} for {email}")
            return self._load(existing)

        logger.info(f"Account for {email} does not exist, creating new account")
        try:
            return self._create(email)
        except exceptions.DuplicateAccount:
            logger.warning(f"Account for {email} was created concurrently, loading it instead")
            existing = self.directory.find_by_email(email)
            if existing is None:
                raise
            return self._load(existing)

    def get(self, account_id: str) -> Account:
        """
        Load an existing account by identifier.

        Raises:
            exceptions.AccountNotFound: If no record has this identifier.
            exceptions.KeyMaterialUnavailable: If the account's key cannot be read or decoded.
        """
        account = self.directory.find_by_id(account_id)
        if account is None:
            raise exceptions.AccountNotFound(account_id)
        return self._load(account)

    def _create(self, email: str) -> Account:
        account_id = new_id()
        account = Account(id=account_id, email=email, private_key_ref=account_id)

        try:
            private_key = generate_private_key(self.key_size)
        except Exception as e:
            logger.error(f"Failed to generate key for {email}: {e}")
            raise exceptions.KeyGenerationFailure(e) from e

        self.key_store.save_private_key(account.private_key_ref, private_key)
        self.directory.create(account)
        logger.info(f"Created account {account.id} for {email}")

        account.private_key = private_key
        self._attach_client(account)
        return account

    def _load(self, account: Account) -> Account:
        try:
            private_key = self.key_store.read_private_key(account.private_key_ref)
        except (exceptions.StorageError, ValueError, TypeError) as e:
            logger.error(f"Private key for account {account.id} is unavailable: {e}")
            raise exceptions.KeyMaterialUnavailable(account.id, e) from e

        account.private_key = private_key
        self._attach_client(account)
        return account

    def _attach_client(self, account: Account) -> None:
        client = self.client_factory(account.private_key, account.email)
        if self.register:
            client.register_or_load_account()
        account.client = client
