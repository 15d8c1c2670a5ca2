class CertManagerError(Exception):
    """Base class for all certificate manager errors."""

    def __init__(self, message, cause=None):
        self.cause = cause
        super().__init__(message)


class InvalidEmail(CertManagerError):
    """Exception raised when an account email is not a well-formed address."""

    def __init__(self, email, reason=""):
        self.email = email
        message = f"Email address '{email}' is not valid"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidDomain(CertManagerError):
    """Exception raised when a requested domain name is not a valid hostname or wildcard."""

    def __init__(self, domain, reason=""):
        self.domain = domain
        message = f"Domain '{domain}' is not valid"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DuplicateAccount(CertManagerError):
    """Exception raised when an account for the email already exists."""

    def __init__(self, email, cause=None):
        self.email = email
        super().__init__(f"Account for '{email}' already exists", cause)


class AccountNotFound(CertManagerError):
    """Exception raised when an account id does not resolve to a record."""

    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account '{account_id}' not found")


class AccountNotResolved(CertManagerError):
    """Exception raised when an account is used for issuance before its key and client are loaded."""

    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account '{account_id}' has no key or ACME client loaded")


class CertificateNotFound(CertManagerError):
    """Exception raised when a certificate id does not resolve to a record."""

    def __init__(self, certificate_id):
        self.certificate_id = certificate_id
        super().__init__(f"Certificate '{certificate_id}' not found")


class DirectoryError(CertManagerError):
    """Exception raised when the relational directory cannot be queried or written."""

    def __init__(self, operation, cause=None):
        self.operation = operation
        super().__init__(f"Directory operation '{operation}' failed: {cause}", cause)


class StorageError(CertManagerError):
    """Exception raised when the key material store cannot be read or written."""

    def __init__(self, key, operation, cause=None):
        self.key = key
        self.operation = operation
        super().__init__(f"Storage {operation} for '{key}' failed: {cause}", cause)


class KeyNotFoundError(StorageError):
    """Exception raised when a key is not present in the key material store."""

    def __init__(self, key):
        super().__init__(key, "read", "not found")


class BucketNotFoundError(CertManagerError):
    """Exception raised when a bucket is not found."""

    def __init__(self, bucket_name):
        self.bucket_name = bucket_name
        super().__init__(f"Bucket '{bucket_name}' not found.")


class KeyMaterialUnavailable(CertManagerError):
    """Exception raised when an existing account's private key is missing or undecodable."""

    def __init__(self, account_id, cause=None):
        self.account_id = account_id
        super().__init__(f"Private key for account '{account_id}' is unavailable: {cause}", cause)


class KeyGenerationFailure(CertManagerError):
    """Exception raised when a new private key cannot be generated."""

    def __init__(self, cause=None):
        super().__init__(f"Failed to generate private key: {cause}", cause)


class UnsupportedChallengeType(CertManagerError):
    """Exception raised when a challenge type has no registered configurator."""

    def __init__(self, challenge_type):
        self.challenge_type = challenge_type
        super().__init__(f"Unsupported challenge type: '{challenge_type}'")


class UnsupportedDNSProvider(CertManagerError):
    """Exception raised when a DNS provider is not supported."""

    def __init__(self, provider):
        self.provider = provider
        super().__init__(
            f"DNS provider '{provider}' not supported yet. "
            f"Use 'manual' for manual DNS record setup"
        )


class ChallengeSetupFailure(CertManagerError):
    """Exception raised when a challenge provider cannot be created or registered."""

    def __init__(self, challenge_type, cause=None):
        self.challenge_type = challenge_type
        super().__init__(f"Failed to set up {challenge_type} challenge: {cause}", cause)


class ObtainFailure(CertManagerError):
    """Exception raised when the CA rejects an order or the exchange fails before material is returned."""

    def __init__(self, domains, cause=None):
        self.domains = list(domains)
        super().__init__(f"Failed to obtain certificate for {', '.join(self.domains)}: {cause}", cause)


class ChainVerificationFailure(CertManagerError):
    """
    Exception raised when the CA returned a chain that fails the local checks.

    The CA has already issued the certificate, so the returned material is
    carried on the exception.
    """

    def __init__(self, bundle, reason):
        self.bundle = bundle
        self.reason = reason
        super().__init__(f"Issued chain for {', '.join(bundle.domains)} failed verification: {reason}")


class PostIssuancePersistenceFailure(CertManagerError):
    """
    Exception raised when a certificate was issued by the CA but could not be persisted.

    The issued material is carried on the exception so an operator can re-save it
    instead of requesting a second certificate.
    """

    def __init__(self, certificate, bundle, cause=None):
        self.certificate = certificate
        self.bundle = bundle
        self.certificate_id = certificate.id
        super().__init__(
            f"Certificate '{certificate.id}' was issued but could not be persisted: {cause}",
            cause,
        )


class AcmeError(CertManagerError):
    """Base exception for ACME protocol operations."""


class AcmeOrderError(AcmeError):
    """ACME order could not be created, finalized or downloaded."""


class AcmeChallengeError(AcmeError):
    """ACME challenge could not be solved."""
