"""
Account and certificate records shared by the resolver, issuer and directory.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric import rsa

    from acme_certmanager.acme import AcmeClient


def new_id() -> str:
    """Generate a new opaque record identifier."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeType(str, Enum):
    """Domain validation strategies a certificate request can use."""

    HTTP = "http"
    DNS = "dns"


@dataclass
class CertificateConfig:
    """Per-request issuance options."""

    challenge_type: str = ChallengeType.HTTP.value
    dns_provider: str = "manual"


@dataclass
class Account:
    """
    A stable ACME identity: one per contact email.

    ``private_key`` and ``client`` are only populated once the account has been
    resolved; they are never written to the directory.
    """

    id: str
    email: str
    private_key_ref: str
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None
    private_key: "rsa.RSAPrivateKey | None" = field(default=None, repr=False, compare=False)
    client: "AcmeClient | None" = field(default=None, repr=False, compare=False)

    @property
    def registration(self) -> Any:
        """The CA's acknowledgment of this account, or None until the client has registered."""
        if self.client is None:
            return None
        return self.client.registration

    @property
    def is_resolved(self) -> bool:
        return self.private_key is not None and self.client is not None


@dataclass
class Certificate:
    """A certificate request bound to an account; ``certificate_ref`` is set only once issued."""

    id: str
    account_id: str
    domains: list[str]
    challenge_type: str = ChallengeType.HTTP.value
    certificate_ref: str | None = None
    key_ref: str | None = None
    issued_at: datetime | None = None

    @property
    def is_issued(self) -> bool:
        return self.certificate_ref is not None

    def mark_issued(self, certificate_ref: str, key_ref: str) -> None:
        self.certificate_ref = certificate_ref
        self.key_ref = key_ref
        self.issued_at = utcnow()


@dataclass
class CertificateBundle:
    """Material returned by the CA for one successful order."""

    domains: list[str]
    certificate: bytes
    private_key: bytes = field(repr=False)
    certificate_url: str = ""
