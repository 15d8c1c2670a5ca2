"""
Process configuration and construction of the manager's collaborators.

Settings come from environment variables, falling back to files of the same
name in a ``secrets/`` directory (Docker secrets style). Only this module and
the CLI read the environment.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from acme_certmanager import acme, linode, utils
from acme_certmanager.challenge import ChallengeConfigurator
from acme_certmanager.core import CertificateManager
from acme_certmanager.directory import AccountDirectory, CertificateDirectory, Database
from acme_certmanager.storage import (
    FileKeyStore,
    KeyMaterialStore,
    MemoryKeyStore,
    ObjectStorageKeyStore,
)

logger = logging.getLogger(__name__)

USER_AGENT = "acme-certmanager"

STORAGE_BACKENDS = ("linode", "file", "memory")

_FALSE_VALUES = {"false", "0", "no", "off"}
_LINODE_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]{40,100}")


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in _FALSE_VALUES


@dataclass(frozen=True)
class Settings:
    """Resolved process settings."""

    db_path: Path = Path("certmanager.db")
    storage_backend: str = "file"
    storage_dir: Path = Path("keys")
    linode_token: str | None = field(default=None, repr=False)
    linode_cluster: str | None = None
    linode_bucket: str | None = None
    acme_directory_url: str | None = None
    acme_dry_run: bool = False
    http_challenge_host: str = ""
    http_challenge_port: int = 80
    auth_enabled: bool = True
    auth_public_key_path: Path | None = None
    auth_algorithms: tuple[str, ...] = ("RS256",)
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    @classmethod
    def from_env(cls, secrets_dir: Path | None = None) -> "Settings":
        """
        Read settings from the environment.

        Raises:
            ValueError: If a value cannot be parsed or the storage backend is unknown.
        """
        secrets_dir = secrets_dir or Path.cwd() / "secrets"

        def get(name: str, default: Any = None) -> Any:
            return utils.get_env_secrets(name, secrets_dir, default=default)

        storage_backend = get("STORAGE_BACKEND", "file").strip().lower()
        if storage_backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, got '{storage_backend}'"
            )

        key_path = get("AUTH_PUBLIC_KEY_PATH")
        algorithms = tuple(a.strip() for a in get("AUTH_ALGORITHMS", "RS256").split(",") if a.strip())

        try:
            http_port = int(get("HTTP_CHALLENGE_PORT", "80"))
            api_port = int(get("API_PORT", "8080"))
        except ValueError as e:
            raise ValueError(f"Invalid port setting: {e}") from e

        return cls(
            db_path=Path(get("CERTMANAGER_DB_PATH", "certmanager.db")),
            storage_backend=storage_backend,
            storage_dir=Path(get("STORAGE_DIR", "keys")),
            linode_token=get("LINODE_API_TOKEN"),
            linode_cluster=get("LINODE_CLUSTER"),
            linode_bucket=get("LINODE_BUCKET"),
            acme_directory_url=get("ACME_DIRECTORY_URL"),
            acme_dry_run=parse_bool(get("ACME_DRY_RUN")),
            http_challenge_host=get("HTTP_CHALLENGE_HOST", ""),
            http_challenge_port=http_port,
            auth_enabled=parse_bool(get("AUTH_ENABLED"), default=True),
            auth_public_key_path=Path(key_path) if key_path else None,
            auth_algorithms=algorithms or ("RS256",),
            api_host=get("API_HOST", "0.0.0.0"),
            api_port=api_port,
        )


def check_linode_token(token: str | None) -> str:
    """
    Validate the format of a Linode API token.

    Raises:
        ValueError: If the token is missing or malformed.
    """
    if not token:
        raise ValueError(
            "LINODE_API_TOKEN not found. Please set it as an environment variable:\n"
            "  export LINODE_API_TOKEN='your-token-here'\n"
            "Or pass it via Docker secrets."
        )

    token = token.strip()
    if not _LINODE_TOKEN_RE.fullmatch(token):
        raise ValueError("LINODE_API_TOKEN appears to be invalid (wrong format or length)")

    logger.debug(f"Using Linode token: {token[:8]}...")
    return token


def build_key_store(settings: Settings) -> KeyMaterialStore:
    """
    Build the key material store selected by ``settings.storage_backend``.

    Raises:
        ValueError: If the linode backend is selected without a token, cluster or bucket.
        exceptions.BucketNotFoundError: If the configured bucket does not exist.
    """
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory key store; keys are lost when the process exits")
        return MemoryKeyStore()

    if settings.storage_backend == "file":
        logger.info(f"Using key store directory {settings.storage_dir}")
        return FileKeyStore(settings.storage_dir)

    token = check_linode_token(settings.linode_token)
    if not settings.linode_cluster or not settings.linode_bucket:
        raise ValueError("LINODE_CLUSTER and LINODE_BUCKET are required for the linode storage backend")

    client = linode.LinodeObjectStorageClient(token)
    client.add_headers({"User-Agent": USER_AGENT})
    store = ObjectStorageKeyStore(client, settings.linode_cluster, settings.linode_bucket)
    try:
        store.check()
    except Exception:
        client.close()
        raise
    logger.info(f"Using key store bucket {settings.linode_cluster}/{settings.linode_bucket}")
    return store


def build_manager(
    settings: Settings, dns_prompt: Callable[[str], Any] = input, register_accounts: bool = True
) -> CertificateManager:
    """Build a CertificateManager and its collaborators from ``settings``."""
    db = Database(settings.db_path)
    try:
        key_store = build_key_store(settings)
    except Exception:
        db.close()
        raise

    configurator = ChallengeConfigurator(
        http_host=settings.http_challenge_host,
        http_port=settings.http_challenge_port,
        dns_prompt=dns_prompt,
    )
    return CertificateManager(
        accounts=AccountDirectory(db),
        key_store=key_store,
        client_factory=acme.client_factory(
            directory_url=settings.acme_directory_url,
            dry_run=settings.acme_dry_run,
            user_agent=USER_AGENT,
        ),
        certificates=CertificateDirectory(db),
        configurator=configurator,
        register_accounts=register_accounts,
        database=db,
    )
