"""
Key material stores.

Private keys and certificate chains are kept as opaque blobs addressed by the
identifier of the record that owns them. Private keys are written as
unencrypted PKCS#8 PEM.
"""

import logging
import os
import re
import threading
from pathlib import Path

import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from acme_certmanager import exceptions, linode, utils

logger = logging.getLogger(__name__)

PEM_CONTENT_TYPE = "application/x-pem-file"

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class KeyMaterialStore:
    """Base class for blob stores holding PEM encoded keys and certificate chains."""

    def save(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def read(self, key: str) -> bytes:
        """
        Read the blob stored under ``key``.

        Raises:
            exceptions.KeyNotFoundError: If nothing is stored under the key.
            exceptions.StorageError: If the backend cannot be reached.
        """
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        try:
            self.read(key)
        except exceptions.KeyNotFoundError:
            return False
        return True

    def close(self) -> None:
        """Release backend connections."""

    def save_private_key(self, key: str, private_key: rsa.RSAPrivateKey) -> None:
        """Serialize ``private_key`` as PKCS#8 PEM and store it under ``key``."""
        self.save(key, utils.private_key_to_pem(private_key))

    def read_private_key(self, key: str) -> rsa.RSAPrivateKey:
        """
        Read and decode the RSA private key stored under ``key``.

        Raises:
            exceptions.KeyNotFoundError: If nothing is stored under the key.
            ValueError: If the stored bytes are not a PEM encoded RSA key.
        """
        return utils.private_key_from_pem(self.read(key))


def check_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_RE.match(key) or ".." in key:
        raise ValueError(f"Invalid storage key: {key!r}")
    return key


class MemoryKeyStore(KeyMaterialStore):
    """Thread-safe in-process store."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def save(self, key: str, data: bytes) -> None:
        check_key(key)
        with self._lock:
            self._objects[key] = bytes(data)

    def read(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise exceptions.KeyNotFoundError(key) from None

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class FileKeyStore(KeyMaterialStore):
    """Directory-backed store. Every blob is a file readable only by the owner."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _path(self, key: str) -> Path:
        return self.directory / check_key(key)

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise exceptions.StorageError(key, "save", e) from e

    def read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise exceptions.KeyNotFoundError(key) from None
        except OSError as e:
            raise exceptions.StorageError(key, "read", e) from e


class ObjectStorageKeyStore(KeyMaterialStore):
    """
    Store backed by a private Linode Object Storage bucket.

    Attributes:
        client: Linode object storage API client.
        cluster: Cluster the bucket lives in (e.g. ``us-east-1``).
        bucket: Bucket label.
        prefix: Optional object name prefix.
        url_expiry: Lifetime in seconds of the pre-signed URLs.
    """

    def __init__(
        self,
        client: linode.LinodeObjectStorageClient,
        cluster: str,
        bucket: str,
        prefix: str = "",
        url_expiry: int = 300,
    ) -> None:
        self.client = client
        self.cluster = cluster
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.url_expiry = url_expiry

    def _object_name(self, key: str) -> str:
        check_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def check(self) -> None:
        """
        Confirm that the bucket exists.

        Raises:
            exceptions.BucketNotFoundError: If no bucket with this label exists in the cluster.
        """
        buckets = self.client.list_buckets()
        for bucket in buckets:
            if bucket.get("label") == self.bucket and bucket.get("cluster", self.cluster) == self.cluster:
                return
        raise exceptions.BucketNotFoundError(self.bucket)

    def save(self, key: str, data: bytes) -> None:
        name = self._object_name(key)
        logger.debug(f"Uploading {name} to {self.cluster}/{self.bucket}")
        try:
            url = self.client.create_object_url(
                self.cluster, self.bucket, name, "PUT", PEM_CONTENT_TYPE, expires_in=self.url_expiry
            )
            self.client.put_object(url, data, PEM_CONTENT_TYPE)
        except requests.exceptions.RequestException as e:
            raise exceptions.StorageError(key, "save", e) from e

    def read(self, key: str) -> bytes:
        name = self._object_name(key)
        logger.debug(f"Downloading {name} from {self.cluster}/{self.bucket}")
        try:
            url = self.client.create_object_url(
                self.cluster, self.bucket, name, "GET", expires_in=self.url_expiry
            )
        except requests.exceptions.RequestException as e:
            raise exceptions.StorageError(key, "read", e) from e

        try:
            return self.client.get_object(url)
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                raise exceptions.KeyNotFoundError(key) from None
            raise exceptions.StorageError(key, "read", e) from e
        except requests.exceptions.RequestException as e:
            raise exceptions.StorageError(key, "read", e) from e

    def close(self) -> None:
        self.client.close()
