import base64
import hashlib
import json
import logging
import os
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

_MISSING = object()


def rsa_jwk_public(key: rsa.RSAPrivateKey | rsa.RSAPublicKey) -> dict:
    """
    Convert an RSA key to a JSON Web Key (JWK) public key.

    Args:
        key (rsa.RSAPrivateKey | rsa.RSAPublicKey): RSA key; private keys are reduced to their public half.

    Returns:
        dict: JWK public key.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        key = key.public_key()

    public_numbers = key.public_numbers()

    return {
        "kty": "RSA",
        "n": b64url_uint(public_numbers.n),
        "e": b64url_uint(public_numbers.e),
    }


def b64url_uint(n: int) -> str:
    """
    Convert an unsigned integer to a Base64url-encoded string.

    Raises:
        TypeError: If the input is not an unsigned integer.
    """
    if not isinstance(n, int) or n < 0:
        raise TypeError("Input must be an unsigned integer")

    length = max(1, (n.bit_length() + 7) // 8)
    encoded = base64.urlsafe_b64encode(n.to_bytes(length, "big")).rstrip(b"=")

    return encoded.decode("ascii")


def b64url(data: bytes) -> str:
    """Convert binary data to an unpadded Base64url-encoded string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def json_encode(data: dict) -> bytes:
    """Encode a dictionary as compact, key-sorted JSON bytes."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def json_thumbprint(data: dict) -> str:
    """
    Calculate the RFC 7638 thumbprint of a JWK.

    Args:
        data (dict): Public JWK.

    Returns:
        str: Base64url-encoded SHA-256 thumbprint.
    """
    return b64url(hashlib.sha256(json_encode(data)).digest())


def key_authorization(token: str, account_key: rsa.RSAPrivateKey) -> str:
    """Build the key authorization string for a challenge token."""
    return f"{token}.{json_thumbprint(rsa_jwk_public(account_key))}"


def dns01_txt_value(key_auth: str) -> str:
    """Return the TXT record value for a dns-01 key authorization."""
    return b64url(hashlib.sha256(key_auth.encode("utf-8")).digest())


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Serialize a private key as unencrypted PKCS#8 PEM.

    Args:
        private_key: The private key object to convert.

    Returns:
        bytes: PEM encoded key.
    """
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def private_key_from_pem(data: bytes) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key from PEM bytes.

    Raises:
        ValueError: If the data is not a PEM encoded RSA private key.
    """
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Invalid key type: {type(key).__name__}")
    return key


def get_env_secrets(name: str, path: Path = Path(Path.cwd() / "secrets/"), default=_MISSING) -> str | None:
    """
    Get a setting from either an environment variable or a file in the project secrets directory.

    Args:
        name (str): Environment variable name.
        path (Path): Path to the secrets directory (default: "secrets/").
        default: Value returned when neither source is set. Without it a missing value raises.

    Returns:
        str: The resolved value.

    Raises:
        OSError: If the variable is not set, no secret file exists and no default was given.
    """
    secret = os.environ.get(name)
    if secret:
        return secret

    if (path / name).exists():
        secret = (path / name).read_text().rstrip("\n")
        logger.debug(f"Loaded secret from file: {path}/{name}")
        return secret

    if default is not _MISSING:
        return default

    raise OSError(f"Environment variable and/or secret file variable: {path}/{name} not found")
