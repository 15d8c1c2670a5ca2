"""
ACME Certificate Manager - ACME accounts and certificates with pluggable key storage.
"""

__version__ = "0.1.0"

from . import (
    acme,
    certificate,
    challenge,
    directory,
    exceptions,
    linode,
    models,
    records,
    storage,
    utils,
    validation,
)

# Import main public API
from .core import CertificateManager
from .records import Account, Certificate, CertificateConfig, ChallengeType

__all__ = [
    # High-level API (recommended for most users)
    "CertificateManager",
    "Account",
    "Certificate",
    "CertificateConfig",
    "ChallengeType",
    # Low-level modules (for advanced usage)
    "acme",
    "certificate",
    "challenge",
    "directory",
    "exceptions",
    "linode",
    "models",
    "records",
    "storage",
    "utils",
    "validation",
]
