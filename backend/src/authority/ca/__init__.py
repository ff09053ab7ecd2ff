"""Certificate Authority Service.

This module provides:
- CA bootstrap (load from disk, or generate and persist)
- CSR validation and signing with role-specific extensions
- Serial allocation through a single lock-guarded counter
"""

from authority.ca.authority import (
    AuthorityConfig,
    CertificateAuthority,
    CertificateRole,
    ConfigurationError,
    IssuanceError,
    IssuanceFailure,
)
from authority.ca.serials import SerialCounter

__all__ = [
    "AuthorityConfig",
    "CertificateAuthority",
    "CertificateRole",
    "ConfigurationError",
    "IssuanceError",
    "IssuanceFailure",
    "SerialCounter",
]
