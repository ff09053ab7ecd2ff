"""Pre-enrollment token generation and hashing.

The enrollment endpoint is reachable without a client certificate. Operators
can close that bootstrap gap by handing devices a one-time token whose
Argon2id hash is configured as ``ENROLLMENT_TOKEN_HASH``.

Generate a token and its hash with the ``mtls-enrollment-token`` command
(``python -m shared.security``). Pass ``--token`` to hash an existing token.
"""

import argparse
import base64
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

# Use Argon2id with secure defaults
_ph = PasswordHasher()

TOKEN_PREFIX = "enr_"


def generate_enrollment_token() -> str:
    """
    Generate a token in format: enr_<32 random bytes as base64url>.

    Example: enr_x7Kj9mN2pQrStUvWxYz1A2B3C4D5E6F7...
    """
    random_bytes = secrets.token_bytes(32)
    encoded = base64.urlsafe_b64encode(random_bytes).decode("ascii").rstrip("=")
    return f"{TOKEN_PREFIX}{encoded}"


def hash_token(token: str) -> str:
    """Hash a token using Argon2id."""
    return _ph.hash(token)


def verify_token(token: str, token_hash: str) -> bool:
    """Verify a token against a stored Argon2id hash."""
    try:
        return _ph.verify(token_hash, token)
    except (VerificationError, InvalidHashError):
        return False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate an enrollment token and its ENROLLMENT_TOKEN_HASH value"
    )
    parser.add_argument("--token", help="Hash this token instead of generating a new one")
    args = parser.parse_args(argv)

    token = args.token or generate_enrollment_token()
    print(f"ENROLLMENT_TOKEN={token}")
    print(f"ENROLLMENT_TOKEN_HASH={hash_token(token)}")


if __name__ == "__main__":
    main()
