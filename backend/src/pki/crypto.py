"""Key and fingerprint helpers shared by the authority and device sides."""

import hashlib

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

RSA_PUBLIC_EXPONENT = 65537
SUPPORTED_ALGORITHMS = ("RSA", "ECDSA")


def compute_thumbprint(der_bytes: bytes) -> str:
    """SHA-256 over the DER encoding, lowercase hex (64 characters)."""
    return hashlib.sha256(der_bytes).hexdigest()


def generate_private_key(
    algorithm: str = "ECDSA",
    rsa_key_size: int = 2048,
    curve: ec.EllipticCurve | None = None,
) -> PrivateKeyTypes:
    """Generate an RSA or ECDSA private key.

    ECDSA defaults to P-256, the curve devices use for enrollment keys.
    """
    algorithm = algorithm.upper()
    if algorithm == "ECDSA":
        return ec.generate_private_key(curve or ec.SECP256R1())
    if algorithm == "RSA":
        return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=rsa_key_size)
    raise ValueError(f"Unsupported key algorithm: {algorithm}")


def algorithm_name(key: PrivateKeyTypes | PublicKeyTypes) -> str:
    """Human-readable algorithm label, e.g. ``RSA-4096`` or ``ECDSA-secp384r1``."""
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return f"RSA-{key.key_size}"
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return f"ECDSA-{key.curve.name}"
    return "UNKNOWN"


def sign_data(key: PrivateKeyTypes, data: bytes) -> bytes:
    """Sign ``data`` with SHA-256 using the scheme matching the key type."""
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(data, ec.ECDSA(hashes.SHA256()))
    raise ValueError(f"Unsupported key type for signing: {type(key).__name__}")


def public_keys_match(a: PublicKeyTypes, b: PublicKeyTypes) -> bool:
    """Compare two public keys by their SubjectPublicKeyInfo encoding."""
    return a.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo) == b.public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )
