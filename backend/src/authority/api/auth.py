"""Client-certificate authentication for the certificate API.

The client chain comes from one of two places:
- the ASGI TLS extension (``scope["extensions"]["tls"]["client_cert_chain"]``,
  a list of PEM strings, leaf first), when the ASGI server terminates TLS;
- a header named by ``CLIENT_CERT_HEADER`` holding the URL-encoded PEM leaf,
  when a reverse proxy terminates TLS and forwards the certificate.

Either way the chain is re-validated against the pinned CA before any claims
are read from it.
"""

import logging
from urllib.parse import unquote

from fastapi import Depends, Request, status
from fastapi.security import APIKeyHeader

from authority.api.errors import ApiError
from authority.ca.authority import CertificateAuthority
from pki.certificate import Certificate
from pki.claims import ClientClaims, extract_claims
from pki.trust import TrustError, TrustValidator
from shared.config import settings
from shared.security import verify_token

logger = logging.getLogger(__name__)

enrollment_token_header = APIKeyHeader(name="X-Enrollment-Token", auto_error=False)

_authority: CertificateAuthority | None = None
_trust_validator: TrustValidator | None = None


def set_authority(authority: CertificateAuthority) -> None:
    """Install the initialized CA and pin its certificate for client validation."""
    global _authority, _trust_validator
    _authority = authority
    _trust_validator = TrustValidator(authority.certificate)


def get_authority() -> CertificateAuthority:
    if _authority is None:
        raise RuntimeError("CertificateAuthority not initialized")
    return _authority


def get_trust_validator() -> TrustValidator:
    if _trust_validator is None:
        raise RuntimeError("CertificateAuthority not initialized")
    return _trust_validator


def presented_chain(request: Request) -> list[str]:
    """PEM certificates presented by the client, leaf first. Empty if none."""
    tls = request.scope.get("extensions", {}).get("tls") or {}
    chain = [pem for pem in tls.get("client_cert_chain") or [] if pem]
    if chain:
        return chain

    if settings.CLIENT_CERT_HEADER:
        forwarded = request.headers.get(settings.CLIENT_CERT_HEADER)
        if forwarded:
            return [unquote(forwarded)]
    return []


async def require_client_certificate(
    request: Request,
    validator: TrustValidator = Depends(get_trust_validator),
) -> Certificate:
    """
    Authenticate the caller by client certificate.

    - 401 when no certificate was presented
    - 403 when the chain does not validate against the pinned CA, or the
      leaf is not a client-authentication certificate
    """
    chain_pem = presented_chain(request)
    if not chain_pem:
        logger.debug("client_auth_attempt", extra={"result": "failure", "reason": "missing"})
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Client certificate required")

    try:
        chain = [Certificate.from_pem(pem) for pem in chain_pem]
    except ValueError:
        logger.info("client_auth_attempt", extra={"result": "failure", "reason": "unparseable"})
        raise ApiError(
            status.HTTP_403_FORBIDDEN,
            "Client certificate not trusted",
            {"failure": "chain_evaluation_failed", "detail": "certificate is not valid PEM"},
        ) from None

    try:
        decision = validator.validate(chain)
    except TrustError as e:
        logger.info(
            "client_auth_attempt",
            extra={"result": "failure", "reason": e.failure.value, "detail": e.detail},
        )
        raise ApiError(
            status.HTTP_403_FORBIDDEN,
            "Client certificate not trusted",
            {"failure": e.failure.value, "detail": e.detail},
        ) from None

    leaf = decision.leaf
    if "clientAuth" not in leaf.extended_key_usage:
        logger.info(
            "client_auth_attempt",
            extra={"result": "failure", "reason": "not_client_auth", "serial": leaf.serial_hex},
        )
        raise ApiError(
            status.HTTP_403_FORBIDDEN, "Certificate is not valid for client authentication"
        )

    logger.debug(
        "client_auth_attempt",
        extra={"result": "success", "common_name": leaf.common_name, "serial": leaf.serial_hex},
    )
    return leaf


async def require_client_claims(
    certificate: Certificate = Depends(require_client_certificate),
) -> ClientClaims:
    claims = extract_claims(certificate)
    if claims is None:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Client certificate required")
    return claims


async def require_enrollment_token(
    token: str | None = Depends(enrollment_token_header),
) -> None:
    """
    Gate enrollment behind a pre-shared token when ENROLLMENT_TOKEN_HASH is set.

    With no hash configured the endpoint stays open, which is the default
    bootstrap behaviour.
    """
    if not settings.ENROLLMENT_TOKEN_HASH:
        return
    if not token or not verify_token(token, settings.ENROLLMENT_TOKEN_HASH):
        logger.info("enrollment_token_rejected", extra={"present": bool(token)})
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Invalid enrollment token")
