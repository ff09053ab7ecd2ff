"""HTTP clients the device uses to reach the certificate service.

Every call carries a bounded timeout and is attempted exactly once. Retries
belong to the caller (the rotation timer), never to the transport.
"""

import base64
import binascii
import logging
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

import httpx

from device.domain.models import Identity
from pki.trust import TrustError, TrustFailure, TrustValidator

logger = logging.getLogger(__name__)

ENROLL_PATH = "/api/certificates/enroll"
STATUS_PATH = "/api/certificates/current"
ENROLLMENT_SCHEMA_VERSION = 1


class TransportError(Exception):
    """The request did not complete: timeout, connection failure or TLS failure."""

    pass


class EnrollmentRejectedError(Exception):
    """The service answered and refused to issue."""

    def __init__(self, reason: str, details: Any = None, status_code: int | None = None):
        self.reason = reason
        self.details = details
        self.status_code = status_code
        super().__init__(reason)

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class MalformedResponseError(Exception):
    """The service answered with a body that does not match the wire format."""

    pass


class RotationError(Exception):
    """The remote rotation status could not be fetched."""

    pass


@dataclass(frozen=True)
class EnrollmentSubmission:
    csr_der: bytes
    device_id: str
    common_name: str

    def to_json(self) -> dict[str, Any]:
        return {
            "version": ENROLLMENT_SCHEMA_VERSION,
            "csr": base64.b64encode(self.csr_der).decode("ascii"),
            "deviceId": self.device_id,
            "commonName": self.common_name,
        }


@dataclass(frozen=True)
class EnrollmentResult:
    certificate_der: bytes
    device_id: str
    common_name: str
    valid_for_days: int


@dataclass(frozen=True)
class RemoteStatus:
    """Server-side view of the certificate presented on the status call."""

    cert_name: str
    valid_to: datetime
    days_until_expiry: int
    rotation_required: bool
    rotation_recommended: bool


def pinned_ssl_context(ca_pem: str) -> ssl.SSLContext:
    """Client context that trusts only the given CA."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=ca_pem)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def verify_server(response: httpx.Response, validator: TrustValidator) -> None:
    """Re-check the server certificate of ``response`` against the pinned CA.

    Raises:
        TrustError: If the connection was not TLS or the peer is not trusted
    """
    network_stream = response.extensions.get("network_stream")
    ssl_object = network_stream.get_extra_info("ssl_object") if network_stream else None
    if ssl_object is None:
        raise TrustError(TrustFailure.CHAIN_EVALUATION_FAILED, "connection is not TLS")
    peer_der = ssl_object.getpeercert(binary_form=True)
    if not peer_der:
        raise TrustError(TrustFailure.CHAIN_EVALUATION_FAILED, "server presented no certificate")
    validator.validate([peer_der], expected_name=urlsplit(str(response.url)).hostname)


def _error_body(response: httpx.Response) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}", None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"], body.get("details")
    return f"HTTP {response.status_code}", body


class HttpEnrollmentTransport:
    """Submits CSRs to ``POST /api/certificates/enroll``.

    Args:
        base_url: Service root, e.g. ``https://localhost:3000``.
        timeout: Seconds for the whole request.
        verify: SSL context (see ``pinned_ssl_context``) or bool.
        trust_validator: When set, the server certificate is also checked
            with the pinned validator after the handshake.
        enrollment_token: Sent as ``X-Enrollment-Token`` when the service
            gates enrollment.
        transport: Optional httpx transport, used in tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        verify: ssl.SSLContext | bool = True,
        trust_validator: TrustValidator | None = None,
        enrollment_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.verify = verify
        self.trust_validator = trust_validator
        self.enrollment_token = enrollment_token
        self.transport = transport

    async def submit(self, submission: EnrollmentSubmission) -> EnrollmentResult:
        """Submit a CSR and return the issued certificate.

        Raises:
            TransportError: Timeout, connection or TLS failure
            TrustError: Server certificate not trusted
            EnrollmentRejectedError: The service refused the CSR
            MalformedResponseError: Success status with an unusable body
        """
        headers = {"X-Enrollment-Token": self.enrollment_token} if self.enrollment_token else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                verify=self.verify,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    ENROLL_PATH, json=submission.to_json(), headers=headers
                )
                if self.trust_validator is not None:
                    verify_server(response, self.trust_validator)
        except httpx.TimeoutException as e:
            logger.warning("enrollment_submit_timeout", extra={"timeout": self.timeout})
            raise TransportError(f"Enrollment request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("enrollment_submit_failed", extra={"error": str(e)})
            raise TransportError(f"Enrollment request failed: {e}") from e

        if response.status_code != 200:
            reason, details = _error_body(response)
            logger.info(
                "enrollment_rejected_by_server",
                extra={"status": response.status_code, "reason": reason},
            )
            raise EnrollmentRejectedError(reason, details, response.status_code)

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> EnrollmentResult:
        try:
            body = response.json()
            certificate_der = base64.b64decode(body["certificate"], validate=True)
            return EnrollmentResult(
                certificate_der=certificate_der,
                device_id=str(body.get("deviceId", "")),
                common_name=str(body.get("commonName", "")),
                valid_for_days=int(body.get("validFor", 0)),
            )
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise MalformedResponseError(f"Unusable enrollment response: {e}") from e


class HttpStatusTransport:
    """Fetches ``GET /api/certificates/current`` over mutual TLS.

    ``ssl_context_factory`` builds the client context presenting a given
    identity, so the server reports on that exact certificate.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        ssl_context_factory: Callable[[Identity], ssl.SSLContext] | None = None,
        trust_validator: TrustValidator | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.ssl_context_factory = ssl_context_factory
        self.trust_validator = trust_validator
        self.transport = transport

    async def fetch_status(self, identity: Identity) -> RemoteStatus:
        """Ask the service for its view of ``identity``.

        Raises:
            RotationError: On any failure; the caller falls back to local judgment
        """
        verify: ssl.SSLContext | bool = True
        if self.ssl_context_factory is not None:
            try:
                verify = self.ssl_context_factory(identity)
            except Exception as e:
                raise RotationError(f"Cannot present identity {identity.label}: {e}") from e

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                verify=verify,
                transport=self.transport,
            ) as client:
                response = await client.get(STATUS_PATH)
                if self.trust_validator is not None:
                    verify_server(response, self.trust_validator)
        except httpx.TimeoutException as e:
            raise RotationError(f"Status request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise RotationError(f"Status request failed: {e}") from e
        except TrustError as e:
            raise RotationError(f"Server not trusted: {e}") from e

        if response.status_code != 200:
            reason, _ = _error_body(response)
            raise RotationError(f"Status request rejected ({response.status_code}): {reason}")

        try:
            body = response.json()
            return RemoteStatus(
                cert_name=str(body["certName"]),
                valid_to=datetime.fromisoformat(body["validTo"].replace("Z", "+00:00")),
                days_until_expiry=int(body["daysUntilExpiry"]),
                rotation_required=bool(body["rotationRequired"]),
                rotation_recommended=bool(body["rotationRecommended"]),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise RotationError(f"Unusable status response: {e}") from e
