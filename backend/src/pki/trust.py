"""CA-pinned trust decisions for peer certificate chains.

A chain ``[leaf, ..., terminal]`` is accepted when either:

1. it has more than one certificate and the terminal certificate's DER bytes
   equal the pinned CA's DER bytes (fast path), or
2. standard path validation succeeds with the pinned CA as the only anchor:
   every signature verifies up to the pin, every certificate on the path is
   inside its validity window, and the leaf matches the expected peer name.

Rejections keep the two failure kinds apart. ``CA_MISMATCH`` means a terminal
certificate was presented, it was not the pin and path validation could not
recover. ``CHAIN_EVALUATION_FAILED`` means path validation failed on a chain
that offered no terminal certificate to compare.
"""

import ipaddress
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from opentelemetry import trace

from pki.certificate import Certificate, utc_now
from pki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TrustFailure(StrEnum):
    CA_MISMATCH = "ca_mismatch"
    CHAIN_EVALUATION_FAILED = "chain_evaluation_failed"


class TrustError(Exception):
    """Raised when a peer chain is not trusted. Never implies partial trust."""

    def __init__(self, failure: TrustFailure, detail: str = ""):
        self.failure = failure
        self.detail = detail
        message = failure.value if not detail else f"{failure.value}: {detail}"
        super().__init__(message)


class TrustMethod(StrEnum):
    PIN = "pin"
    CHAIN = "chain"


@dataclass(frozen=True)
class TrustDecision:
    """Outcome of an accepted chain."""

    leaf: Certificate
    method: TrustMethod


class _PathError(Exception):
    pass


class TrustValidator:
    """Evaluates peer chains against a single pinned CA certificate."""

    # Presented chains longer than this are rejected outright
    MAX_CHAIN_LENGTH = 8

    def __init__(self, anchor: Certificate):
        if not anchor.is_ca:
            raise ValueError("Pinned certificate is not a CA certificate")
        self._anchor = anchor

    @classmethod
    def from_pem(cls, pem: bytes | str) -> "TrustValidator":
        return cls(Certificate.from_pem(pem))

    @property
    def anchor(self) -> Certificate:
        return self._anchor

    def validate(
        self,
        chain: Sequence[Certificate | bytes],
        expected_name: str | None = None,
        now: datetime | None = None,
    ) -> TrustDecision:
        """Decide whether ``chain`` (leaf first) is trusted.

        Args:
            chain: Peer certificates as parsed Certificates or DER bytes.
            expected_name: DNS name or IP the leaf must carry; skipped when None.
            now: Evaluation time, defaults to the current UTC time.

        Returns:
            TrustDecision naming the leaf and the accepting step.

        Raises:
            TrustError: The chain is not trusted.
        """
        with tracer.start_as_current_span("TrustValidator.validate") as span:
            span.set_attribute("chain_length", len(chain))
            try:
                decision = self._decide(chain, expected_name, now or utc_now())
            except TrustError as e:
                span.set_attribute("result", e.failure.value)
                pki_metrics.record_trust_decision("rejected", e.failure.value)
                logger.warning(
                    "trust_rejected",
                    extra={"failure": e.failure.value, "detail": e.detail},
                )
                raise

            span.set_attribute("result", decision.method.value)
            pki_metrics.record_trust_decision("accepted", decision.method.value)
            logger.debug(
                "trust_accepted",
                extra={
                    "method": decision.method.value,
                    "subject_cn": decision.leaf.common_name,
                    "fingerprint": decision.leaf.fingerprint,
                },
            )
            return decision

    def _decide(
        self,
        chain: Sequence[Certificate | bytes],
        expected_name: str | None,
        now: datetime,
    ) -> TrustDecision:
        if not chain:
            raise TrustError(TrustFailure.CHAIN_EVALUATION_FAILED, "no certificates presented")
        if len(chain) > self.MAX_CHAIN_LENGTH:
            raise TrustError(
                TrustFailure.CHAIN_EVALUATION_FAILED,
                f"chain longer than {self.MAX_CHAIN_LENGTH} certificates",
            )

        certs = [_as_certificate(item, position) for position, item in enumerate(chain)]
        leaf = certs[0]

        pin_compared = len(certs) > 1
        if pin_compared and certs[-1].der == self._anchor.der:
            return TrustDecision(leaf=leaf, method=TrustMethod.PIN)

        try:
            self._validate_path(certs, expected_name, now)
        except _PathError as e:
            if pin_compared:
                raise TrustError(TrustFailure.CA_MISMATCH, str(e)) from None
            raise TrustError(TrustFailure.CHAIN_EVALUATION_FAILED, str(e)) from None

        return TrustDecision(leaf=leaf, method=TrustMethod.CHAIN)

    def _validate_path(
        self, certs: list[Certificate], expected_name: str | None, now: datetime
    ) -> None:
        anchor_x509 = self._anchor.to_x509()
        # Drop a presented copy of the anchor; the pin is the only anchor used
        pool = [c for c in certs[1:] if c.der != self._anchor.der]

        current = certs[0]
        path = [current]
        while True:
            if current.issuer == self._anchor.subject and _signed_by(current, anchor_x509):
                break
            issuer = next((c for c in pool if _issues(c, current, path)), None)
            if issuer is None:
                raise _PathError(
                    f"no path from '{current.common_name}' to pinned CA "
                    f"'{self._anchor.common_name}'"
                )
            path.append(issuer)
            current = issuer

        for cert in [*path, self._anchor]:
            if not cert.is_valid(now):
                state = "expired" if cert.is_expired(now) else "not yet valid"
                raise _PathError(f"certificate '{cert.common_name}' is {state}")

        if expected_name is not None and not matches_peer_name(certs[0], expected_name):
            raise _PathError(f"leaf does not match expected name '{expected_name}'")


def _as_certificate(item: Certificate | bytes, position: int) -> Certificate:
    if isinstance(item, Certificate):
        return item
    try:
        return Certificate.from_der(item)
    except ValueError:
        raise TrustError(
            TrustFailure.CHAIN_EVALUATION_FAILED,
            f"certificate at position {position} is not valid DER",
        ) from None


def _signed_by(cert: Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.to_x509().verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def matches_peer_name(cert: Certificate, expected_name: str) -> bool:
    """Match a host name or IP against SAN entries, falling back to the CN.

    The CN is only consulted when the certificate carries no SAN at all.
    Wildcards cover exactly one left-most label.
    """
    candidates = cert.subject_alt_names or (cert.common_name,)
    try:
        expected_ip = ipaddress.ip_address(expected_name)
    except ValueError:
        expected_ip = None

    for candidate in candidates:
        if expected_ip is not None:
            try:
                if ipaddress.ip_address(candidate) == expected_ip:
                    return True
            except ValueError:
                continue
        elif _dns_match(candidate, expected_name):
            return True
    return False


def _dns_match(pattern: str, hostname: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    hostname = hostname.lower().rstrip(".")
    if not pattern.startswith("*."):
        return pattern == hostname
    suffix = pattern[1:]
    head, _, rest = hostname.partition(".")
    return bool(head) and f".{rest}" == suffix


def _issues(candidate: Certificate, cert: Certificate, path: list[Certificate]) -> bool:
    return (
        candidate.is_ca
        and candidate.subject == cert.issuer
        and candidate not in path
        and _signed_by(cert, candidate.to_x509())
    )
