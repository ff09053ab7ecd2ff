"""Server-side handling of device enrollment requests."""

import logging
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from authority.ca.authority import (
    CertificateAuthority,
    CertificateRole,
    IssuanceError,
    IssuanceFailure,
    requested_common_name,
)
from authority.domain.models import EnrollmentAuditLog, IssuedCertificate
from authority.repository.repositories import AuditLogRepository, IssuedCertificateRepository
from pki.certificate import Certificate
from pki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class RequestContext:
    """Context from the incoming HTTP request for audit logging."""

    ip_address: str | None = None
    user_agent: str | None = None


class EnrollmentService:
    """Signs device CSRs and records the outcome in the registry."""

    def __init__(self, db: AsyncSession, authority: CertificateAuthority, validity_days: int):
        self.db = db
        self.authority = authority
        self.validity_days = validity_days
        self.issued_cert_repo = IssuedCertificateRepository(db)
        self.audit_repo = AuditLogRepository(db)

    async def enroll(
        self,
        csr_der: bytes,
        device_id: str,
        common_name: str,
        request_context: RequestContext,
    ) -> Certificate:
        """
        Issue a client certificate for a device-generated CSR.

        - Validates: CSR well-formed, CN present and equal to ``common_name``
        - Creates: IssuedCertificate registry row
        - Audit: enrollment.issued / enrollment.rejected
        - Metric: mtls_enrollment_requests_total{outcome}

        Raises:
            IssuanceError: The CSR was rejected; the rejection is audited.
        """
        with tracer.start_as_current_span("EnrollmentService.enroll") as span:
            span.set_attribute("device_id", device_id)
            span.set_attribute("common_name", common_name)

            try:
                csr_common_name = requested_common_name(csr_der)
                if csr_common_name != common_name:
                    raise IssuanceError(
                        IssuanceFailure.SUBJECT_MISMATCH,
                        f"CSR common name '{csr_common_name}' does not match '{common_name}'",
                    )
                certificate = self.authority.issue_certificate(
                    csr_der, CertificateRole.CLIENT, self.validity_days
                )
            except IssuanceError as e:
                await self._audit_rejection(e, device_id, common_name, request_context)
                raise

            await self.issued_cert_repo.create(
                IssuedCertificate(
                    serial_number=certificate.serial_hex,
                    thumbprint=certificate.fingerprint,
                    common_name=certificate.common_name,
                    role=CertificateRole.CLIENT.value,
                    device_id=device_id,
                    not_before=certificate.not_before,
                    not_after=certificate.not_after,
                    certificate_pem=certificate.pem,
                )
            )
            await self.audit_repo.create(
                EnrollmentAuditLog(
                    event_type="enrollment.issued",
                    outcome="issued",
                    device_id=device_id,
                    common_name=common_name,
                    serial_number=certificate.serial_hex,
                    details={
                        "thumbprint": certificate.fingerprint,
                        "not_after": certificate.not_after.isoformat(),
                        "validity_days": self.validity_days,
                    },
                    ip_address=request_context.ip_address,
                    user_agent=request_context.user_agent,
                )
            )
            await self.db.commit()

            span.set_attribute("serial", certificate.serial_hex)
            pki_metrics.record_enrollment_request("issued")
            logger.info(
                "device_enrolled",
                extra={
                    "device_id": device_id,
                    "common_name": common_name,
                    "serial": certificate.serial_hex,
                },
            )
            return certificate

    async def _audit_rejection(
        self,
        error: IssuanceError,
        device_id: str,
        common_name: str,
        request_context: RequestContext,
    ) -> None:
        await self.audit_repo.create(
            EnrollmentAuditLog(
                event_type="enrollment.rejected",
                outcome="rejected",
                device_id=device_id,
                common_name=common_name,
                details={"reason": error.reason.value, "detail": error.detail},
                ip_address=request_context.ip_address,
                user_agent=request_context.user_agent,
            )
        )
        await self.db.commit()
        pki_metrics.record_enrollment_request("rejected")
        logger.info(
            "enrollment_rejected",
            extra={"device_id": device_id, "reason": error.reason.value, "detail": error.detail},
        )
