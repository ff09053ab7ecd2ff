"""Certificate API endpoints: enrollment, rotation status and bundle download."""

import base64
import logging
import re
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from authority.api.auth import (
    get_authority,
    require_client_certificate,
    require_client_claims,
    require_enrollment_token,
)
from authority.api.errors import ApiError
from authority.api.schemas import (
    ClientInfoResponse,
    EnrollmentRequest,
    EnrollmentResponse,
    RotationStatusResponse,
    SecureDataResponse,
)
from authority.ca.authority import IssuanceError
from authority.services.enrollment_service import EnrollmentService, RequestContext
from pki.certificate import Certificate
from pki.claims import ClientClaims
from pki.metrics import pki_metrics
from pki.policy import assess_certificate
from shared.config import settings
from shared.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["certificates"])

BUNDLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
PKCS12_MEDIA_TYPE = "application/x-pkcs12"


def get_request_context(request: Request) -> RequestContext:
    """Extract request context for audit logging."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_enrollment_service(db: AsyncSession = Depends(get_db)) -> EnrollmentService:
    return EnrollmentService(db, get_authority(), settings.CLIENT_CERT_VALIDITY_DAYS)


@router.post(
    "/certificates/enroll",
    response_model=EnrollmentResponse,
    dependencies=[Depends(require_enrollment_token)],
)
async def enroll(
    request: Request,
    body: EnrollmentRequest,
    service: EnrollmentService = Depends(get_enrollment_service),
) -> EnrollmentResponse:
    """
    Sign a device-generated CSR into a client certificate.

    - Auth: none (bootstrap), or X-Enrollment-Token when configured
    - Returns: 200 with the base64 DER certificate
    - Errors: 422 missing/invalid fields, 400 CSR rejected, 500 CA failure
    """
    try:
        certificate = await service.enroll(
            csr_der=body.csr_der,
            device_id=body.device_id,
            common_name=body.common_name,
            request_context=get_request_context(request),
        )
    except IssuanceError as e:
        status_code = (
            status.HTTP_400_BAD_REQUEST
            if e.is_client_error
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        raise ApiError(status_code, e.reason.value, e.detail) from None
    except Exception as e:
        pki_metrics.record_enrollment_request("error")
        logger.exception("enrollment_failed", extra={"device_id": body.device_id})
        raise ApiError(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Certificate enrollment failed", str(e)
        ) from None

    return EnrollmentResponse(
        certificate=base64.b64encode(certificate.der).decode("ascii"),
        device_id=body.device_id,
        common_name=certificate.common_name,
        valid_for=settings.CLIENT_CERT_VALIDITY_DAYS,
    )


@router.get("/certificates/current", response_model=RotationStatusResponse)
async def current_certificate_status(
    certificate: Certificate = Depends(require_client_certificate),
) -> RotationStatusResponse:
    """
    Rotation status of the certificate presented on this connection.

    - Auth: client certificate
    """
    assessment = assess_certificate(
        certificate, settings.ROTATION_THRESHOLD_DAYS, settings.ROTATION_RECOMMENDED_DAYS
    )
    return RotationStatusResponse(
        cert_name=certificate.common_name,
        valid_to=certificate.not_after,
        days_until_expiry=assessment.days_until_expiry,
        rotation_required=assessment.required,
        rotation_recommended=assessment.recommended,
    )


@router.get("/certificates/download/{cert_name}", response_class=FileResponse)
async def download_bundle(
    cert_name: str,
    certificate: Certificate = Depends(require_client_certificate),
) -> FileResponse:
    """
    Serve ``<cert_name>.p12`` from the bundle directory.

    - Auth: client certificate
    - Errors: 400 invalid name, 404 bundle not found
    """
    if not BUNDLE_NAME_PATTERN.match(cert_name) or ".." in cert_name:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid certificate name")

    bundle_dir = settings.bundle_dir.resolve()
    bundle_path = (bundle_dir / f"{cert_name}.p12").resolve()
    if bundle_path.parent != bundle_dir or not bundle_path.is_file():
        pki_metrics.record_bundle_download("not_found")
        raise ApiError(status.HTTP_404_NOT_FOUND, "Certificate bundle not found")

    pki_metrics.record_bundle_download("served")
    logger.info(
        "bundle_downloaded",
        extra={"bundle": cert_name, "requested_by": certificate.common_name},
    )
    return FileResponse(bundle_path, media_type=PKCS12_MEDIA_TYPE, filename=f"{cert_name}.p12")


@router.get("/client-info", response_model=ClientInfoResponse)
async def client_info(
    certificate: Certificate = Depends(require_client_certificate),
    claims: ClientClaims = Depends(require_client_claims),
) -> ClientInfoResponse:
    """Identity claims of the authenticated client plus its rotation flags."""
    assessment = assess_certificate(
        certificate, settings.ROTATION_THRESHOLD_DAYS, settings.ROTATION_RECOMMENDED_DAYS
    )
    return ClientInfoResponse.from_claims(
        claims, assessment.days_until_expiry, assessment.required, assessment.recommended
    )


@router.get("/secure-data", response_model=SecureDataResponse)
async def secure_data(claims: ClientClaims = Depends(require_client_claims)) -> SecureDataResponse:
    return SecureDataResponse(
        message="This is secure data accessible only with a valid client certificate",
        timestamp=datetime.now(timezone.utc),
        client=claims.common_name,
    )
