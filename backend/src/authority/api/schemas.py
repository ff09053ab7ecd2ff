"""Pydantic schemas for the certificate API.

Field names are snake_case in Python and camelCase on the wire.
"""

import base64
import binascii
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pki.claims import ClientClaims

ENROLLMENT_SCHEMA_VERSION = 1


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnrollmentRequest(WireModel):
    """Request body for POST /api/certificates/enroll.

    ``csr`` is the base64 of a DER-encoded PKCS#10 request. JSON is the only
    accepted encoding; ``version`` pins the schema.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    version: Literal[1] = ENROLLMENT_SCHEMA_VERSION
    csr: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1, max_length=255)
    common_name: str = Field(..., min_length=1, max_length=64)

    @field_validator("csr")
    @classmethod
    def csr_must_be_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except binascii.Error:
            raise ValueError("csr must be standard base64") from None
        return value

    @field_validator("device_id", "common_name")
    @classmethod
    def must_not_be_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @property
    def csr_der(self) -> bytes:
        return base64.b64decode(self.csr, validate=True)


class EnrollmentResponse(WireModel):
    success: bool = True
    certificate: str  # base64 DER
    device_id: str
    common_name: str
    valid_for: int  # days


class RotationStatusResponse(WireModel):
    cert_name: str
    valid_to: datetime
    days_until_expiry: int
    rotation_required: bool
    rotation_recommended: bool


class IssuerInfo(WireModel):
    common_name: str
    organization: str
    organizational_unit: str


class ClientInfoResponse(WireModel):
    common_name: str
    organization: str
    organizational_unit: str
    country: str
    state: str
    locality: str
    valid_from: datetime
    valid_to: datetime
    issuer: IssuerInfo
    fingerprint: str
    serial_number: str
    days_until_expiry: int
    rotation_required: bool
    rotation_recommended: bool

    @classmethod
    def from_claims(
        cls, claims: ClientClaims, days_until_expiry: int, required: bool, recommended: bool
    ) -> "ClientInfoResponse":
        return cls(
            common_name=claims.common_name,
            organization=claims.organization,
            organizational_unit=claims.organizational_unit,
            country=claims.country,
            state=claims.state,
            locality=claims.locality,
            valid_from=claims.valid_from,
            valid_to=claims.valid_to,
            issuer=IssuerInfo(
                common_name=claims.issuer.common_name,
                organization=claims.issuer.organization,
                organizational_unit=claims.issuer.organizational_unit,
            ),
            fingerprint=claims.fingerprint,
            serial_number=claims.serial_number,
            days_until_expiry=days_until_expiry,
            rotation_required=required,
            rotation_recommended=recommended,
        )


class SecureDataResponse(WireModel):
    message: str
    timestamp: datetime
    client: str
