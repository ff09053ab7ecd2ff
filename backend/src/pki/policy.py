"""Expiry thresholds shared by the server status endpoint and the device engine."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pki.certificate import Certificate, utc_now

DEFAULT_THRESHOLD_DAYS = 14
MIN_THRESHOLD_DAYS = 1
MAX_THRESHOLD_DAYS = 90
RECOMMENDED_DAYS = 30
URGENT_DAYS = 7


class ExpiryLevel(StrEnum):
    VALID = "valid"
    RECOMMENDED = "recommended"
    REQUIRED = "required"
    URGENT = "urgent"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ExpiryAssessment:
    days_until_expiry: int
    required: bool
    recommended: bool
    expired: bool

    @property
    def level(self) -> ExpiryLevel:
        if self.expired:
            return ExpiryLevel.EXPIRED
        if self.required and self.days_until_expiry <= URGENT_DAYS:
            return ExpiryLevel.URGENT
        if self.required:
            return ExpiryLevel.REQUIRED
        if self.recommended:
            return ExpiryLevel.RECOMMENDED
        return ExpiryLevel.VALID


def clamp_threshold(days: int) -> int:
    return max(MIN_THRESHOLD_DAYS, min(MAX_THRESHOLD_DAYS, int(days)))


def assess(
    days_until_expiry: int,
    expired: bool,
    threshold_days: int = DEFAULT_THRESHOLD_DAYS,
    recommended_days: int = RECOMMENDED_DAYS,
) -> ExpiryAssessment:
    """Apply the thresholds. An expired certificate always requires rotation."""
    threshold_days = clamp_threshold(threshold_days)
    days_until_expiry = max(0, days_until_expiry)
    return ExpiryAssessment(
        days_until_expiry=days_until_expiry,
        required=expired or days_until_expiry <= threshold_days,
        recommended=expired or days_until_expiry <= recommended_days,
        expired=expired,
    )


def assess_certificate(
    certificate: Certificate,
    threshold_days: int = DEFAULT_THRESHOLD_DAYS,
    recommended_days: int = RECOMMENDED_DAYS,
    now: datetime | None = None,
) -> ExpiryAssessment:
    now = now or utc_now()
    return assess(
        certificate.days_until_expiry(now),
        certificate.is_expired(now),
        threshold_days,
        recommended_days,
    )
