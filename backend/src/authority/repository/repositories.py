"""Repository layer for the issuance registry."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from authority.domain.models import EnrollmentAuditLog, IssuedCertificate

logger = logging.getLogger(__name__)


class IssuedCertificateRepository:
    """Repository for IssuedCertificate records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, cert: IssuedCertificate) -> IssuedCertificate:
        """Create a new issued certificate record."""
        self.db.add(cert)
        await self.db.flush()
        return cert


class AuditLogRepository:
    """Repository for writing audit events. Rows are never updated or deleted."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, event: EnrollmentAuditLog) -> None:
        self.db.add(event)
        await self.db.flush()
