"""Rotation policy evaluation for installed identities.

The engine only reports. Deciding to re-enroll when ``rotation_required``
is set is left to whoever listens.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from opentelemetry import trace

from device.domain.models import Identity
from device.identity_store import IdentityStore
from device.transport import RemoteStatus, RotationError
from pki.certificate import utc_now
from pki.metrics import pki_metrics
from pki.policy import (
    DEFAULT_THRESHOLD_DAYS,
    RECOMMENDED_DAYS,
    ExpiryAssessment,
    ExpiryLevel,
    assess_certificate,
    clamp_threshold,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 3600.0


class StatusTransport(Protocol):
    async def fetch_status(self, identity: Identity) -> RemoteStatus: ...


@dataclass(frozen=True)
class RotationStatus:
    """Combined local and remote verdict for one identity.

    ``days_until_expiry`` is always the local figure. ``degraded`` is set
    when the remote view was wanted but could not be fetched, in which case
    the flags are local-only.
    """

    label: str
    days_until_expiry: int
    rotation_required: bool
    rotation_recommended: bool
    expired: bool
    degraded: bool
    valid_to: datetime
    next_rotation_date: datetime
    last_evaluated: datetime
    remote: RemoteStatus | None = None

    @property
    def status_level(self) -> ExpiryLevel:
        return ExpiryAssessment(
            days_until_expiry=self.days_until_expiry,
            required=self.rotation_required,
            recommended=self.rotation_recommended,
            expired=self.expired,
        ).level


class RotationPolicyEngine:
    """Evaluates identities on demand and on a fixed interval.

    Args:
        identity_store: Source of the current identity for scheduled checks.
        status_transport: Remote view of the same certificate, or None for
            local-only evaluation.
        threshold_days: Days before expiry at which rotation is required,
            clamped to [1, 90].
        recommended_days: Days before expiry at which rotation is recommended.
        check_interval: Seconds between scheduled evaluations.
        timeout: Upper bound in seconds for the remote fetch.
    """

    def __init__(
        self,
        identity_store: IdentityStore,
        status_transport: StatusTransport | None = None,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        recommended_days: int = RECOMMENDED_DAYS,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        timeout: float = 10.0,
    ):
        self.identity_store = identity_store
        self.status_transport = status_transport
        self._threshold_days = clamp_threshold(threshold_days)
        self.recommended_days = recommended_days
        self.check_interval = check_interval
        self.timeout = timeout
        self._latest: RotationStatus | None = None
        self._listeners: list[Callable[[RotationStatus], None]] = []
        self._task: asyncio.Task | None = None

    @property
    def threshold_days(self) -> int:
        return self._threshold_days

    @property
    def latest(self) -> RotationStatus | None:
        return self._latest

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: Callable[[RotationStatus], None]) -> None:
        self._listeners.append(listener)

    async def set_threshold(self, days: int) -> RotationStatus | None:
        """Change the threshold (clamped) and re-evaluate the current identity."""
        clamped = clamp_threshold(days)
        if clamped != days:
            logger.info("rotation_threshold_clamped", extra={"requested": days, "applied": clamped})
        self._threshold_days = clamped
        return await self.evaluate_current()

    async def evaluate_current(self) -> RotationStatus | None:
        identity = self.identity_store.current()
        if identity is None:
            logger.info("rotation_check_skipped", extra={"reason": "no identity"})
            return None
        return await self.evaluate(identity)

    async def evaluate(self, identity: Identity, now: datetime | None = None) -> RotationStatus:
        """Evaluate ``identity`` locally and, when configured, remotely.

        Never raises on remote failure; the status is marked degraded instead.
        """
        now = now or utc_now()
        certificate = identity.certificate
        with tracer.start_as_current_span("rotation.evaluate") as span:
            span.set_attribute("label", identity.label)
            local = assess_certificate(
                certificate, self._threshold_days, self.recommended_days, now
            )
            remote, degraded = await self._fetch_remote(identity)

            required = local.required or (remote is not None and remote.rotation_required)
            recommended = local.recommended or (
                remote is not None and remote.rotation_recommended
            )
            status = RotationStatus(
                label=identity.label,
                days_until_expiry=local.days_until_expiry,
                rotation_required=required,
                rotation_recommended=recommended,
                expired=local.expired,
                degraded=degraded,
                valid_to=certificate.not_after,
                next_rotation_date=certificate.not_after - timedelta(days=self._threshold_days),
                last_evaluated=now,
                remote=remote,
            )
            span.set_attribute("rotation_required", required)
            span.set_attribute("degraded", degraded)

        self._publish(status)
        return status

    async def _fetch_remote(self, identity: Identity) -> tuple[RemoteStatus | None, bool]:
        if self.status_transport is None:
            return None, False
        try:
            remote = await asyncio.wait_for(
                self.status_transport.fetch_status(identity), self.timeout
            )
        except (RotationError, TimeoutError) as e:
            logger.warning(
                "rotation_remote_status_unavailable",
                extra={"label": identity.label, "error": str(e) or type(e).__name__},
            )
            return None, True
        return remote, False

    def _publish(self, status: RotationStatus) -> None:
        self._latest = status
        verdict = (
            "required"
            if status.rotation_required
            else "recommended" if status.rotation_recommended else "ok"
        )
        pki_metrics.record_rotation_evaluation(verdict, status.degraded, status.days_until_expiry)
        logger.info(
            "rotation_evaluated",
            extra={
                "label": status.label,
                "days_until_expiry": status.days_until_expiry,
                "level": status.status_level.value,
                "degraded": status.degraded,
            },
        )
        for listener in self._listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("rotation_listener_failed")

    # Scheduling

    def start(self) -> None:
        """Begin periodic evaluation on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_periodic())
        logger.info("rotation_monitor_started", extra={"interval": self.check_interval})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("rotation_monitor_stopped")

    async def _run_periodic(self) -> None:
        while True:
            try:
                await self.evaluate_current()
            except Exception:
                # The next tick retries
                logger.exception("rotation_check_failed")
            await asyncio.sleep(self.check_interval)
