"""Tests for the rotation policy engine."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from device.identity_store import IdentityStore
from device.key_store import MemoryKeyStore
from device.services.rotation import RotationPolicyEngine
from device.transport import RemoteStatus, RotationError
from pki.certificate import utc_now
from pki.policy import ExpiryLevel


@pytest.fixture
def identity_store() -> IdentityStore:
    return IdentityStore(MemoryKeyStore())


@pytest.fixture
def identity(identity_store, identity_factory):
    identity = identity_factory(identity_store.key_store, label="client-1", validity_days=90)
    identity_store.install(identity)
    return identity


def remote_status(identity, required=False, recommended=False) -> RemoteStatus:
    return RemoteStatus(
        cert_name=identity.label,
        valid_to=identity.certificate.not_after,
        days_until_expiry=identity.certificate.days_until_expiry(),
        rotation_required=required,
        rotation_recommended=recommended,
    )


class TestLocalEvaluation:
    """Evaluation without a status transport."""

    @pytest.mark.asyncio
    async def test_fresh_certificate(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)

        status = await engine.evaluate(identity)

        assert 88 <= status.days_until_expiry <= 90
        assert status.rotation_required is False
        assert status.rotation_recommended is False
        assert status.degraded is False
        assert status.remote is None
        assert status.status_level == ExpiryLevel.VALID
        assert status.valid_to == identity.certificate.not_after

    @pytest.mark.asyncio
    async def test_inside_recommended_window(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)

        status = await engine.evaluate(identity, now=utc_now() + timedelta(days=70))

        assert status.rotation_recommended is True
        assert status.rotation_required is False
        assert status.status_level == ExpiryLevel.RECOMMENDED

    @pytest.mark.asyncio
    async def test_inside_threshold(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store, threshold_days=14)

        status = await engine.evaluate(identity, now=utc_now() + timedelta(days=80))

        assert status.rotation_required is True
        assert status.status_level == ExpiryLevel.REQUIRED

    @pytest.mark.asyncio
    async def test_urgent_close_to_expiry(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)

        status = await engine.evaluate(identity, now=utc_now() + timedelta(days=85))

        assert status.status_level == ExpiryLevel.URGENT

    @pytest.mark.asyncio
    async def test_expired(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)

        status = await engine.evaluate(identity, now=utc_now() + timedelta(days=120))

        assert status.expired is True
        assert status.days_until_expiry == 0
        assert status.rotation_required is True
        assert status.status_level == ExpiryLevel.EXPIRED

    @pytest.mark.asyncio
    async def test_next_rotation_date(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store, threshold_days=21)
        now = utc_now()

        status = await engine.evaluate(identity, now=now)

        assert status.next_rotation_date == identity.certificate.not_after - timedelta(days=21)
        assert status.last_evaluated == now


class TestRemoteEvaluation:
    """Combination of the local and server views."""

    @pytest.mark.asyncio
    async def test_remote_required_wins(self, identity_store, identity):
        transport = MagicMock()
        transport.fetch_status = AsyncMock(return_value=remote_status(identity, required=True))
        engine = RotationPolicyEngine(identity_store, status_transport=transport)

        status = await engine.evaluate(identity)

        assert status.rotation_required is True
        assert status.degraded is False
        assert status.remote.rotation_required is True
        transport.fetch_status.assert_awaited_once_with(identity)

    @pytest.mark.asyncio
    async def test_local_required_not_cleared_by_remote(self, identity_store, identity):
        transport = MagicMock()
        transport.fetch_status = AsyncMock(return_value=remote_status(identity))
        engine = RotationPolicyEngine(identity_store, status_transport=transport)

        status = await engine.evaluate(identity, now=utc_now() + timedelta(days=80))

        assert status.rotation_required is True

    @pytest.mark.asyncio
    async def test_rotation_error_degrades(self, identity_store, identity):
        transport = MagicMock()
        transport.fetch_status = AsyncMock(side_effect=RotationError("connection refused"))
        engine = RotationPolicyEngine(identity_store, status_transport=transport)

        status = await engine.evaluate(identity)

        assert status.degraded is True
        assert status.remote is None
        assert status.rotation_required is False

    @pytest.mark.asyncio
    async def test_timeout_degrades(self, identity_store, identity):
        async def hang(ident):
            await asyncio.sleep(60)

        transport = MagicMock()
        transport.fetch_status = hang
        engine = RotationPolicyEngine(identity_store, status_transport=transport, timeout=0.01)

        status = await engine.evaluate(identity)

        assert status.degraded is True


class TestThresholds:
    def test_threshold_clamped_on_construction(self, identity_store):
        assert RotationPolicyEngine(identity_store, threshold_days=0).threshold_days == 1
        assert RotationPolicyEngine(identity_store, threshold_days=365).threshold_days == 90

    @pytest.mark.asyncio
    async def test_set_threshold_re_evaluates(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)

        status = await engine.set_threshold(500)

        assert engine.threshold_days == 90
        assert status.rotation_required is True
        assert engine.latest == status

    @pytest.mark.asyncio
    async def test_set_threshold_without_identity(self, identity_store):
        engine = RotationPolicyEngine(identity_store)

        assert await engine.set_threshold(7) is None
        assert engine.threshold_days == 7


class TestPublishing:
    @pytest.mark.asyncio
    async def test_evaluate_current_without_identity(self, identity_store):
        engine = RotationPolicyEngine(identity_store)

        assert await engine.evaluate_current() is None
        assert engine.latest is None

    @pytest.mark.asyncio
    async def test_listeners_receive_status(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store)
        received = []
        engine.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        engine.add_listener(received.append)

        status = await engine.evaluate_current()

        assert received == [status]
        assert engine.latest == status


class TestScheduling:
    """Tests for the periodic monitor."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, identity_store, identity):
        engine = RotationPolicyEngine(identity_store, check_interval=0.01)
        evaluated = asyncio.Event()
        engine.add_listener(lambda status: evaluated.set())

        engine.start()
        engine.start()  # second call is a no-op
        assert engine.running
        await asyncio.wait_for(evaluated.wait(), 1.0)
        await engine.stop()

        assert not engine.running
        assert engine.latest.label == "client-1"

    @pytest.mark.asyncio
    async def test_check_failure_does_not_stop_monitor(self, identity_store, identity, monkeypatch):
        engine = RotationPolicyEngine(identity_store, check_interval=0.01)
        calls = []

        async def flaky():
            calls.append(None)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")

        monkeypatch.setattr(engine, "evaluate_current", flaky)
        engine.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await engine.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, identity_store):
        await RotationPolicyEngine(identity_store).stop()
