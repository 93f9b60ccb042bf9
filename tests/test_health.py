"""
Tests for the per-service health gate.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from athena.analytics.health import HealthGate, Service


def gate_with(clock, kratos=None, hydra=None, retries=1):
    probes = {}
    if kratos is not None:
        probes[Service.KRATOS] = kratos
    if hydra is not None:
        probes[Service.HYDRA] = hydra
    return HealthGate(probes, retries=retries, backoff=0, cache_for=timedelta(minutes=2), clock=clock)


class TestHealthGate:

    @pytest.mark.asyncio
    async def test_managed_cloud_is_healthy_without_probing(self, clock):
        probe = AsyncMock(return_value=False)
        gate = gate_with(clock, kratos=probe)

        status = await gate.check_health(Service.KRATOS, True)

        assert status.is_healthy
        probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_service_is_degraded_not_probed(self, clock):
        probe = AsyncMock(return_value=True)
        gate = gate_with(clock, hydra=probe)

        status = await gate.check_health(Service.HYDRA, False, enabled=False)

        assert status.is_healthy is False
        assert status.disabled is True
        assert status.error is None
        probe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_recovers(self, clock):
        probe = AsyncMock(side_effect=[ConnectionError("refused"), True])
        gate = gate_with(clock, kratos=probe, retries=1)

        status = await gate.check_health(Service.KRATOS, False)

        assert status.is_healthy
        assert probe.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_after_retries_reports_error(self, clock):
        probe = AsyncMock(side_effect=ConnectionError("refused"))
        gate = gate_with(clock, kratos=probe, retries=2)

        status = await gate.check_health(Service.KRATOS, False)

        assert status.is_healthy is False
        assert "refused" in status.error
        assert probe.await_count == 3

    @pytest.mark.asyncio
    async def test_negative_answer_is_not_retried(self, clock):
        probe = AsyncMock(return_value=False)
        gate = gate_with(clock, kratos=probe, retries=2)

        status = await gate.check_health(Service.KRATOS, False)

        assert status.is_healthy is False
        assert status.error == "kratos is not responding"
        assert probe.await_count == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, clock):
        probe = AsyncMock(return_value=False)
        gate = gate_with(clock, kratos=probe, retries=0)

        await gate.check_health(Service.KRATOS, False)
        await gate.check_health(Service.KRATOS, False)

        assert probe.await_count == 2

    @pytest.mark.asyncio
    async def test_healthy_result_is_cached(self, clock):
        probe = AsyncMock(return_value=True)
        gate = gate_with(clock, kratos=probe)

        first = await gate.check_health(Service.KRATOS, False)
        clock.advance(minutes=1)
        second = await gate.check_health(Service.KRATOS, False)

        assert probe.await_count == 1
        assert second == first

        clock.advance(minutes=2)
        await gate.check_health(Service.KRATOS, False)

        assert probe.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_probe(self, clock):
        probe = AsyncMock(return_value=True)
        gate = gate_with(clock, kratos=probe)

        await gate.check_health(Service.KRATOS, False)
        gate.invalidate(Service.KRATOS)
        await gate.check_health(Service.KRATOS, False)

        assert probe.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_probe_is_unhealthy(self, clock):
        gate = gate_with(clock)

        status = await gate.check_health(Service.HYDRA, False)

        assert status.is_healthy is False
        assert "hydra" in status.error
        assert gate.last_status(Service.HYDRA) == status
