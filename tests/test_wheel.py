"""End-to-end tests for EncryptedWheel against the local cluster."""

import asyncio
from collections import Counter

import pytest

from encwheel.definitions import DefinitionState
from encwheel.errors import ExhaustedError, OperationCancelledError, RequestError, RequestErrorKind
from encwheel.ledger import InlineCircuit
from encwheel.simulator import RANDOM_WIDTH_BITS, LocalCluster, spin_circuit
from encwheel.wheel import EncryptedWheel


@pytest.fixture
def make_cluster(addresses):
    def _make(**kwargs):
        return LocalCluster(addresses.cluster_program_id, **kwargs)

    return _make


class TestSpinCircuit:

    def test_results_in_range(self):
        for n in (1, 2, 5, 8, 255):
            assert all(1 <= spin_circuit(n) <= n for _ in range(200))

    def test_random_width_limits_reachable_segments(self):
        """Only 2**3 distinct draws exist, so segments above 8 are never hit."""
        seen = Counter(spin_circuit(20) for _ in range(2000))
        assert max(seen) <= 2 ** RANDOM_WIDTH_BITS


class TestEncryptedWheel:

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config)

        first = await wheel.initialize()
        second = await wheel.initialize()

        assert not first.was_noop
        assert second.was_noop
        assert await wheel.definitions.observe("spin") == DefinitionState.FINALIZED

    @pytest.mark.asyncio
    async def test_initialize_with_inline_circuit(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config, circuit_source=InlineCircuit(b"arcis-circuit"))

        ready = await wheel.initialize()

        assert ready.actions == ("register", "upload", "finalize")
        # chunk size 4 from test_config
        assert cluster.calls["upload_circuit"] == 4

    @pytest.mark.asyncio
    async def test_spin_lands_in_range(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config)
        await wheel.initialize()

        outcome = await wheel.spin(6)

        assert 1 <= outcome.segment <= 6
        assert outcome.num_segments == 6
        assert outcome.offset == outcome.result.offset

    @pytest.mark.asyncio
    async def test_key_becomes_available_after_retries(self, make_cluster, test_config):
        cluster = make_cluster(key_unavailable_fetches=2)
        try:
            wheel = EncryptedWheel(cluster, test_config)
            await wheel.initialize()

            outcome = await wheel.spin(8)

            assert 1 <= outcome.segment <= 8
            assert cluster.calls["fetch_cluster_public_key"] == 3
        finally:
            await cluster.aclose()

    @pytest.mark.asyncio
    async def test_key_never_available(self, make_cluster, test_config):
        cluster = make_cluster(key_unavailable_fetches=100)
        try:
            wheel = EncryptedWheel(cluster, test_config)
            await wheel.initialize()

            with pytest.raises(ExhaustedError) as exc_info:
                await wheel.spin(8)

            assert exc_info.value.attempts == test_config.key_fetch_attempts
            assert cluster.calls["submit_request"] == 0
        finally:
            await cluster.aclose()

    @pytest.mark.asyncio
    async def test_cancel_event_stops_key_fetch(self, make_cluster, test_config):
        cluster = make_cluster(key_unavailable_fetches=100)
        cancel = asyncio.Event()
        cancel.set()
        try:
            wheel = EncryptedWheel(cluster, test_config, cancel_event=cancel)
            with pytest.raises(OperationCancelledError):
                await wheel.cluster_public_key()
            assert cluster.calls["fetch_cluster_public_key"] == 1
        finally:
            await cluster.aclose()

    @pytest.mark.asyncio
    async def test_spin_timeout(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config)
        await wheel.initialize()
        cluster.drop_events = True

        with pytest.raises(RequestError) as exc_info:
            await wheel.spin(8, timeout=0.1)

        assert exc_info.value.kind == RequestErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_invalid_segments_rejected_before_io(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config)

        with pytest.raises(ValueError):
            await wheel.spin(0)

        assert cluster.calls["fetch_cluster_public_key"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_spins(self, cluster, test_config):
        wheel = EncryptedWheel(cluster, test_config)
        await wheel.initialize()

        outcomes = await asyncio.gather(*(wheel.spin(4) for _ in range(5)))

        assert len({o.offset for o in outcomes}) == 5
        assert all(1 <= o.segment <= 4 for o in outcomes)
