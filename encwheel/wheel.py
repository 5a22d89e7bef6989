"""
EncryptedWheel - the end-to-end client flow.

    wheel = EncryptedWheel(ledger, config)
    await wheel.initialize()             # definition absent -> finalized (idempotent)
    outcome = await wheel.spin(8)        # one confidential spin, decrypted locally

spin() fetches the cluster's public key with bounded retry (the key propagates
asynchronously after the definition is first observed), generates an
ephemeral requester keypair, submits through the RequestOrchestrator and
decrypts the result with the shared secret.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from encwheel.config import EncwheelConfig
from encwheel.definitions import DefinitionLifecycleManager, DefinitionReady
from encwheel.encryption import RequesterKeypair, ResultCipher
from encwheel.errors import PermanentError
from encwheel.ledger import CircuitSource, LedgerClient
from encwheel.orchestrator import ComputationResult, RequestOrchestrator, SpinParams
from encwheel.retry import fetch_with_retry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpinOutcome:
    """A decrypted spin."""
    segment: int
    num_segments: int
    result: ComputationResult

    @property
    def offset(self) -> int:
        return self.result.offset


class EncryptedWheel:
    """Wires the lifecycle manager, the orchestrator and the retrying key fetch together."""

    def __init__(
        self,
        ledger: LedgerClient,
        config: EncwheelConfig,
        *,
        circuit_source: Optional[CircuitSource] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._ledger = ledger
        self._config = config
        self._addresses = config.addresses()
        self._source = circuit_source or config.circuit_source()
        self._cancel_event = cancel_event
        self.definitions = DefinitionLifecycleManager(
            ledger, self._addresses, upload_chunk_size=config.upload_chunk_size,
        )
        self.orchestrator = RequestOrchestrator(
            ledger,
            self._addresses,
            event_name=config.event_name,
            default_timeout=config.request_timeout_seconds,
        )

    async def initialize(self) -> DefinitionReady:
        """Ensure the circuit's computation definition is finalized."""
        return await self.definitions.ensure_ready(self._config.circuit_name, self._source)

    async def cluster_public_key(self) -> bytes:
        program_id = self._addresses.program_id
        return await fetch_with_retry(
            lambda: self._ledger.fetch_cluster_public_key(program_id),
            self._config.key_fetch_policy(),
            cancel_event=self._cancel_event,
            description="fetch MXE public key",
        )

    async def spin(self, num_segments: int, timeout: Optional[float] = None) -> SpinOutcome:
        """
        Spin the wheel once.

        Args:
            num_segments: Number of wheel segments (1..255)
            timeout: Seconds to wait for the result

        Returns:
            SpinOutcome with the decrypted segment (1..num_segments)

        Raises:
            ExhaustedError: Cluster key never became available
            RequestError: The request timed out, failed or was aborted
            PermanentError: The decrypted result is outside 1..num_segments
        """
        params = SpinParams(num_segments)
        cluster_key = await self.cluster_public_key()
        keypair = RequesterKeypair.generate()

        result = await self.orchestrator.submit_and_await(
            self._config.circuit_name, params, keypair.public_key, timeout=timeout,
        )

        cipher = ResultCipher(keypair.shared_secret(cluster_key))
        try:
            segment = cipher.decrypt_u8(result.encryption.nonce, result.ciphertext)
        except ValueError as e:
            raise PermanentError(f"Could not decrypt result for offset {result.offset}: {e}") from e
        if not 1 <= segment <= num_segments:
            raise PermanentError(
                f"Decrypted segment {segment} outside 1..{num_segments} for offset {result.offset}"
            )
        logger.info(f"Spin offset={result.offset} landed on segment {segment}/{num_segments}")
        return SpinOutcome(segment=segment, num_segments=num_segments, result=result)
