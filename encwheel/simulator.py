"""
LocalCluster - in-process ledger and execution cluster.

Implements the LedgerClient protocol entirely in memory so the lifecycle
manager and the orchestrator can be exercised without a network:

- accounts keyed by ResourceId with an owner and data
- create-if-absent registration (AlreadyExistsError for the loser)
- single finalization (AlreadyFinalizedError afterwards), transferring the
  raw circuit account from the system authority to the cluster authority
- one computation account per request offset
- delayed execution of the spin circuit: (random 0..7 % num_segments) + 1,
  encrypted to the requester and emitted as a result event
- a cluster key that only becomes available after N fetches

Fault injection (for tests and dry runs):
- inject_failure(method, error, times=1)
- drop_events / duplicate_events
"""

import asyncio
import itertools
import logging
import secrets
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from encwheel.addressing import SYSTEM_PROGRAM_ID, RequestAccounts, ResourceId, b58encode
from encwheel.encryption import EncryptionContext, RequesterKeypair, ResultCipher
from encwheel.errors import (
    AlreadyExistsError,
    AlreadyFinalizedError,
    NotYetAvailableError,
    PermanentError,
)
from encwheel.events import ResultEvent
from encwheel.ledger import (
    AccountState,
    CircuitSource,
    DefinitionRecord,
    EventHandler,
    InlineCircuit,
    ListenerId,
    Receipt,
    SourceKind,
)


logger = logging.getLogger(__name__)

RANDOM_WIDTH_BITS = 3


def spin_circuit(num_segments: int) -> int:
    """The spin circuit: a random segment in 1..num_segments from a 3-bit draw."""
    if num_segments <= 0:
        raise PermanentError("num_segments must be positive")
    random = secrets.randbits(RANDOM_WIDTH_BITS)
    return (random % num_segments) + 1


@dataclass
class _Account:
    owner: ResourceId
    data: bytearray = field(default_factory=bytearray)

    def state(self) -> AccountState:
        return AccountState(exists=True, owner=self.owner, data_length=len(self.data), data=bytes(self.data))


@dataclass
class _Computation:
    offset: int
    definition: ResourceId
    finalized: asyncio.Event
    error: Optional[PermanentError] = None
    receipt: Optional[Receipt] = None


class LocalCluster:
    """
    In-memory LedgerClient.

    Args:
        cluster_authority: Owner of cluster-managed accounts
        event_name: Result channel the spin callback emits on
        execution_delay: Seconds between submit and result
        latency: Seconds every call yields for (0 still yields to the loop)
        key_unavailable_fetches: Number of fetches that fail with NotYetAvailableError
    """

    def __init__(
        self,
        cluster_authority: ResourceId,
        *,
        event_name: str = "SpinEvent",
        execution_delay: float = 0.0,
        latency: float = 0.0,
        key_unavailable_fetches: int = 0,
    ):
        self.cluster_authority = cluster_authority
        self.system_authority = SYSTEM_PROGRAM_ID
        self.event_name = event_name
        self.execution_delay = execution_delay
        self.latency = latency
        self.key_unavailable_fetches = key_unavailable_fetches

        self.accounts: dict[ResourceId, _Account] = {}
        self.calls: Counter = Counter()
        self.finalizations: Counter = Counter()
        self.drop_events = False
        self.duplicate_events = False
        self.abort_offsets: set[int] = set()

        self._keypair = RequesterKeypair.generate()
        self._listeners: dict[ListenerId, tuple[str, EventHandler]] = {}
        self._listener_ids = itertools.count(1)
        self._signatures = itertools.count(1)
        self._slot = 0
        self._failures: dict[str, list[BaseException]] = {}
        self._computations: dict[int, _Computation] = {}
        self._raw_of: dict[ResourceId, ResourceId] = {}
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def inject_failure(self, method: str, error: BaseException, times: int = 1) -> None:
        """Make the next `times` calls of method raise error."""
        self._failures.setdefault(method, []).extend([error] * times)

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        await asyncio.sleep(self.latency)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _receipt(self) -> Receipt:
        self._slot += 1
        return Receipt(signature=b58encode(next(self._signatures).to_bytes(8, "big")), slot=self._slot)

    def _record(self, definition: ResourceId) -> DefinitionRecord:
        account = self.accounts.get(definition)
        if account is None:
            raise PermanentError(f"Definition {definition} does not exist")
        return DefinitionRecord.from_bytes(bytes(account.data))

    def _store_record(self, definition: ResourceId, record: DefinitionRecord) -> None:
        self.accounts[definition].data = bytearray(record.to_bytes())

    @property
    def cluster_public_key(self) -> bytes:
        return self._keypair.public_key

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event: ResultEvent) -> None:
        """Deliver event to every subscriber of its channel."""
        for name, handler in list(self._listeners.values()):
            if name == event.name:
                handler(event)

    async def aclose(self) -> None:
        """Cancel pending executions."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    async def register_definition(self, definition: ResourceId, name: str, source: CircuitSource) -> Receipt:
        await self._enter("register_definition")
        if definition in self.accounts:
            raise AlreadyExistsError(f"Definition account {definition} already exists", definition)
        self.accounts[definition] = _Account(owner=self.cluster_authority)
        self._store_record(definition, DefinitionRecord.for_source(source))
        logger.debug(f"Registered definition {name} at {definition}")
        return self._receipt()

    async def query_account(self, address: ResourceId) -> AccountState:
        await self._enter("query_account")
        account = self.accounts.get(address)
        return account.state() if account is not None else AccountState.missing()

    async def upload_circuit(self, definition: ResourceId, raw_circuit: ResourceId, position: int, chunk: bytes) -> Receipt:
        await self._enter("upload_circuit")
        record = self._record(definition)
        if record.finalized:
            raise AlreadyFinalizedError(f"Definition {definition} is finalized", definition)
        if record.source_kind != SourceKind.INLINE:
            raise PermanentError(f"Definition {definition} uses an off-chain circuit")
        if position + len(chunk) > record.circuit_length:
            raise PermanentError(f"Chunk at {position} overruns circuit length {record.circuit_length}")

        account = self.accounts.setdefault(raw_circuit, _Account(owner=self.system_authority))
        self._raw_of[definition] = raw_circuit
        if len(account.data) < position + len(chunk):
            account.data.extend(bytes(position + len(chunk) - len(account.data)))
        account.data[position:position + len(chunk)] = chunk
        return self._receipt()

    async def finalize_definition(self, definition: ResourceId) -> Receipt:
        await self._enter("finalize_definition")
        record = self._record(definition)
        if record.finalized:
            raise AlreadyFinalizedError(f"Definition {definition} is already finalized", definition)

        raw = self._raw_of.get(definition)
        if record.source_kind == SourceKind.INLINE:
            account = self.accounts.get(raw) if raw is not None else None
            if account is None or len(account.data) < record.circuit_length:
                have = len(account.data) if account is not None else 0
                raise PermanentError(
                    f"Circuit incomplete for {definition}: {have}/{record.circuit_length} bytes"
                )
            account.owner = self.cluster_authority

        self._store_record(
            definition,
            DefinitionRecord(
                finalized=True,
                source_kind=record.source_kind,
                circuit_length=record.circuit_length,
                source_url=record.source_url,
            ),
        )
        self.finalizations[definition] += 1
        return self._receipt()

    def seed_stalled_upload(self, definition: ResourceId, raw_circuit: ResourceId, name: str, data: bytes, uploaded: int) -> None:
        """Create a definition whose raw circuit upload stopped after `uploaded` bytes."""
        self.accounts[definition] = _Account(owner=self.cluster_authority)
        self._store_record(definition, DefinitionRecord.for_source(InlineCircuit(data)))
        self.accounts[raw_circuit] = _Account(owner=self.system_authority, data=bytearray(data[:uploaded]))
        self._raw_of[definition] = raw_circuit
        logger.debug(f"Seeded stalled upload for {name}: {uploaded}/{len(data)} bytes")

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def submit_request(
        self,
        offset: int,
        accounts: RequestAccounts,
        params: Mapping[str, Any],
        encryption: EncryptionContext,
    ) -> Receipt:
        await self._enter("submit_request")
        record = self._record(accounts.definition)
        if not record.finalized:
            raise PermanentError(f"Definition {accounts.definition} is not finalized")
        if accounts.computation in self.accounts:
            raise PermanentError(f"Computation account for offset {offset} already exists")

        num_segments = int(params.get("num_segments", 0))
        if not 1 <= num_segments <= 255:
            raise PermanentError(f"num_segments out of range: {num_segments}")

        self.accounts[accounts.computation] = _Account(owner=self.cluster_authority, data=bytearray(offset.to_bytes(8, "little")))
        computation = _Computation(offset=offset, definition=accounts.definition, finalized=asyncio.Event())
        self._computations[offset] = computation

        task = asyncio.ensure_future(self._execute(computation, num_segments, encryption))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return self._receipt()

    async def _execute(self, computation: _Computation, num_segments: int, encryption: EncryptionContext) -> None:
        await asyncio.sleep(self.execution_delay)
        if computation.offset in self.abort_offsets:
            computation.error = PermanentError(f"Computation {computation.offset} aborted")
            computation.finalized.set()
            return

        segment = spin_circuit(num_segments)
        cipher = ResultCipher(self._keypair.shared_secret(encryption.public_key))
        event = ResultEvent(
            name=self.event_name,
            computation_offset=computation.offset,
            ciphertext=cipher.encrypt_u8(encryption.nonce, segment),
            nonce=encryption.nonce,
        )
        computation.receipt = self._receipt()
        computation.finalized.set()
        if self.drop_events:
            logger.debug(f"Dropping result event for offset {computation.offset}")
            return
        self.emit(event)
        if self.duplicate_events:
            self.emit(event)

    async def await_finalization(self, offset: int, definition: ResourceId, timeout: float) -> Receipt:
        await self._enter("await_finalization")
        computation = self._computations.get(offset)
        if computation is None or computation.definition != definition:
            raise PermanentError(f"No computation for offset {offset}")
        await asyncio.wait_for(computation.finalized.wait(), timeout)
        if computation.error is not None:
            raise computation.error
        return computation.receipt

    def subscribe_result_event(self, event_name: str, handler: EventHandler) -> ListenerId:
        self.calls["subscribe_result_event"] += 1
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = (event_name, handler)
        return listener_id

    def unsubscribe(self, listener_id: ListenerId) -> None:
        self.calls["unsubscribe"] += 1
        self._listeners.pop(listener_id, None)

    # -------------------------------------------------------------------------
    # Cluster material
    # -------------------------------------------------------------------------

    async def fetch_cluster_public_key(self, program_id: ResourceId) -> bytes:
        await self._enter("fetch_cluster_public_key")
        if self.calls["fetch_cluster_public_key"] <= self.key_unavailable_fetches:
            raise NotYetAvailableError(f"MXE public key for {program_id} not yet available")
        return self._keypair.public_key
