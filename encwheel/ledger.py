"""
Ledger/cluster client interface.

This module defines the protocol that any ledger client must implement,
allowing the lifecycle manager and the request orchestrator to be decoupled
from the actual transport.

Implementations:
- LocalCluster (encwheel.simulator): in-process cluster for tests and local runs

Error contract for implementations:
- register_definition raises AlreadyExistsError when the record exists
- finalize_definition / upload_circuit raise AlreadyFinalizedError after finalization
- fetch_cluster_public_key raises NotYetAvailableError until the key propagates
- await_finalization raises TimeoutError when the timeout elapses
- PermanentError for anything retrying cannot fix
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Union, runtime_checkable

from encwheel.addressing import RequestAccounts, ResourceId
from encwheel.encryption import EncryptionContext
from encwheel.events import ResultEvent


ListenerId = int
EventHandler = Callable[[ResultEvent], None]


# -----------------------------------------------------------------------------
# Value types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Receipt:
    """Confirmation of an accepted ledger write."""
    signature: str
    slot: Optional[int] = None


@dataclass(frozen=True)
class AccountState:
    """Observed state of one account."""
    exists: bool
    owner: Optional[ResourceId] = None
    data_length: int = 0
    data: bytes = b""

    @classmethod
    def missing(cls) -> "AccountState":
        return cls(exists=False)


@dataclass(frozen=True)
class InlineCircuit:
    """Circuit bytes uploaded chunk by chunk into the raw circuit account."""
    data: bytes

    def chunks(self, size: int) -> list[tuple[int, bytes]]:
        if size <= 0:
            raise ValueError(f"chunk size must be positive, got {size}")
        return [(i, self.data[i:i + size]) for i in range(0, len(self.data), size)]


@dataclass(frozen=True)
class OffchainCircuit:
    """Circuit hosted outside the ledger; the cluster fetches it by URL."""
    url: str
    sha256: bytes = bytes(32)


CircuitSource = Union[InlineCircuit, OffchainCircuit]


class SourceKind(int, Enum):
    INLINE = 0
    OFFCHAIN = 1


@dataclass(frozen=True)
class DefinitionRecord:
    """
    Layout of the definition account data.

    Layout (little endian):
        u8   finalized flag
        u8   source kind (0 inline, 1 offchain)
        u32  circuit length (inline only)
        u16  url length, then url bytes (offchain only)
    """
    finalized: bool
    source_kind: SourceKind
    circuit_length: int = 0
    source_url: str = ""

    _HEADER = struct.Struct("<BBIH")

    @classmethod
    def for_source(cls, source: CircuitSource) -> "DefinitionRecord":
        if isinstance(source, InlineCircuit):
            return cls(finalized=False, source_kind=SourceKind.INLINE, circuit_length=len(source.data))
        return cls(finalized=False, source_kind=SourceKind.OFFCHAIN, source_url=source.url)

    def to_bytes(self) -> bytes:
        url = self.source_url.encode("utf-8")
        return self._HEADER.pack(int(self.finalized), int(self.source_kind), self.circuit_length, len(url)) + url

    @classmethod
    def from_bytes(cls, data: bytes) -> "DefinitionRecord":
        if len(data) < cls._HEADER.size:
            raise ValueError(f"Definition record too short: {len(data)} bytes")
        finalized, kind, length, url_len = cls._HEADER.unpack_from(data)
        url = data[cls._HEADER.size:cls._HEADER.size + url_len].decode("utf-8")
        return cls(
            finalized=bool(finalized),
            source_kind=SourceKind(kind),
            circuit_length=length,
            source_url=url,
        )


# -----------------------------------------------------------------------------
# Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class LedgerClient(Protocol):
    """
    Protocol for the external ledger and execution cluster.

    Everything behind this boundary (transaction building, signing, consensus,
    the MPC protocol) is opaque to encwheel.
    """

    cluster_authority: ResourceId
    system_authority: ResourceId

    async def register_definition(
        self,
        definition: ResourceId,
        name: str,
        source: CircuitSource,
    ) -> Receipt:
        """Create the definition record. Raises AlreadyExistsError if present."""
        ...

    async def query_account(self, address: ResourceId) -> AccountState:
        """Read one account. Missing accounts return AccountState(exists=False)."""
        ...

    async def upload_circuit(
        self,
        definition: ResourceId,
        raw_circuit: ResourceId,
        position: int,
        chunk: bytes,
    ) -> Receipt:
        """Write chunk at position of the raw circuit account (system-owned until finalized)."""
        ...

    async def finalize_definition(self, definition: ResourceId) -> Receipt:
        """Mark the definition finalized. Raises AlreadyFinalizedError if it already is."""
        ...

    async def submit_request(
        self,
        offset: int,
        accounts: RequestAccounts,
        params: Mapping[str, Any],
        encryption: EncryptionContext,
    ) -> Receipt:
        """Queue one computation. Single atomic call."""
        ...

    async def await_finalization(
        self,
        offset: int,
        definition: ResourceId,
        timeout: float,
    ) -> Receipt:
        """Wait for the cluster to finalize the computation. Raises TimeoutError."""
        ...

    def subscribe_result_event(self, event_name: str, handler: EventHandler) -> ListenerId:
        """Attach handler to a result-event channel. Handlers run on the event loop."""
        ...

    def unsubscribe(self, listener_id: ListenerId) -> None:
        ...

    async def fetch_cluster_public_key(self, program_id: ResourceId) -> bytes:
        """Return the cluster's X25519 public key. Raises NotYetAvailableError."""
        ...
