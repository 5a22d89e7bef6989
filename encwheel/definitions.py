"""
Computation definition lifecycle.

Takes a named computation definition from absent to finalized:

    absent --register--> registered --upload*--> partially_uploaded --finalize--> finalized
    registered --finalize--> finalized            (off-chain circuit source)

ensure_ready() is idempotent and safe to call concurrently from independent
processes without locking. Correctness relies on the ledger's own
create-if-absent atomicity: the "already exists" failure doubles as the lock,
and "already finalized" tells a race loser that the winner finished.

Corrupted state (a stalled upload that cannot be resumed or finalized) is
fatal for the definition identity and is never repaired automatically.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from encwheel.addressing import ClusterAddresses, ResourceId, definition_offset
from encwheel.errors import (
    AlreadyExistsError,
    AlreadyFinalizedError,
    LifecycleError,
    LifecycleErrorKind,
)
from encwheel.ledger import (
    AccountState,
    CircuitSource,
    DefinitionRecord,
    InlineCircuit,
    LedgerClient,
)


logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_CHUNK_SIZE = 800


class DefinitionState(str, Enum):
    """Observed state of a computation definition."""
    ABSENT = "absent"
    REGISTERED = "registered"
    PARTIALLY_UPLOADED = "partially_uploaded"
    FINALIZED = "finalized"
    CORRUPTED = "corrupted"


@dataclass(frozen=True)
class DefinitionReady:
    """
    Proof that a definition is finalized.

    Attributes:
        name: Logical circuit name
        offset: Cluster offset derived from the name
        address: Definition record address
        initial_state: State observed on entry
        actions: Writes this call performed (register, upload, finalize)
    """
    name: str
    offset: int
    address: ResourceId
    initial_state: DefinitionState
    actions: tuple[str, ...] = ()

    @property
    def was_noop(self) -> bool:
        return not self.actions


@dataclass(frozen=True)
class _Observation:
    state: DefinitionState
    definition: AccountState
    raw: AccountState


class DefinitionLifecycleManager:
    """
    Drives computation definitions to the finalized state.

    Usage:
        manager = DefinitionLifecycleManager(ledger, addresses)
        ready = await manager.ensure_ready("spin", OffchainCircuit(url))
    """

    def __init__(
        self,
        ledger: LedgerClient,
        addresses: ClusterAddresses,
        upload_chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE,
    ):
        if upload_chunk_size <= 0:
            raise ValueError(f"upload_chunk_size must be positive, got {upload_chunk_size}")
        self._ledger = ledger
        self._addresses = addresses
        self._chunk_size = upload_chunk_size

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    async def _query(self, name: str, address: ResourceId, last_state: Optional[DefinitionState]) -> AccountState:
        try:
            return await self._ledger.query_account(address)
        except Exception as e:
            raise LifecycleError(
                LifecycleErrorKind.QUERY_FAILED,
                f"Reading {address} for definition {name} failed: {e}",
                definition=name,
                last_state=last_state,
                resources=self._resources(name),
            ) from e

    async def _observe(self, name: str, last_state: Optional[DefinitionState] = None) -> _Observation:
        definition = await self._query(name, self._addresses.definition(name), last_state)
        if not definition.exists:
            return _Observation(DefinitionState.ABSENT, definition, AccountState.missing())

        try:
            record = DefinitionRecord.from_bytes(definition.data)
        except ValueError:
            # Unreadable record: classify from the raw sub-resource only
            record = None

        raw = await self._query(name, self._addresses.raw_circuit(name), last_state)
        if record is not None and record.finalized:
            return _Observation(DefinitionState.FINALIZED, definition, raw)
        if not raw.exists:
            return _Observation(DefinitionState.REGISTERED, definition, raw)
        if raw.owner == self._ledger.cluster_authority:
            # Ownership transfer to the cluster is the finalization signal
            return _Observation(DefinitionState.FINALIZED, definition, raw)
        return _Observation(DefinitionState.PARTIALLY_UPLOADED, definition, raw)

    async def observe(self, name: str) -> DefinitionState:
        """Return the current state of the named definition."""
        return (await self._observe(name)).state

    def _resources(self, name: str) -> dict[str, str]:
        return {
            "definition": str(self._addresses.definition(name)),
            "raw_circuit": str(self._addresses.raw_circuit(name)),
        }

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _register(self, name: str, source: CircuitSource, actions: list[str]) -> None:
        address = self._addresses.definition(name)
        try:
            receipt = await self._ledger.register_definition(address, name, source)
            actions.append("register")
            logger.info(f"Registered definition {name} at {address} ({receipt.signature})")
        except AlreadyExistsError:
            logger.info(f"Definition {name} already registered by a concurrent caller")
        except Exception as e:
            raise LifecycleError(
                LifecycleErrorKind.REGISTRATION_FAILED,
                f"Registering definition {name} failed: {e}",
                definition=name,
                last_state=DefinitionState.ABSENT,
                resources=self._resources(name),
            ) from e

    async def _upload(
        self,
        name: str,
        source: InlineCircuit,
        state: DefinitionState,
        actions: list[str],
        stalled: bool = False,
    ) -> bool:
        """
        Write every chunk. Returns False if the definition got finalized meanwhile.

        A failed write while resuming a stalled upload leaves the definition in
        the same unrecoverable state a failed finalize would, so it is CORRUPTED.
        """
        definition = self._addresses.definition(name)
        raw = self._addresses.raw_circuit(name)
        chunks = source.chunks(self._chunk_size)
        for position, chunk in chunks:
            try:
                await self._ledger.upload_circuit(definition, raw, position, chunk)
            except AlreadyFinalizedError:
                logger.info(f"Definition {name} finalized by a concurrent caller during upload")
                return False
            except Exception as e:
                if stalled:
                    raise LifecycleError(
                        LifecycleErrorKind.CORRUPTED,
                        f"Resuming the stalled upload of {name} failed at chunk {position}: {e}. "
                        f"Abandon this definition identity and deploy under a new name.",
                        definition=name,
                        last_state=DefinitionState.CORRUPTED,
                        resources=self._resources(name),
                    ) from e
                raise LifecycleError(
                    LifecycleErrorKind.UPLOAD_FAILED,
                    f"Uploading circuit chunk at {position} for {name} failed: {e}",
                    definition=name,
                    last_state=state,
                    resources=self._resources(name),
                ) from e
        actions.append("upload")
        logger.info(f"Uploaded {len(source.data)} circuit bytes for {name} in {len(chunks)} chunks")
        return True

    async def _finalize(self, name: str, state: DefinitionState, actions: list[str], stalled: bool = False) -> None:
        try:
            receipt = await self._ledger.finalize_definition(self._addresses.definition(name))
            actions.append("finalize")
            logger.info(f"Finalized definition {name} ({receipt.signature})")
        except AlreadyFinalizedError:
            logger.info(f"Definition {name} already finalized")
        except Exception as e:
            if stalled:
                raise LifecycleError(
                    LifecycleErrorKind.CORRUPTED,
                    f"Definition {name} has a stalled partial upload that cannot be finalized: {e}. "
                    f"Abandon this definition identity and deploy under a new name.",
                    definition=name,
                    last_state=DefinitionState.CORRUPTED,
                    resources=self._resources(name),
                ) from e
            raise LifecycleError(
                LifecycleErrorKind.FINALIZE_FAILED,
                f"Finalizing definition {name} failed: {e}",
                definition=name,
                last_state=state,
                resources=self._resources(name),
            ) from e

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def ensure_ready(self, name: str, source: CircuitSource) -> DefinitionReady:
        """
        Bring the named definition to the finalized state.

        Args:
            name: Logical circuit name (e.g. "spin")
            source: InlineCircuit bytes or an OffchainCircuit reference

        Returns:
            DefinitionReady

        Raises:
            LifecycleError: CORRUPTED for an unrecoverable partial upload
                (a failed finalize or a failed re-upload of a stalled upload),
                QUERY_FAILED when the ledger cannot be read, other kinds when a
                ledger write fails. Transport errors are always wrapped.
        """
        actions: list[str] = []
        observation = await self._observe(name)
        initial = observation.state
        logger.debug(f"Definition {name}: observed {initial.value}")

        if observation.state == DefinitionState.ABSENT:
            await self._register(name, source, actions)
            observation = await self._observe(name, last_state=DefinitionState.ABSENT)

        if observation.state == DefinitionState.REGISTERED:
            if isinstance(source, InlineCircuit):
                if await self._upload(name, source, observation.state, actions):
                    await self._finalize(name, DefinitionState.PARTIALLY_UPLOADED, actions)
            else:
                await self._finalize(name, observation.state, actions)

        elif observation.state == DefinitionState.PARTIALLY_UPLOADED:
            logger.warning(
                f"Definition {name}: raw circuit owned by {observation.raw.owner}, "
                f"treating as a stalled upload"
            )
            if isinstance(source, InlineCircuit):
                if not await self._upload(name, source, observation.state, actions, stalled=True):
                    return self._ready(name, initial, actions)
            await self._finalize(name, observation.state, actions, stalled=True)

        elif observation.state == DefinitionState.ABSENT:
            raise LifecycleError(
                LifecycleErrorKind.REGISTRATION_FAILED,
                f"Definition {name} still absent after registration",
                definition=name,
                last_state=observation.state,
                resources=self._resources(name),
            )

        return self._ready(name, initial, actions)

    def _ready(self, name: str, initial: DefinitionState, actions: list[str]) -> DefinitionReady:
        return DefinitionReady(
            name=name,
            offset=definition_offset(name),
            address=self._addresses.definition(name),
            initial_state=initial,
            actions=tuple(actions),
        )


def describe(ready: Optional[DefinitionReady]) -> str:
    if ready is None:
        return "definition not ready"
    if ready.was_noop:
        return f"{ready.name}: already finalized at {ready.address}"
    return f"{ready.name}: {' -> '.join(ready.actions)} at {ready.address}"
