"""
Request orchestration - submit one confidential computation and await its result.

submit_and_await() flow:
1. Allocate a fresh request offset (random u64, never reused in-process)
2. Derive every account the request touches (pure, before any I/O)
3. Register the listener BEFORE submitting; the result channel is subscribed
   once per orchestrator and shared by every in-flight request
4. Submit the request (one atomic ledger call, bounded by the same deadline)
5. Await the matching result event while concurrently awaiting the cluster's
   finalization signal; the event completes the request, the finalization
   signal cross-checks it and surfaces aborted computations
6. Release the listener and return the encrypted payload
7. On timeout (during submit or while waiting), release and raise
   RequestError(TIMEOUT): outcome unknown, the offset is spent and must not
   be resubmitted

Requests against different offsets proceed independently and concurrently.
Ledger and transport failures always surface as RequestError.
"""

import asyncio
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from encwheel.addressing import ClusterAddresses, RequestAccounts
from encwheel.encryption import EncryptionContext, NonceSource
from encwheel.errors import (
    EncwheelError,
    PermanentError,
    RequestError,
    RequestErrorKind,
)
from encwheel.events import ListenerRegistry, ResultEvent
from encwheel.ledger import LedgerClient, ListenerId, Receipt


logger = logging.getLogger(__name__)

OFFSET_BITS = 64
DEFAULT_REQUEST_TIMEOUT = 60.0


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Request records
# =============================================================================


class RequestState(str, Enum):
    """Lifecycle of a request as observed (not driven) by the orchestrator."""
    SUBMITTED = "submitted"
    EXECUTING = "executing"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class SpinParams:
    """Plaintext parameters of the spin circuit."""
    num_segments: int

    def __post_init__(self):
        if isinstance(self.num_segments, bool) or not isinstance(self.num_segments, int):
            raise ValueError(f"num_segments must be an integer, got {self.num_segments!r}")
        if not 1 <= self.num_segments <= 255:
            raise ValueError(f"num_segments must be within 1..255, got {self.num_segments}")

    def as_args(self) -> dict[str, Any]:
        return {"num_segments": self.num_segments}


@dataclass
class ComputationRequest:
    """Local record of one in-flight request. Discarded once it settles."""
    offset: int
    definition: str
    accounts: RequestAccounts
    encryption: EncryptionContext
    params: Mapping[str, Any]
    state: RequestState = RequestState.SUBMITTED
    submitted_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ComputationResult:
    """
    A completed request.

    The payload is opaque ciphertext; decrypt it with the private key matching
    encryption.public_key.
    """
    offset: int
    definition: str
    ciphertext: bytes
    encryption: EncryptionContext
    event: ResultEvent
    submit_receipt: Receipt
    finalization_receipt: Optional[Receipt] = None
    elapsed_seconds: float = 0.0


class OffsetAllocator:
    """Random 64-bit request offsets, unique for the life of the allocator."""

    def __init__(self, bits: int = OFFSET_BITS):
        self._bits = bits
        self._issued: set[int] = set()
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            while True:
                offset = secrets.randbits(self._bits)
                if offset not in self._issued:
                    self._issued.add(offset)
                    return offset

    def __contains__(self, offset: int) -> bool:
        return offset in self._issued

    def __len__(self) -> int:
        return len(self._issued)


# =============================================================================
# Orchestrator
# =============================================================================


class RequestOrchestrator:
    """
    Builds, submits and tracks confidential computation requests.

    Usage:
        orchestrator = RequestOrchestrator(ledger, addresses)
        result = await orchestrator.submit_and_await(
            "spin", SpinParams(8), keypair.public_key, timeout=30.0,
        )
    """

    def __init__(
        self,
        ledger: LedgerClient,
        addresses: ClusterAddresses,
        *,
        event_name: str = "SpinEvent",
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        offsets: Optional[OffsetAllocator] = None,
        nonces: Optional[NonceSource] = None,
    ):
        self._ledger = ledger
        self._addresses = addresses
        self._event_name = event_name
        self._default_timeout = default_timeout
        self._offsets = offsets or OffsetAllocator()
        self._nonces = nonces or NonceSource()
        self._listeners = ListenerRegistry()
        self._requests: dict[int, ComputationRequest] = {}
        self._subscription: Optional[ListenerId] = None
        self._subscribers = 0

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    def outstanding(self) -> list[int]:
        """Offsets of requests still awaiting a result."""
        return list(self._requests)

    def _acquire_subscription(self) -> None:
        """Subscribe the registry once, shared by every in-flight request."""
        if self._subscribers == 0:
            self._subscription = self._ledger.subscribe_result_event(self._event_name, self._listeners.deliver)
        self._subscribers += 1

    def _release_subscription(self) -> None:
        self._subscribers -= 1
        if self._subscribers > 0 or self._subscription is None:
            return
        listener_id, self._subscription = self._subscription, None
        try:
            self._ledger.unsubscribe(listener_id)
        except Exception as e:
            logger.warning(f"Unsubscribing {self._event_name} listener {listener_id} failed: {e}")

    def _encryption_for(self, encryption: Union[EncryptionContext, bytes]) -> EncryptionContext:
        if isinstance(encryption, EncryptionContext):
            return self._nonces.claim(encryption)
        return self._nonces.new_context(bytes(encryption))

    async def submit_and_await(
        self,
        definition: str,
        params: Union[SpinParams, Mapping[str, Any]],
        encryption: Union[EncryptionContext, bytes],
        timeout: Optional[float] = None,
    ) -> ComputationResult:
        """
        Submit one request and wait for its encrypted result.

        Args:
            definition: Name of a finalized computation definition
            params: Plaintext circuit parameters
            encryption: Requester public key (a fresh nonce is minted) or a full
                EncryptionContext (its nonce must not have been used before)
            timeout: Seconds to wait for the result (default from constructor)

        Returns:
            ComputationResult with the ciphertext

        Raises:
            RequestError: TIMEOUT (outcome unknown), SUBMIT_FAILED, ABORTED or INVALID
        """
        timeout = self._default_timeout if timeout is None else timeout
        args = params.as_args() if isinstance(params, SpinParams) else dict(params)
        try:
            context = self._encryption_for(encryption)
        except (EncwheelError, ValueError) as e:
            raise RequestError(RequestErrorKind.INVALID, f"Invalid encryption context: {e}") from e

        offset = self._offsets.next()
        accounts = self._addresses.request_accounts(definition, offset)
        resources = accounts.as_dict()
        request = ComputationRequest(
            offset=offset,
            definition=definition,
            accounts=accounts,
            encryption=context,
            params=args,
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        self._requests[offset] = request
        subscribed = False
        finalization: Optional[asyncio.Future] = None
        try:
            pending = self._listeners.register(offset)
            try:
                self._acquire_subscription()
            except Exception as e:
                request.state = RequestState.FAILED
                raise RequestError(
                    RequestErrorKind.SUBMIT_FAILED,
                    f"Subscribing to {self._event_name} failed: {e}",
                    offset=offset,
                    resources=resources,
                ) from e
            subscribed = True

            try:
                submit_receipt = await asyncio.wait_for(
                    self._ledger.submit_request(offset, accounts, args, context),
                    max(deadline - loop.time(), 0.0),
                )
            except asyncio.TimeoutError as e:
                logger.warning(f"Submit of offset={offset} stalled past the timeout; outcome unknown")
                raise RequestError(
                    RequestErrorKind.TIMEOUT,
                    f"Submitting {definition} request did not complete within the timeout; "
                    f"it may still land, do not resubmit offset {offset}",
                    offset=offset,
                    resources=resources,
                ) from e
            except Exception as e:
                request.state = RequestState.FAILED
                raise RequestError(
                    RequestErrorKind.SUBMIT_FAILED,
                    f"Submitting {definition} request failed: {e}",
                    offset=offset,
                    resources=resources,
                ) from e
            request.state = RequestState.EXECUTING
            logger.info(f"Submitted {definition} request offset={offset} ({submit_receipt.signature})")

            finalization = asyncio.ensure_future(
                self._ledger.await_finalization(offset, accounts.definition, max(deadline - loop.time(), 0.0))
            )
            event, finalization_receipt = await self._await_completion(
                request, pending.future, finalization, deadline, resources,
            )
        finally:
            if subscribed:
                self._release_subscription()
            self._listeners.release(offset)
            self._requests.pop(offset, None)
            if finalization is not None and not finalization.done():
                finalization.cancel()

        request.state = RequestState.FINALIZED
        elapsed = loop.time() - started
        logger.info(f"Request offset={offset} completed in {elapsed:.2f}s")
        return ComputationResult(
            offset=offset,
            definition=definition,
            ciphertext=event.ciphertext,
            encryption=context,
            event=event,
            submit_receipt=submit_receipt,
            finalization_receipt=finalization_receipt,
            elapsed_seconds=elapsed,
        )

    async def _await_completion(
        self,
        request: ComputationRequest,
        event_future: asyncio.Future,
        finalization: asyncio.Future,
        deadline: float,
        resources: dict[str, str],
    ) -> tuple[ResultEvent, Optional[Receipt]]:
        loop = asyncio.get_running_loop()
        waiting = {event_future, finalization}
        finalization_receipt: Optional[Receipt] = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, _ = await asyncio.wait(waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break

            if finalization in done:
                waiting.discard(finalization)
                error = finalization.exception()
                if error is None:
                    finalization_receipt = finalization.result()
                    logger.debug(f"Offset {request.offset} finalized by cluster, awaiting event")
                elif isinstance(error, PermanentError):
                    request.state = RequestState.FAILED
                    raise RequestError(
                        RequestErrorKind.ABORTED,
                        f"Cluster aborted computation: {error}",
                        offset=request.offset,
                        resources=resources,
                    ) from error
                else:
                    logger.debug(f"Finalization signal for offset {request.offset} unavailable: {error!r}")

            if event_future in done:
                return event_future.result(), finalization_receipt

        logger.warning(f"Request offset={request.offset} timed out; outcome unknown")
        raise RequestError(
            RequestErrorKind.TIMEOUT,
            f"No result for {request.definition} within the timeout; outcome unknown, "
            f"do not resubmit offset {request.offset}",
            offset=request.offset,
            resources=resources,
        )
