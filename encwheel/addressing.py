"""
Deterministic resource addressing.

Every external resource (definition records, request records, signing
authority) is named by a program-derived address: a 32-byte value computed
from an ordered list of seeds and the owning program id, with no central
registry involved.

Derivation:
    for bump in 255..0:
        candidate = sha256(seed_1 || ... || seed_n || bump || owner || "ProgramDerivedAddress")
        if candidate is not a valid ed25519 point: return candidate

Rule: a ResourceId is opaque - never parsed. Its base58 text form is for
display and configuration only.

Usage:
    from encwheel.addressing import ClusterAddresses, ResourceId

    addresses = ClusterAddresses(
        program_id=ResourceId.from_base58(config.program_id),
        cluster_program_id=ResourceId.from_base58(config.cluster_program_id),
        cluster_offset=config.cluster_offset,
    )
    accounts = addresses.request_accounts("spin", offset)
"""

import hashlib
from dataclasses import dataclass, fields
from functools import lru_cache
from typing import Iterable, Sequence

from encwheel.errors import InvalidSeedsError


MAX_SEEDS = 16
MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(_B58_ALPHABET)}

# ed25519 field parameters
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def b58encode(data: bytes) -> str:
    """Encode bytes using the Bitcoin base58 alphabet."""
    n = int.from_bytes(data, "big")
    out = []
    while n:
        n, rem = divmod(n, 58)
        out.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\0"))
    return "1" * pad + "".join(reversed(out))


def b58decode(text: str) -> bytes:
    """Decode a base58 string. Raises ValueError on characters outside the alphabet."""
    n = 0
    for ch in text:
        if ch not in _B58_INDEX:
            raise ValueError(f"Invalid base58 character: {ch!r}")
        n = n * 58 + _B58_INDEX[ch]
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\0" * pad + body


def is_on_curve(candidate: bytes) -> bool:
    """Return True if the 32 bytes decompress to a point on the ed25519 curve."""
    y = (int.from_bytes(candidate, "little") & ((1 << 255) - 1)) % _P
    u = (y * y - 1) % _P
    v = (_D * y * y + 1) % _P
    x2 = (u * pow(v, _P - 2, _P)) % _P
    return x2 == 0 or pow(x2, (_P - 1) // 2, _P) == 1


@dataclass(frozen=True)
class ResourceId:
    """A 32-byte resource identifier (account address or program id)."""
    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != 32:
            raise ValueError(f"ResourceId must be 32 bytes, got {self.raw!r}")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_base58(cls, text: str) -> "ResourceId":
        return cls(b58decode(text.strip()))

    def __str__(self) -> str:
        return b58encode(self.raw)

    def __repr__(self) -> str:
        return f"ResourceId({self})"


SYSTEM_PROGRAM_ID = ResourceId(bytes(32))


def _validate_seeds(seeds: Sequence[bytes]) -> tuple[bytes, ...]:
    if isinstance(seeds, (bytes, bytearray, str)):
        raise InvalidSeedsError("seeds must be a sequence of byte strings, not a single value")
    seeds = tuple(seeds)
    if len(seeds) > MAX_SEEDS - 1:
        raise InvalidSeedsError(f"At most {MAX_SEEDS - 1} seeds allowed (one slot is reserved for the bump), got {len(seeds)}")
    for i, seed in enumerate(seeds):
        if not isinstance(seed, (bytes, bytearray)):
            raise InvalidSeedsError(f"Seed {i} is not bytes: {type(seed).__name__}")
        if len(seed) > MAX_SEED_LENGTH:
            raise InvalidSeedsError(f"Seed {i} exceeds {MAX_SEED_LENGTH} bytes ({len(seed)})")
    return tuple(bytes(s) for s in seeds)


def create_address(seeds: Iterable[bytes], owner: ResourceId) -> ResourceId:
    """
    Hash seeds and owner into an address without searching for a bump.

    Raises:
        InvalidSeedsError: If the digest lands on the ed25519 curve
    """
    h = hashlib.sha256()
    for seed in seeds:
        h.update(seed)
    h.update(owner.raw)
    h.update(PDA_MARKER)
    digest = h.digest()
    if is_on_curve(digest):
        raise InvalidSeedsError("Derived address lies on the ed25519 curve")
    return ResourceId(digest)


@lru_cache(maxsize=4096)
def _find(seeds: tuple[bytes, ...], owner: ResourceId) -> tuple[ResourceId, int]:
    for bump in range(255, -1, -1):
        try:
            return create_address(seeds + (bytes([bump]),), owner), bump
        except InvalidSeedsError:
            continue
    raise InvalidSeedsError("No off-curve address found for seeds")


def derive_with_bump(seeds: Sequence[bytes], owner: ResourceId) -> tuple[ResourceId, int]:
    """
    Derive the canonical address and bump for seeds under owner.

    Args:
        seeds: Ordered byte strings (at most 15, each at most 32 bytes)
        owner: Owning program id

    Returns:
        (address, bump) where bump is the highest value yielding an off-curve digest
    """
    return _find(_validate_seeds(seeds), owner)


def derive(seeds: Sequence[bytes], owner: ResourceId) -> ResourceId:
    """Derive the canonical address for seeds under owner."""
    return derive_with_bump(seeds, owner)[0]


def definition_offset(name: str) -> int:
    """Offset the cluster uses for a named circuit: sha256(name)[:4] as little-endian u32."""
    return int.from_bytes(hashlib.sha256(name.encode("utf-8")).digest()[:4], "little")


# =============================================================================
# Cluster account layout
# =============================================================================


@dataclass(frozen=True)
class RequestAccounts:
    """Every account a single computation request touches."""
    sign_authority: ResourceId
    mxe: ResourceId
    mempool: ResourceId
    executing_pool: ResourceId
    computation: ResourceId
    definition: ResourceId
    cluster: ResourceId
    fee_pool: ResourceId
    clock: ResourceId

    def as_dict(self) -> dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class ClusterAddresses:
    """
    Address book for one program talking to one execution cluster.

    Attributes:
        program_id: The calling program (owner of the signing authority)
        cluster_program_id: The cluster authority program (owner of cluster accounts)
        cluster_offset: Which cluster the program's MXE is bound to
    """
    program_id: ResourceId
    cluster_program_id: ResourceId
    cluster_offset: int

    def _cluster(self, *seeds: bytes) -> ResourceId:
        return derive(seeds, self.cluster_program_id)

    @property
    def _cluster_offset_bytes(self) -> bytes:
        return self.cluster_offset.to_bytes(4, "little")

    def definition(self, name: str) -> ResourceId:
        offset = definition_offset(name).to_bytes(4, "little")
        return self._cluster(b"ComputationDefinitionAccount", self.program_id.raw, offset)

    def raw_circuit(self, name: str, index: int = 0) -> ResourceId:
        return self._cluster(b"ComputationDefinitionRaw", self.definition(name).raw, bytes([index]))

    def mxe(self) -> ResourceId:
        return self._cluster(b"MXEAccount", self.program_id.raw)

    def mempool(self) -> ResourceId:
        return self._cluster(b"Mempool", self._cluster_offset_bytes)

    def executing_pool(self) -> ResourceId:
        return self._cluster(b"Execpool", self._cluster_offset_bytes)

    def computation(self, offset: int) -> ResourceId:
        return self._cluster(b"ComputationAccount", self._cluster_offset_bytes, offset.to_bytes(8, "little"))

    def cluster(self) -> ResourceId:
        return self._cluster(b"Cluster", self._cluster_offset_bytes)

    def fee_pool(self) -> ResourceId:
        return self._cluster(b"FeePool")

    def clock(self) -> ResourceId:
        return self._cluster(b"ClockAccount")

    def sign_authority(self) -> ResourceId:
        return derive([b"ArciumSignerAccount"], self.program_id)

    def request_accounts(self, name: str, offset: int) -> RequestAccounts:
        """Derive all accounts for a request. Pure; safe to call before any I/O."""
        return RequestAccounts(
            sign_authority=self.sign_authority(),
            mxe=self.mxe(),
            mempool=self.mempool(),
            executing_pool=self.executing_pool(),
            computation=self.computation(offset),
            definition=self.definition(name),
            cluster=self.cluster(),
            fee_pool=self.fee_pool(),
            clock=self.clock(),
        )
