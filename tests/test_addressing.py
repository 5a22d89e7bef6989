"""Tests for deterministic resource addressing."""

import hashlib

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from encwheel.addressing import (
    SYSTEM_PROGRAM_ID,
    ClusterAddresses,
    ResourceId,
    b58decode,
    b58encode,
    create_address,
    definition_offset,
    derive,
    derive_with_bump,
    is_on_curve,
)
from encwheel.errors import InvalidSeedsError


OWNER = ResourceId(hashlib.sha256(b"owner").digest())
OTHER_OWNER = ResourceId(hashlib.sha256(b"other").digest())

# Compressed ed25519 base point
BASE_POINT = bytes.fromhex("5866666666666666666666666666666666666666666666666666666666666666")


# =============================================================================
# base58 / ResourceId
# =============================================================================


class TestBase58:

    def test_system_program_is_all_ones(self):
        assert str(SYSTEM_PROGRAM_ID) == "1" * 32
        assert b58decode("1" * 32) == bytes(32)

    def test_roundtrip_preserves_leading_zeros(self):
        data = b"\x00\x00\x01\x02\xff" + bytes(range(27))
        assert b58decode(b58encode(data)) == data

    def test_rejects_characters_outside_alphabet(self):
        with pytest.raises(ValueError):
            b58decode("0OIl")

    def test_resource_id_requires_32_bytes(self):
        with pytest.raises(ValueError):
            ResourceId(b"\x01" * 31)
        with pytest.raises(ValueError):
            ResourceId.from_base58("2")

    def test_resource_id_text_roundtrip(self):
        assert ResourceId.from_base58(str(OWNER)) == OWNER


# =============================================================================
# Curve check
# =============================================================================


class TestCurve:

    def test_base_point_is_on_curve(self):
        assert is_on_curve(BASE_POINT)

    def test_real_public_key_is_on_curve(self):
        public = Ed25519PrivateKey.generate().public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        assert is_on_curve(public)

    def test_derived_addresses_are_off_curve(self):
        for i in range(20):
            address = derive([b"seed", i.to_bytes(2, "little")], OWNER)
            assert not is_on_curve(address.raw)


# =============================================================================
# Derivation
# =============================================================================


class TestDerive:

    def test_deterministic(self):
        assert derive([b"a", b"b"], OWNER) == derive([b"a", b"b"], OWNER)

    def test_any_input_difference_changes_address(self):
        base = derive([b"a", b"b"], OWNER)
        assert derive([b"a", b"c"], OWNER) != base
        assert derive([b"b", b"a"], OWNER) != base
        assert derive([b"a", b"b"], OTHER_OWNER) != base

    def test_bump_reproduces_address(self):
        address, bump = derive_with_bump([b"vault"], OWNER)
        assert 0 <= bump <= 255
        assert create_address([b"vault", bytes([bump])], OWNER) == address

    def test_empty_seed_list_is_allowed(self):
        assert isinstance(derive([], OWNER), ResourceId)

    def test_fifteen_seeds_fill_every_slot_but_the_bump(self):
        address, bump = derive_with_bump([b"s"] * 15, OWNER)
        assert create_address([b"s"] * 15 + [bytes([bump])], OWNER) == address

    @pytest.mark.parametrize("seeds", [
        [b"x" * 33],
        [b"s"] * 16,
        ["not-bytes"],
        b"single-bytes-value",
    ])
    def test_malformed_seeds(self, seeds):
        with pytest.raises(InvalidSeedsError):
            derive(seeds, OWNER)


class TestClusterAddresses:

    def test_definition_offset_is_sha256_prefix(self):
        expected = int.from_bytes(hashlib.sha256(b"spin").digest()[:4], "little")
        assert definition_offset("spin") == expected
        assert definition_offset("spin") != definition_offset("spin_v2")

    def test_definition_depends_on_program(self, addresses):
        other = ClusterAddresses(
            program_id=OTHER_OWNER,
            cluster_program_id=addresses.cluster_program_id,
            cluster_offset=addresses.cluster_offset,
        )
        assert other.definition("spin") != addresses.definition("spin")

    def test_request_accounts_vary_only_in_computation(self, addresses):
        first = addresses.request_accounts("spin", 1)
        second = addresses.request_accounts("spin", 2)
        assert first.computation != second.computation
        assert first.definition == second.definition == addresses.definition("spin")
        assert first.mempool == second.mempool
        assert first.sign_authority == addresses.sign_authority()

    def test_request_accounts_as_dict(self, addresses):
        accounts = addresses.request_accounts("spin", 7).as_dict()
        assert set(accounts) == {
            "sign_authority", "mxe", "mempool", "executing_pool", "computation",
            "definition", "cluster", "fee_pool", "clock",
        }
        assert all(isinstance(v, str) for v in accounts.values())

    def test_raw_circuit_differs_from_definition(self, addresses):
        assert addresses.raw_circuit("spin") != addresses.definition("spin")
        assert addresses.raw_circuit("spin", 0) != addresses.raw_circuit("spin", 1)
