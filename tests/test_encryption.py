"""Tests for encryption contexts, nonce uniqueness and the result cipher."""

import pytest

from encwheel.encryption import (
    NONCE_SIZE,
    EncryptionContext,
    NonceSource,
    RequesterKeypair,
    ResultCipher,
)
from encwheel.errors import NonceReuseError


class TestKeypair:

    def test_shared_secret_agrees(self):
        alice = RequesterKeypair.generate()
        bob = RequesterKeypair.generate()
        assert alice.shared_secret(bob.public_key) == bob.shared_secret(alice.public_key)
        assert len(alice.public_key) == 32


class TestEncryptionContext:

    def test_nonce_int_is_little_endian_u128(self):
        context = EncryptionContext(public_key=bytes(32), nonce=b"\x01" + bytes(15))
        assert context.nonce_int == 1

    def test_rejects_wrong_sizes(self):
        with pytest.raises(ValueError):
            EncryptionContext(public_key=bytes(31), nonce=bytes(16))
        with pytest.raises(ValueError):
            EncryptionContext(public_key=bytes(32), nonce=bytes(12))


class TestNonceSource:

    def test_nonces_never_repeat_for_a_key(self):
        source = NonceSource()
        key = RequesterKeypair.generate().public_key
        nonces = {source.new_context(key).nonce for _ in range(2000)}
        assert len(nonces) == 2000
        assert source.issued(key) == 2000

    def test_fresh_nonces_are_full_width(self):
        context = NonceSource().new_context(bytes(32))
        assert len(context.nonce) == NONCE_SIZE

    def test_claim_rejects_reuse(self):
        source = NonceSource()
        context = EncryptionContext(public_key=bytes(32), nonce=b"\x07" * 16)
        source.claim(context)
        with pytest.raises(NonceReuseError):
            source.claim(context)

    def test_same_nonce_allowed_under_different_keys(self):
        source = NonceSource()
        nonce = b"\x07" * 16
        source.claim(EncryptionContext(public_key=b"\x01" * 32, nonce=nonce))
        source.claim(EncryptionContext(public_key=b"\x02" * 32, nonce=nonce))

    def test_claim_rejects_previously_minted_nonce(self):
        source = NonceSource()
        minted = source.new_context(bytes(32))
        with pytest.raises(NonceReuseError):
            source.claim(minted)


class TestResultCipher:

    def test_requester_decrypts_cluster_result(self):
        cluster = RequesterKeypair.generate()
        requester = RequesterKeypair.generate()
        nonce = NonceSource().new_context(requester.public_key).nonce

        ciphertext = ResultCipher(cluster.shared_secret(requester.public_key)).encrypt_u8(nonce, 5)
        plain = ResultCipher(requester.shared_secret(cluster.public_key)).decrypt_u8(nonce, ciphertext)

        assert plain == 5
        assert ciphertext != (5).to_bytes(32, "little")

    def test_nonce_changes_ciphertext(self):
        cipher = ResultCipher(b"\x11" * 32)
        assert cipher.encrypt_u8(b"\x00" * 16, 3) != cipher.encrypt_u8(b"\x01" * 16, 3)

    def test_wrong_key_is_detected_as_out_of_range(self):
        nonce = b"\x02" * 16
        ciphertext = ResultCipher(b"\x11" * 32).encrypt_u8(nonce, 3)
        with pytest.raises(ValueError):
            ResultCipher(b"\x22" * 32).decrypt_u8(nonce, ciphertext)

    def test_block_size_enforced(self):
        with pytest.raises(ValueError):
            ResultCipher(b"\x11" * 32).decrypt(b"\x00" * 16, b"short")
