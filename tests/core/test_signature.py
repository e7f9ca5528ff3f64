import pytest
from eth_account import Account
from eth_utils import keccak
from eth_utils import to_checksum_address as reference_checksum

from siwe_auth.core.errors import ErrorKind
from siwe_auth.core.signature import (
    hash_personal_message,
    is_address,
    normalize_address,
    recover_address,
    to_checksum_address,
    verify_signature,
)

from conftest import sign


VITALIK = "0xd8da6bf26964af9d7eed9e03e53415d37aa96045"


class TestChecksum:
    def test_matches_reference_encoding(self):
        assert to_checksum_address(VITALIK) == reference_checksum(VITALIK)
        assert to_checksum_address(VITALIK) == "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"

    def test_idempotent(self):
        for _ in range(10):
            address = Account.create().address
            once = to_checksum_address(address)
            assert to_checksum_address(once.lower()) == once
            assert to_checksum_address(once) == once

    def test_accepts_missing_prefix(self):
        assert to_checksum_address(VITALIK[2:]) == reference_checksum(VITALIK)

    def test_rejects_malformed(self):
        with pytest.raises(ValueError):
            to_checksum_address("0x1234")

    def test_is_address(self):
        assert is_address(VITALIK)
        assert not is_address("0xzz" + VITALIK[4:])
        assert not is_address("")

    def test_normalize(self):
        assert normalize_address("0xD8DA6BF26964AF9D7EED9E03E53415D37AA96045") == VITALIK


class TestRecovery:
    def test_personal_message_digest(self):
        assert hash_personal_message("hello") == keccak(b"\x19Ethereum Signed Message:\n5hello")
        assert hash_personal_message("héllo") == keccak(b"\x19Ethereum Signed Message:\n6" + "héllo".encode("utf-8"))

    def test_recovers_signer_for_both_recovery_ids(self, wallet):
        seen = set()
        for i in range(64):
            text = f"message number {i}"
            signature = sign(wallet, text)
            seen.add(int(signature[-2:], 16))
            assert recover_address(text, signature) == wallet.address.lower()
            if seen == {27, 28}:
                break
        assert seen == {27, 28}

    def test_signature_without_prefix(self, wallet):
        signature = sign(wallet, "abc")[2:]
        assert recover_address("abc", signature) == wallet.address.lower()

    def test_raw_bytes_signature(self, wallet):
        signature = bytes.fromhex(sign(wallet, "abc")[2:])
        assert recover_address("abc", signature) == wallet.address.lower()

    @pytest.mark.parametrize("v", [0, 26, 31, 255])
    def test_rejects_out_of_range_v(self, wallet, v):
        raw = bytearray.fromhex(sign(wallet, "abc")[2:])
        raw[64] = v
        with pytest.raises(ValueError):
            recover_address("abc", bytes(raw))

    def test_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            recover_address("abc", "0x" + "11" * 64)

    def test_rejects_non_hex(self):
        with pytest.raises(ValueError):
            recover_address("abc", "0x" + "zz" * 65)


class TestVerifySignature:
    def test_valid_signature(self, wallet):
        result = verify_signature("sign me", sign(wallet, "sign me"), wallet.address)
        assert result.ok
        assert result.value == wallet.address.lower()

    def test_claim_is_case_insensitive(self, wallet):
        result = verify_signature("sign me", sign(wallet, "sign me"), wallet.address.upper().replace("0X", "0x"))
        assert result.ok

    def test_other_address_is_rejected(self, wallet):
        other = Account.create()
        result = verify_signature("sign me", sign(wallet, "sign me"), other.address)
        assert not result.ok
        assert result.error == ErrorKind.SIGNATURE_INVALID

    def test_tampered_message_is_rejected(self, wallet):
        result = verify_signature("sign me!", sign(wallet, "sign me"), wallet.address)
        assert result.error == ErrorKind.SIGNATURE_INVALID

    def test_garbage_signature_is_rejected(self, wallet):
        result = verify_signature("sign me", "0xdeadbeef", wallet.address)
        assert result.error == ErrorKind.SIGNATURE_INVALID

    def test_malformed_claim_is_rejected(self, wallet):
        result = verify_signature("sign me", sign(wallet, "sign me"), "not-an-address")
        assert result.error == ErrorKind.SIGNATURE_INVALID
