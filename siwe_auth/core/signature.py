"""
Ethereum Wallet Signature Utilities

This module handles the cryptographic side of wallet authentication.
It implements personal-message signature verification (EIP-191) and
checksum address encoding (EIP-55).

Verification Flow:
1. Prefix the message -> "\\x19Ethereum Signed Message:\\n" + len(message) + message
2. Hash the prefixed payload with Keccak-256 (NOT the NIST SHA3-256 variant)
3. Split the 65-byte signature into r (32), s (32), v (1)
4. Recovery id = v - 27, must be within {0, 1, 2, 3}
5. Recover the secp256k1 public key from (digest, r, s, recovery id)
6. Keccak-256 of the 64-byte public key, last 20 bytes = address
7. Compare with the claimed address case-insensitively

The signature verification uses:
- eth_keys for secp256k1 public key recovery
- eth_utils.keccak (pycryptodome backend) for Keccak-256
"""

import binascii
import re
from typing import Union

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import ValidationError as UtilsValidationError, keccak

from siwe_auth.core.errors import ErrorKind, Result


SIGNED_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"
SIGNATURE_LENGTH = 65
ADDRESS_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


def _strip_hex_prefix(value: str) -> str:
    """Helper: Remove a leading 0x / 0X from a hex string."""
    value = value.strip()
    if value[:2].lower() == "0x":
        return value[2:]
    return value


def _decode_signature(signature: Union[str, bytes]) -> bytes:
    """
    Helper: Decode a hex signature (with or without 0x) to raw bytes.

    Raises:
        ValueError: If the value is not hex or not exactly 65 bytes long
    """
    if isinstance(signature, bytes):
        raw = signature
    else:
        try:
            raw = binascii.unhexlify(_strip_hex_prefix(signature))
        except (binascii.Error, ValueError):
            raise ValueError("Signature must be hex encoded")
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    return raw


def is_address(value: str) -> bool:
    """Return True if value looks like a 20-byte hex address."""
    return bool(value) and ADDRESS_PATTERN.match(value.strip()) is not None


def normalize_address(address: str) -> str:
    """Lowercase, 0x-prefixed form used as the account lookup key."""
    return "0x" + _strip_hex_prefix(address).lower()


def to_checksum_address(address: str) -> str:
    """
    Encode an address with EIP-55 mixed-case checksum.

    The lowercase hex digits (without 0x) are hashed as ASCII; every digit
    whose hash nibble at the same position is >= 8 is uppercased.

    Raises:
        ValueError: If address is not a 20-byte hex value
    """
    if not is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    lower = _strip_hex_prefix(address).lower()
    digest = keccak(text=lower).hex()
    checksummed = "".join(
        char.upper() if int(digest[i], 16) >= 8 else char
        for i, char in enumerate(lower)
    )
    return "0x" + checksummed


def hash_personal_message(message: Union[str, bytes]) -> bytes:
    """Keccak-256 digest of the EIP-191 prefixed message."""
    message_bytes = message.encode("utf-8") if isinstance(message, str) else message
    payload = SIGNED_MESSAGE_PREFIX + str(len(message_bytes)).encode("ascii") + message_bytes
    return keccak(payload)


def recover_address(message: Union[str, bytes], signature: Union[str, bytes]) -> str:
    """
    Recover the signer address of a personal message.

    Returns:
        Lowercase 0x-prefixed address of the signing key

    Raises:
        ValueError: If the signature is malformed or recovery fails
    """
    raw = _decode_signature(signature)
    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]

    recovery_id = v - 27
    if recovery_id not in (0, 1, 2, 3):
        raise ValueError(f"Invalid recovery id for v={v}")

    digest = hash_personal_message(message)
    try:
        # eth_keys only models recovery ids 0/1; 2/3 (r >= n) fail here
        sig = keys.Signature(vrs=(recovery_id, r, s))
        public_key = sig.recover_public_key_from_msg_hash(digest)
    except (BadSignature, KeyValidationError, UtilsValidationError, ValueError) as e:
        raise ValueError(f"Public key recovery failed: {e}")

    # to_bytes() is the 64-byte X||Y point, the 0x04 format byte is already dropped
    address_bytes = keccak(public_key.to_bytes())[-20:]
    return "0x" + address_bytes.hex()


def verify_signature(message: str, signature: Union[str, bytes], claimed_address: str) -> Result:
    """
    Verify that claimed_address signed message.

    This is the check called by the auth orchestrator. No partial trust is
    granted: any decoding or recovery problem is reported as SIGNATURE_INVALID.

    Args:
        message: The exact message text that was signed
        signature: 65-byte signature (hex string or raw bytes)
        claimed_address: Address the client claims to control

    Returns:
        Result.success(recovered_address) or Result.failure(SIGNATURE_INVALID)

    Example:
        result = verify_signature(message_text, "0x...", "0xAbC...")
        if result.ok:
            # result.value is the lowercase recovered address
    """
    if not is_address(claimed_address):
        return Result.failure(ErrorKind.SIGNATURE_INVALID, "claimed address is malformed")
    try:
        recovered = recover_address(message, signature)
    except ValueError as e:
        return Result.failure(ErrorKind.SIGNATURE_INVALID, str(e))

    if recovered != normalize_address(claimed_address):
        return Result.failure(ErrorKind.SIGNATURE_INVALID, "recovered address does not match")
    return Result.success(recovered)
