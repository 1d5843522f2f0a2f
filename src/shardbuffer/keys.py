"""Keypairs, addresses and signatures for ShardBuffer."""

import base64
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .types import ADDRESS_SIZE, SIGNATURE_SIZE, BuildError


AddressLike = Union[bytes, str]


def encode_address(address: bytes) -> str:
    """Encode a 32-byte address as unpadded base32."""
    if len(address) != ADDRESS_SIZE:
        raise BuildError(f"Address must be {ADDRESS_SIZE} bytes, got {len(address)}")
    return base64.b32encode(address).decode("ascii").rstrip("=")


def decode_address(address: AddressLike) -> bytes:
    """
    Normalize an address to its 32 raw bytes.

    Args:
        address: Raw address bytes or its base32 string form

    Returns:
        32-byte address

    Raises:
        BuildError: If the address is malformed
    """
    if isinstance(address, str):
        try:
            raw = base64.b32decode(address + "=" * ((8 - len(address) % 8) % 8))
        except ValueError as e:
            raise BuildError(f"Invalid address {address!r}: {e}")
    elif isinstance(address, (bytes, bytearray)):
        raw = bytes(address)
    else:
        raise BuildError(f"Invalid address type: {type(address).__name__}")

    if len(raw) != ADDRESS_SIZE:
        raise BuildError(f"Address must be {ADDRESS_SIZE} bytes, got {len(raw)}")
    return raw


class Keypair:
    """An Ed25519 signing identity whose public key is its address."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self.address = private_key.public_key().public_bytes_raw()

    @classmethod
    def generate(cls) -> "Keypair":
        """Generate a random keypair."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        """Create a keypair from a 32-byte Ed25519 seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    def sign(self, data: bytes) -> bytes:
        """Sign data, returning a 64-byte signature."""
        return self._private_key.sign(data)

    def __repr__(self) -> str:
        return f"Keypair({encode_address(self.address)})"


def verify_signature(address: bytes, signature: bytes, data: bytes) -> bool:
    """
    Verify that data was signed by the key behind an address.

    Args:
        address: 32-byte Ed25519 public key
        signature: 64-byte signature
        data: Signed bytes

    Returns:
        True if the signature is valid, False otherwise
    """
    if len(signature) != SIGNATURE_SIZE or len(address) != ADDRESS_SIZE:
        return False

    try:
        Ed25519PublicKey.from_public_bytes(address).verify(signature, data)
        return True
    except InvalidSignature:
        return False
