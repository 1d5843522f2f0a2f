"""
Message assembly, encoding and signing for ShardBuffer.

Message format (signed bytes):
    [0-31]   fee payer address
    [32-63]  validity window token
    [64]     directive count, then per directive: kind (1) + value (u64 LE)
    [..]     allocation flag (1); if set: address (32) + space (u32 LE)
    [..]     operation count, then per operation:
             buffer address (32) + length (u16 LE) + encoded operation

Signed message format:
    [0]      signature count, then per signer: address (32) + signature (64)
    [..]     message bytes
"""

import struct
from dataclasses import dataclass
from typing import Optional, Sequence

from .keys import AddressLike, Keypair, decode_address, encode_address
from .operations import Operation, Initialize, Assign, Write, Close, decode_operation
from .planner import (
    DirectiveKind,
    OverheadProfile,
    PriorityDirective,
    directive_overhead,
)
from .types import (
    ADDRESS_SIZE,
    OFFSET_SIZE,
    SIGNATURE_SIZE,
    AssemblyError,
    BuildError,
)


WINDOW_TOKEN_SIZE = 32
MAX_OPERATIONS = 0xFF

_DIRECTIVE = struct.Struct("<BQ")
_ALLOCATION = struct.Struct("<32sI")
_OPERATION_HEADER = struct.Struct("<32sH")


@dataclass(frozen=True)
class StorageAllocation:
    """Storage the channel allocates alongside the Initialize operation."""
    address: bytes
    space: int


@dataclass(frozen=True)
class Message:
    """An atomic unit submitted to the channel."""
    fee_payer: bytes
    operations: tuple[Operation, ...]
    directives: tuple[PriorityDirective, ...] = ()
    allocation: Optional[StorageAllocation] = None

    def required_signers(self) -> list[bytes]:
        """Addresses that must sign, fee payer first."""
        signers = [self.fee_payer]
        for op in self.operations:
            for address in op.required_signers(self.fee_payer):
                if address not in signers:
                    signers.append(address)
        if self.allocation is not None and self.allocation.address not in signers:
            signers.append(self.allocation.address)
        return signers

    def wire_size(self, profile: OverheadProfile) -> int:
        """Size the channel accounts for this message."""
        size = max(profile.dynamic_prefix_overhead, directive_overhead(self.directives))
        for op in self.operations:
            if isinstance(op, Initialize):
                size += profile.fixed_init_overhead + len(op.frame.data)
            elif isinstance(op, Write):
                size += profile.fixed_write_overhead + OFFSET_SIZE + len(op.frame.data)
            elif isinstance(op, Assign):
                size += profile.fixed_write_overhead + ADDRESS_SIZE
            elif isinstance(op, Close):
                size += profile.fixed_write_overhead
        return size

    def writes(self) -> list[Write]:
        """Write operations carried by this message."""
        return [op for op in self.operations if isinstance(op, Write)]

    def serialize(self, window_token: bytes) -> bytes:
        """Encode the message bound to a validity window token."""
        if len(window_token) != WINDOW_TOKEN_SIZE:
            raise AssemblyError(
                f"Window token must be {WINDOW_TOKEN_SIZE} bytes, got {len(window_token)}"
            )

        out = bytearray(self.fee_payer)
        out += window_token
        out.append(len(self.directives))
        for directive in self.directives:
            out += _DIRECTIVE.pack(directive.kind, directive.value)

        if self.allocation is None:
            out.append(0)
        else:
            out.append(1)
            out += _ALLOCATION.pack(self.allocation.address, self.allocation.space)

        out.append(len(self.operations))
        for op in self.operations:
            encoded = op.encode()
            out += _OPERATION_HEADER.pack(op.buffer, len(encoded))
            out += encoded
        return bytes(out)


def assemble(
    fee_payer: AddressLike,
    operations: Sequence[Operation],
    directives: Sequence[PriorityDirective] = (),
    allocation: Optional[StorageAllocation] = None,
    profile: OverheadProfile = OverheadProfile(),
) -> Message:
    """
    Wrap operations into a size-bounded message.

    Args:
        fee_payer: Authority paying for and signing the message
        operations: Operation records, in execution order
        directives: Priority directives prepended to the operations
        allocation: Storage to allocate before the operations run
        profile: Channel size budget

    Returns:
        The assembled Message

    Raises:
        AssemblyError: If the message is empty or exceeds the channel limit
    """
    if not operations:
        raise AssemblyError("Message must carry at least one operation")
    if len(operations) > MAX_OPERATIONS:
        raise AssemblyError(f"Too many operations: {len(operations)} (maximum {MAX_OPERATIONS})")

    message = Message(
        fee_payer=decode_address(fee_payer),
        operations=tuple(operations),
        directives=tuple(directives),
        allocation=allocation,
    )

    size = message.wire_size(profile)
    if size > profile.max_message_size:
        raise AssemblyError(
            f"Message size {size} exceeds channel limit of {profile.max_message_size} bytes"
        )
    return message


def decode_message(data: bytes) -> tuple[Message, bytes]:
    """
    Decode serialized message bytes.

    Returns:
        Tuple of (message, window token)

    Raises:
        AssemblyError: If the data is truncated or malformed
    """
    try:
        fee_payer = data[:ADDRESS_SIZE]
        offset = ADDRESS_SIZE
        token = data[offset : offset + WINDOW_TOKEN_SIZE]
        offset += WINDOW_TOKEN_SIZE

        directives = []
        for _ in range(data[offset]):
            kind, value = _DIRECTIVE.unpack_from(data, offset + 1)
            directives.append(PriorityDirective(DirectiveKind(kind), value))
            offset += _DIRECTIVE.size
        offset += 1

        allocation = None
        if data[offset]:
            address, space = _ALLOCATION.unpack_from(data, offset + 1)
            allocation = StorageAllocation(address=address, space=space)
            offset += _ALLOCATION.size
        offset += 1

        count = data[offset]
        offset += 1
        operations = []
        for _ in range(count):
            buffer, length = _OPERATION_HEADER.unpack_from(data, offset)
            offset += _OPERATION_HEADER.size
            encoded = data[offset : offset + length]
            if len(encoded) != length:
                raise AssemblyError("Malformed message: truncated operation")
            operations.append(decode_operation(buffer, encoded))
            offset += length
    except (IndexError, struct.error, ValueError, BuildError) as e:
        raise AssemblyError(f"Malformed message: {e}")

    if len(fee_payer) != ADDRESS_SIZE or len(token) != WINDOW_TOKEN_SIZE:
        raise AssemblyError("Malformed message: truncated header")
    if offset != len(data):
        raise AssemblyError(f"Malformed message: {len(data) - offset} trailing bytes")

    message = Message(
        fee_payer=bytes(fee_payer),
        operations=tuple(operations),
        directives=tuple(directives),
        allocation=allocation,
    )
    return message, bytes(token)


@dataclass(frozen=True)
class SignedMessage:
    """Serialized message with the signatures of its required signers."""
    payload: bytes
    signatures: tuple[tuple[bytes, bytes], ...]

    @property
    def signature(self) -> str:
        """Identifier of the submission (the fee payer's signature)."""
        return self.signatures[0][1].hex()

    def encode(self) -> bytes:
        out = bytearray([len(self.signatures)])
        for address, sig in self.signatures:
            out += address + sig
        return bytes(out) + self.payload


def decode_signed_message(data: bytes) -> SignedMessage:
    """
    Split signed message bytes into signatures and payload.

    Raises:
        AssemblyError: If the data is truncated
    """
    if not data:
        raise AssemblyError("Empty signed message")

    count = data[0]
    offset = 1
    entry_size = ADDRESS_SIZE + SIGNATURE_SIZE
    if count == 0 or len(data) < offset + count * entry_size:
        raise AssemblyError("Signed message truncated")

    signatures = []
    for _ in range(count):
        address = bytes(data[offset : offset + ADDRESS_SIZE])
        sig = bytes(data[offset + ADDRESS_SIZE : offset + entry_size])
        signatures.append((address, sig))
        offset += entry_size

    return SignedMessage(payload=bytes(data[offset:]), signatures=tuple(signatures))


def sign_message(
    message: Message,
    window_token: bytes,
    signers: Sequence[Keypair],
) -> SignedMessage:
    """
    Serialize a message for a validity window and sign it.

    Args:
        message: Message to sign
        window_token: Token of the validity window the message is sent under
        signers: Keypairs available; every required signer must be present

    Returns:
        SignedMessage with signatures in required-signer order

    Raises:
        AssemblyError: If a required signer is missing
    """
    by_address = {kp.address: kp for kp in signers}
    payload = message.serialize(window_token)

    signatures = []
    for address in message.required_signers():
        keypair = by_address.get(address)
        if keypair is None:
            raise AssemblyError(f"Missing signer: {encode_address(address)}")
        signatures.append((address, keypair.sign(payload)))

    return SignedMessage(payload=payload, signatures=tuple(signatures))
