"""
Operation records accepted by the receiving store.

Encoding (one tag byte + body):
    [0] Initialize   first-frame bytes
    [1] Assign       new authority address (32 bytes)
    [2] Write        3-byte little-endian offset + frame bytes
    [3] Close        no body
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from .keys import AddressLike, decode_address
from .planner import Frame, frame_from_write_data
from .types import ADDRESS_SIZE, BuildError


class OperationKind(IntEnum):
    """Tag byte selecting the operation."""
    INITIALIZE = 0
    ASSIGN = 1
    WRITE = 2
    CLOSE = 3


@dataclass(frozen=True)
class Initialize:
    """Take ownership of freshly allocated storage and write frame 0."""
    buffer: bytes
    frame: Frame

    kind = OperationKind.INITIALIZE

    def encode(self) -> bytes:
        return bytes([self.kind]) + self.frame.data

    def required_signers(self, authority: bytes) -> list[bytes]:
        return [authority, self.buffer]


@dataclass(frozen=True)
class Assign:
    """Hand the storage over to a new authority."""
    buffer: bytes
    new_authority: bytes

    kind = OperationKind.ASSIGN

    def encode(self) -> bytes:
        return bytes([self.kind]) + self.new_authority

    def required_signers(self, authority: bytes) -> list[bytes]:
        return [authority]


@dataclass(frozen=True)
class Write:
    """Write one offset-tagged frame."""
    buffer: bytes
    frame: Frame

    kind = OperationKind.WRITE

    def encode(self) -> bytes:
        return bytes([self.kind]) + self.frame.write_data()

    def required_signers(self, authority: bytes) -> list[bytes]:
        return [authority]


@dataclass(frozen=True)
class Close:
    """Release the storage."""
    buffer: bytes

    kind = OperationKind.CLOSE

    def encode(self) -> bytes:
        return bytes([self.kind])

    def required_signers(self, authority: bytes) -> list[bytes]:
        return [authority]


Operation = Union[Initialize, Assign, Write, Close]


def initialize(buffer: AddressLike, frame: Frame) -> Initialize:
    """Build an Initialize record for the first frame."""
    if frame.offset != 0:
        raise BuildError(f"Initialize carries the frame at offset 0, got offset {frame.offset}")
    return Initialize(buffer=decode_address(buffer), frame=frame)


def assign(buffer: AddressLike, new_authority: AddressLike) -> Assign:
    """Build an Assign record."""
    return Assign(buffer=decode_address(buffer), new_authority=decode_address(new_authority))


def write(buffer: AddressLike, frame: Frame) -> Write:
    """Build a Write record; the frame offset must fit in 3 bytes."""
    frame.write_data()
    return Write(buffer=decode_address(buffer), frame=frame)


def close(buffer: AddressLike) -> Close:
    """Build a Close record."""
    return Close(buffer=decode_address(buffer))


def decode_operation(buffer: bytes, data: bytes) -> Operation:
    """
    Decode an encoded operation addressed to a buffer.

    Args:
        buffer: Storage address the operation targets
        data: Tag byte followed by the operation body

    Returns:
        The decoded operation record

    Raises:
        BuildError: If the tag is unknown or the body is malformed
    """
    if not data:
        raise BuildError("Empty operation data")

    try:
        kind = OperationKind(data[0])
    except ValueError:
        raise BuildError(f"Unknown operation tag: {data[0]}")

    body = bytes(data[1:])

    if kind == OperationKind.INITIALIZE:
        return initialize(buffer, Frame(index=0, offset=0, data=body))
    if kind == OperationKind.ASSIGN:
        if len(body) != ADDRESS_SIZE:
            raise BuildError(f"Assign body must be {ADDRESS_SIZE} bytes, got {len(body)}")
        return assign(buffer, body)
    if kind == OperationKind.WRITE:
        return write(buffer, frame_from_write_data(body))
    if body:
        raise BuildError(f"Close carries no body, got {len(body)} bytes")
    return close(buffer)
