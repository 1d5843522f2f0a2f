"""
Shard planning for ShardBuffer.

Splits a payload into frames that each fit in one channel message. The first
frame rides in the Initialize operation at offset 0; every later frame is
written with a 3-byte little-endian offset tag.
"""

import hashlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Sequence

from .types import (
    MAX_MESSAGE_SIZE,
    INIT_OVERHEAD,
    WRITE_OVERHEAD,
    DIRECTIVE_BASE_OVERHEAD,
    DIRECTIVE_OVERHEAD,
    OFFSET_SIZE,
    MAX_OFFSET,
    STORAGE_HEADER_SIZE,
    PlanningError,
    BuildError,
)


class DirectiveKind(IntEnum):
    """Priority directives that may be prepended to every message."""
    UNIT_PRICE = 0
    UNIT_LIMIT = 1


@dataclass(frozen=True)
class PriorityDirective:
    """A priority/fee directive carried ahead of the operations."""
    kind: DirectiveKind
    value: int


@dataclass(frozen=True)
class PriorityFee:
    """Optional compute-budget settings for a transmission."""

    unit_price: int = 0
    """Price per compute unit (0 to omit)."""

    unit_limit: int = 0
    """Compute unit limit (0 to omit)."""

    def directives(self) -> list[PriorityDirective]:
        """Returns the directives to prepend, price first."""
        result = []
        if self.unit_price:
            result.append(PriorityDirective(DirectiveKind.UNIT_PRICE, self.unit_price))
        if self.unit_limit:
            result.append(PriorityDirective(DirectiveKind.UNIT_LIMIT, self.unit_limit))
        return result


def directive_overhead(directives: Sequence[PriorityDirective]) -> int:
    """Bytes the given directives add to every message."""
    if not directives:
        return 0
    return DIRECTIVE_BASE_OVERHEAD + DIRECTIVE_OVERHEAD * len(directives)


@dataclass(frozen=True)
class OverheadProfile:
    """Size budget of the channel for one transmission."""

    max_message_size: int = MAX_MESSAGE_SIZE
    """Maximum serialized message size."""

    fixed_init_overhead: int = INIT_OVERHEAD
    """Fixed cost of a message carrying the Initialize operation."""

    fixed_write_overhead: int = WRITE_OVERHEAD
    """Fixed cost of a message carrying a Write operation."""

    dynamic_prefix_overhead: int = 0
    """Cost of the priority directives attached to every message."""

    @classmethod
    def with_directives(
        cls,
        directives: Sequence[PriorityDirective],
        max_message_size: int = MAX_MESSAGE_SIZE,
        fixed_init_overhead: int = INIT_OVERHEAD,
        fixed_write_overhead: int = WRITE_OVERHEAD,
    ) -> "OverheadProfile":
        """Creates a profile whose dynamic overhead matches the directives."""
        return cls(
            max_message_size=max_message_size,
            fixed_init_overhead=fixed_init_overhead,
            fixed_write_overhead=fixed_write_overhead,
            dynamic_prefix_overhead=directive_overhead(directives),
        )

    @property
    def init_budget(self) -> int:
        """Payload bytes available to the first frame."""
        return self.max_message_size - self.dynamic_prefix_overhead - self.fixed_init_overhead

    @property
    def write_budget(self) -> int:
        """Payload bytes available to each subsequent frame."""
        return (
            self.max_message_size
            - self.dynamic_prefix_overhead
            - self.fixed_write_overhead
            - OFFSET_SIZE
        )

    def validate(self) -> None:
        """
        Check the profile can carry payload bytes at all.

        Raises:
            PlanningError: If any overhead is negative or a budget is not positive
        """
        for name in ("max_message_size", "fixed_init_overhead",
                     "fixed_write_overhead", "dynamic_prefix_overhead"):
            if getattr(self, name) < 0:
                raise PlanningError(f"{name} must be non-negative, got {getattr(self, name)}")

        if self.init_budget <= 0:
            raise PlanningError(f"Initialize frame budget is not positive: {self.init_budget}")

        if self.write_budget <= 0:
            raise PlanningError(f"Write frame budget is not positive: {self.write_budget}")


@dataclass(frozen=True)
class Frame:
    """One contiguous slice of the payload."""
    index: int
    offset: int
    data: bytes

    @property
    def end(self) -> int:
        """Offset one past the last byte of this frame."""
        return self.offset + len(self.data)

    def write_data(self) -> bytes:
        """Offset-tagged bytes as carried by a Write operation."""
        if self.offset > MAX_OFFSET:
            raise BuildError(f"Offset {self.offset} does not fit in {OFFSET_SIZE} bytes")
        return self.offset.to_bytes(OFFSET_SIZE, "little") + self.data


def frame_from_write_data(data: bytes, index: int = -1) -> Frame:
    """
    Recover a frame from offset-tagged write bytes.

    Args:
        data: 3-byte little-endian offset followed by frame bytes
        index: Frame index, if known

    Returns:
        The decoded Frame

    Raises:
        BuildError: If the offset tag is truncated
    """
    if len(data) < OFFSET_SIZE:
        raise BuildError(f"Write data too short: {len(data)} bytes (minimum {OFFSET_SIZE})")
    offset = int.from_bytes(data[:OFFSET_SIZE], "little")
    return Frame(index=index, offset=offset, data=bytes(data[OFFSET_SIZE:]))


@dataclass(frozen=True)
class ShardPlan:
    """Checksum and ordered frames for one payload."""
    checksum: bytes
    frames: tuple[Frame, ...]
    profile: OverheadProfile = field(default_factory=OverheadProfile)

    @property
    def first_frame(self) -> Frame:
        return self.frames[0]

    @property
    def write_frames(self) -> tuple[Frame, ...]:
        """Frames delivered by Write operations."""
        return self.frames[1:]

    @property
    def payload_length(self) -> int:
        return self.frames[-1].end

    @property
    def storage_size(self) -> int:
        """Bytes the receiving store must allocate (header plus payload)."""
        return STORAGE_HEADER_SIZE + self.payload_length

    def reassemble(self) -> bytes:
        """Concatenate frame data in order."""
        return b"".join(frame.data for frame in self.frames)


def compute_checksum(data: bytes) -> bytes:
    """SHA-256 digest of a payload."""
    return hashlib.sha256(data).digest()


def plan(payload: bytes, profile: OverheadProfile = OverheadProfile()) -> ShardPlan:
    """
    Split a payload into frames that fit the channel.

    Args:
        payload: Bytes to transmit
        profile: Channel size budget

    Returns:
        ShardPlan with checksum and frames in offset order

    Raises:
        PlanningError: If the profile leaves no room for data, or a frame
            offset exceeds the 3-byte range
    """
    profile.validate()
    payload = bytes(payload)

    first_size = min(profile.init_budget, len(payload))
    frames = [Frame(index=0, offset=0, data=payload[:first_size])]
    offset = first_size

    while offset < len(payload):
        if offset > MAX_OFFSET:
            raise PlanningError(
                f"Frame offset {offset} exceeds the {OFFSET_SIZE}-byte limit ({MAX_OFFSET})"
            )
        data = payload[offset : offset + profile.write_budget]
        frames.append(Frame(index=len(frames), offset=offset, data=data))
        offset += len(data)

    return ShardPlan(
        checksum=compute_checksum(payload),
        frames=tuple(frames),
        profile=profile,
    )


def frame_count(payload_length: int, profile: OverheadProfile) -> int:
    """Number of frames plan() produces for a payload length."""
    profile.validate()
    remaining = max(0, payload_length - profile.init_budget)
    return 1 + -(-remaining // profile.write_budget)

