"""Tests for shard planning."""

import hashlib
import os

import pytest

from shardbuffer.planner import (
    DirectiveKind,
    OverheadProfile,
    PriorityFee,
    directive_overhead,
    frame_count,
    frame_from_write_data,
    plan,
)
from shardbuffer.types import MAX_OFFSET, PlanningError


DEFAULT_PROFILE = OverheadProfile(
    max_message_size=1232,
    fixed_init_overhead=358,
    fixed_write_overhead=208,
    dynamic_prefix_overhead=0,
)


class TestFrameSizes:
    """Frame sizes for the reference channel constants."""

    def test_three_megabyte_payload(self) -> None:
        """3,000,000 bytes split into 874 + 1021-byte frames."""
        result = plan(bytes(3_000_000), DEFAULT_PROFILE)

        assert len(result.frames[0].data) == 874
        assert all(len(f.data) == 1021 for f in result.frames[1:-1])
        # 1 + ceil((3_000_000 - 874) / 1021)
        assert len(result.frames) == 2939
        assert len(result.frames[-1].data) < 1021

    def test_dynamic_overhead_shrinks_frames(self) -> None:
        """A 36-byte prefix leaves 838-byte first and 985-byte later frames."""
        profile = OverheadProfile(dynamic_prefix_overhead=36)
        result = plan(bytes(3_000_000), profile)

        assert len(result.frames[0].data) == 838
        assert len(result.frames[1].data) == 985

    def test_frame_count_grows_with_prefix(self) -> None:
        """More dynamic overhead never produces fewer frames."""
        counts = [
            len(plan(bytes(200_000), OverheadProfile(dynamic_prefix_overhead=d)).frames)
            for d in range(0, 600, 25)
        ]
        assert counts == sorted(counts)
        assert counts[-1] > counts[0]

    def test_frame_count_matches_plan(self) -> None:
        """frame_count() agrees with the frames plan() produces."""
        for length in (0, 1, 874, 875, 1895, 1896, 50_000):
            assert frame_count(length, DEFAULT_PROFILE) == len(plan(bytes(length), DEFAULT_PROFILE).frames)


class TestDirectives:
    """Priority directive overhead."""

    def test_no_directives(self) -> None:
        assert directive_overhead([]) == 0
        assert PriorityFee().directives() == []

    def test_both_directives(self) -> None:
        """Price and limit together cost 36 bytes."""
        directives = PriorityFee(unit_price=200_000, unit_limit=1000).directives()
        assert [d.kind for d in directives] == [DirectiveKind.UNIT_PRICE, DirectiveKind.UNIT_LIMIT]
        assert directive_overhead(directives) == 36

        profile = OverheadProfile.with_directives(directives)
        assert profile.dynamic_prefix_overhead == 36
        assert profile.init_budget == 838
        assert profile.write_budget == 985

    def test_single_directive(self) -> None:
        directives = PriorityFee(unit_limit=1000).directives()
        assert directive_overhead(directives) == 28


class TestPlanInvariants:
    """Properties that hold for every payload."""

    @pytest.mark.parametrize("length", [0, 1, 873, 874, 875, 1895, 1896, 10_000, 123_457])
    def test_reassembles_payload(self, length: int) -> None:
        """Concatenated frame data reproduces the payload."""
        payload = os.urandom(length)
        result = plan(payload, DEFAULT_PROFILE)
        assert result.reassemble() == payload
        assert result.payload_length == length

    @pytest.mark.parametrize("length", [1, 2000, 123_457])
    def test_offsets_are_contiguous(self, length: int) -> None:
        """Each frame starts where the previous one ended."""
        result = plan(os.urandom(length), DEFAULT_PROFILE)
        frames = result.frames

        assert frames[0].offset == 0
        if len(frames) > 1:
            assert frames[1].offset == len(frames[0].data)
        for prev, nxt in zip(frames, frames[1:]):
            assert nxt.offset == prev.offset + len(prev.data)
            assert nxt.offset > prev.offset
        assert [f.index for f in frames] == list(range(len(frames)))

    def test_deterministic(self) -> None:
        """Same payload and profile give identical plans."""
        payload = os.urandom(20_000)
        profile = OverheadProfile(dynamic_prefix_overhead=36)
        assert plan(payload, profile) == plan(payload, profile)

    def test_checksum_matches_payload(self) -> None:
        """Checksum is SHA-256 of the payload and of the reassembled frames."""
        payload = os.urandom(5000)
        result = plan(payload, DEFAULT_PROFILE)
        assert result.checksum == hashlib.sha256(payload).digest()
        assert result.checksum == hashlib.sha256(result.reassemble()).digest()

    def test_empty_payload(self) -> None:
        """An empty payload is one empty first frame."""
        result = plan(b"", DEFAULT_PROFILE)
        assert len(result.frames) == 1
        assert result.frames[0].data == b""
        assert result.storage_size == 32

    def test_storage_size(self) -> None:
        result = plan(bytes(5000), DEFAULT_PROFILE)
        assert result.storage_size == 5032


class TestWriteData:
    """Offset tags on subsequent frames."""

    def test_offset_tag_little_endian(self) -> None:
        """Frames after the first carry a 3-byte little-endian offset."""
        result = plan(bytes(range(256)) * 10, DEFAULT_PROFILE)
        frame = result.frames[1]
        tagged = frame.write_data()

        assert tagged[:3] == (874).to_bytes(3, "little")
        assert tagged[3:] == frame.data

    def test_decode_write_data(self) -> None:
        frame = frame_from_write_data(bytes([0x01, 0x02, 0x03]) + b"abc")
        assert frame.offset == 0x030201
        assert frame.data == b"abc"

    def test_decode_truncated(self) -> None:
        from shardbuffer.types import BuildError

        with pytest.raises(BuildError, match="too short"):
            frame_from_write_data(b"\x01\x02")


class TestPlanningErrors:
    """Misconfigured profiles and oversized payloads."""

    def test_directives_exceed_channel(self) -> None:
        """Priority overhead larger than the message fails immediately."""
        with pytest.raises(PlanningError, match="not positive"):
            plan(b"data", OverheadProfile(dynamic_prefix_overhead=1232))

    def test_write_budget_not_positive(self) -> None:
        """A write budget of zero is rejected even if the init budget is fine."""
        profile = OverheadProfile(
            max_message_size=400, fixed_init_overhead=100, fixed_write_overhead=397
        )
        with pytest.raises(PlanningError, match="Write frame budget"):
            plan(b"data", profile)

    def test_negative_overhead(self) -> None:
        with pytest.raises(PlanningError, match="non-negative"):
            plan(b"data", OverheadProfile(dynamic_prefix_overhead=-1))

    def test_offset_overflow(self) -> None:
        """Payloads whose frames start past the 3-byte range fail planning."""
        with pytest.raises(PlanningError, match="exceeds"):
            plan(bytes(MAX_OFFSET + 2000), DEFAULT_PROFILE)

    def test_largest_offset_allowed(self) -> None:
        """A frame may start at the largest 3-byte offset."""
        profile = OverheadProfile(
            max_message_size=MAX_OFFSET + 100, fixed_init_overhead=100, fixed_write_overhead=0
        )
        result = plan(bytes(MAX_OFFSET + 10), profile)
        assert result.frames[1].offset == MAX_OFFSET
