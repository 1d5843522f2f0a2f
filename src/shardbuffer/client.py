"""
ShardBuffer client for storing large payloads through a size-bounded channel.

A ShardBuffer owns one transmission: the payload, its checksum and frame
plan, and the keypair naming the receiving storage.
"""

import logging
from typing import Optional, Sequence

from .channel import Channel
from .engine import DeliveryConfig, DeliveryEngine
from .keys import AddressLike, Keypair, encode_address
from .message import Message, StorageAllocation, assemble
from .models import BroadcastReport, TransmissionState, UploadResult
from .operations import assign, close, initialize, write
from .planner import Frame, OverheadProfile, PriorityFee, plan
from .types import DeliveryError, ShardBufferError, TransmissionStateError

log = logging.getLogger("shardbuffer.client")


class ShardBuffer:
    """
    High-level client for one transmission.

    Example usage:
        ```python
        buffer = ShardBuffer(channel, data, priority=PriorityFee(unit_price=200_000))

        result = await buffer.upload(authority)
        print(f"stored {result.frame_count} frames at {buffer.address_str}")

        await buffer.close(authority)
        ```
    """

    def __init__(
        self,
        channel: Channel,
        data: bytes,
        priority: Optional[PriorityFee] = None,
        keypair: Optional[Keypair] = None,
        profile: Optional[OverheadProfile] = None,
        config: Optional[DeliveryConfig] = None,
    ) -> None:
        """
        Plan a transmission.

        Args:
            channel: Channel to deliver through.
            data: Payload to store.
            priority: Optional priority fee directives for every message.
            keypair: Buffer keypair (generated if omitted).
            profile: Channel size budget; its dynamic overhead is derived from
                the priority directives when omitted.
            config: Delivery engine configuration.

        Raises:
            PlanningError: If the payload cannot be split under the profile.
        """
        self.channel = channel
        self.data = bytes(data)
        self.keypair = keypair or Keypair.generate()
        self.directives = tuple((priority or PriorityFee()).directives())
        self.profile = profile or OverheadProfile.with_directives(self.directives)
        self.plan = plan(self.data, self.profile)
        self.engine = DeliveryEngine(channel, config)
        self.state = TransmissionState.PLANNED
        self.history: list[TransmissionState] = [self.state]
        self._write_messages: list[Message] = []

    @property
    def address(self) -> bytes:
        """Address of the receiving storage."""
        return self.keypair.address

    @property
    def address_str(self) -> str:
        return encode_address(self.address)

    @property
    def checksum(self) -> bytes:
        """SHA-256 of the payload."""
        return self.plan.checksum

    @property
    def frames(self) -> tuple[Frame, ...]:
        return self.plan.frames

    # MARK: - Messages

    def create_initialize_message(self, authority: AddressLike) -> Message:
        """Allocate storage and write the first frame."""
        return self._assemble(
            authority,
            [initialize(self.address, self.plan.first_frame)],
            allocation=StorageAllocation(address=self.address, space=self.plan.storage_size),
        )

    def create_assign_message(self, authority: AddressLike, new_authority: AddressLike) -> Message:
        """Hand write and close rights to a new authority."""
        return self._assemble(authority, [assign(self.address, new_authority)])

    def create_write_messages(
        self,
        authority: AddressLike,
        frames: Optional[Sequence[Frame]] = None,
    ) -> list[Message]:
        """One Write message per frame (all frames after the first by default)."""
        if frames is None:
            frames = self.plan.write_frames
        return [self._assemble(authority, [write(self.address, frame)]) for frame in frames]

    def create_close_message(self, authority: AddressLike) -> Message:
        """Release the storage."""
        return self._assemble(authority, [close(self.address)])

    def _assemble(self, authority: AddressLike, operations, allocation=None) -> Message:
        return assemble(
            authority,
            operations,
            directives=self.directives,
            allocation=allocation,
            profile=self.profile,
        )

    # MARK: - Delivery

    async def upload(self, authority: Keypair) -> UploadResult:
        """
        Initialize storage, write every frame, reconcile and verify.

        Args:
            authority: Keypair that pays for and owns the storage.

        Returns:
            UploadResult with per-phase reports.

        Raises:
            DeliveryError: If initialization fails or frames stay missing.
            IntegrityError: If the stored payload does not match the checksum.
        """
        self._require(TransmissionState.PLANNED)

        # Build every message before touching the channel
        init_message = self.create_initialize_message(authority.address)
        self._write_messages = self.create_write_messages(authority.address)

        try:
            self._transition(TransmissionState.INITIALIZING)
            log.info("initializing %s (%d bytes, %d frames)",
                     self.address_str, len(self.data), len(self.frames))
            init_report = await self.engine.broadcast(
                [init_message],
                [authority, self.keypair],
            )
            if not init_report.ok:
                raise DeliveryError(f"Initialize failed: {init_report.first_error()}")

            self._transition(TransmissionState.WRITING)
            write_report = await self.engine.broadcast(self._write_messages, [authority])

            self._transition(TransmissionState.RECONCILING)
            reconcile_report = await self.engine.reconcile(
                self.address, self._write_messages, [authority], on_phase=self._transition
            )

            await self.engine.verify(self.address, self.checksum, len(self.data))
        except ShardBufferError:
            self._transition(TransmissionState.FAILED)
            raise

        self._transition(TransmissionState.VERIFIED)
        log.info("verified %s", self.address_str)
        return UploadResult(
            address=self.address,
            checksum=self.checksum,
            frame_count=len(self.frames),
            initialize=init_report,
            writes=write_report,
            reconcile=reconcile_report,
        )

    async def assign(self, authority: Keypair, new_authority: AddressLike) -> BroadcastReport:
        """Transfer the storage to a new authority."""
        if self.state in (TransmissionState.PLANNED, TransmissionState.CLOSED):
            raise TransmissionStateError(f"Cannot assign in state {self.state.value}")

        report = await self.engine.broadcast(
            [self.create_assign_message(authority.address, new_authority)], [authority]
        )
        if not report.ok:
            raise DeliveryError(f"Assign failed: {report.first_error()}")
        return report

    async def fetch(self) -> Optional[bytes]:
        """Currently stored payload bytes (None if nothing is stored)."""
        return await self.engine.read_content(self.address)

    async def verify(self) -> bytes:
        """Re-check the stored payload against the checksum."""
        return await self.engine.verify(self.address, self.checksum, len(self.data))

    async def close(self, authority: Keypair) -> BroadcastReport:
        """Release the storage; the transmission is finished afterwards."""
        self._require(TransmissionState.VERIFIED, TransmissionState.FAILED)

        report = await self.engine.broadcast(
            [self.create_close_message(authority.address)], [authority]
        )
        if not report.ok:
            raise DeliveryError(f"Close failed: {report.first_error()}")

        self._transition(TransmissionState.CLOSED)
        log.info("closed %s", self.address_str)
        return report

    def _transition(self, state: TransmissionState) -> None:
        log.debug("%s: %s -> %s", self.address_str, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _require(self, *states: TransmissionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise TransmissionStateError(
                f"Transmission is {self.state.value}, expected {allowed}"
            )
