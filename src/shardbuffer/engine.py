"""
Delivery engine for ShardBuffer.

Broadcasts messages with bounded concurrency, confirms each one, and then
reconciles the receiving store against what was sent: any Write whose bytes
are not observed in storage is resubmitted until storage matches or the
round limit is reached.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .channel import Channel, ValidityWindow
from .keys import Keypair, encode_address
from .message import Message, sign_message
from .models import (
    BroadcastReport,
    ReconcileReport,
    SubmissionOutcome,
    SubmissionStatus,
    TransmissionState,
)
from .operations import decode_operation
from .planner import compute_checksum
from .types import (
    STORAGE_HEADER_SIZE,
    ConfirmationTimeout,
    FramesMissingError,
    IntegrityError,
    SubmissionError,
    WindowExpiredError,
)

log = logging.getLogger("shardbuffer.engine")


@dataclass
class DeliveryConfig:
    """Configuration for the delivery engine."""

    concurrency: int = 20
    """Maximum submissions in flight at once."""

    max_reconcile_rounds: int = 5
    """Maximum resubmission passes before giving up."""

    max_window_refreshes: int = 3
    """Fresh validity windows a single message may request."""

    fail_fast: bool = False
    """Stop queued submissions after the first failure."""

    settle_delay: float = 0.0
    """Seconds to wait before reading storage during reconciliation."""

    backoff_factor: float = 2.0
    """Multiplier applied to the settle delay after each round."""

    @classmethod
    def fail_fast_batch(cls, concurrency: int = 20) -> "DeliveryConfig":
        """Abort queued submissions as soon as one fails."""
        return cls(concurrency=concurrency, fail_fast=True)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_reconcile_rounds < 0:
            raise ValueError(f"max_reconcile_rounds must be non-negative, got {self.max_reconcile_rounds}")
        if self.max_window_refreshes < 0:
            raise ValueError(f"max_window_refreshes must be non-negative, got {self.max_window_refreshes}")
        if self.settle_delay < 0:
            raise ValueError(f"settle_delay must be non-negative, got {self.settle_delay}")
        if self.backoff_factor < 0:
            raise ValueError(f"backoff_factor must be non-negative, got {self.backoff_factor}")


class _Batch:
    """Validity window shared by every submission of one broadcast."""

    def __init__(self, window: ValidityWindow) -> None:
        self.window = window
        self.refreshes = 0
        self._lock = asyncio.Lock()

    async def refresh(self, channel: Channel, stale: ValidityWindow) -> ValidityWindow:
        """Replace the window unless another task already did."""
        async with self._lock:
            if self.window is stale:
                self.window = await channel.get_validity_window()
                self.refreshes += 1
                log.warning(
                    "validity window expired, refreshed (valid until %d)",
                    self.window.last_valid_height,
                )
            return self.window


def stored_content(stored: bytes) -> bytes:
    """Strip the authority header from stored bytes."""
    return stored[STORAGE_HEADER_SIZE:]


def plan_retries(content: bytes, messages: Sequence[Message]) -> list[Message]:
    """
    Select the messages whose writes are not reflected in storage.

    Each Write is decoded from its serialized form to recover the offset and
    bytes it carries, then compared against the same range of the observed
    content.

    Args:
        content: Observed payload bytes (header already stripped)
        messages: Previously sent messages

    Returns:
        The mismatching messages, in input order
    """
    retries = []
    for message in messages:
        for op in message.writes():
            sent = decode_operation(op.buffer, op.encode()).frame
            if content[sent.offset : sent.end] != sent.data:
                retries.append(message)
                break
    return retries


class DeliveryEngine:
    """
    Bounded-concurrency broadcast, confirmation and reconciliation.

    Failure policy: by default failures are isolated, and every message of a
    batch is attempted and reported. With ``fail_fast`` the first failure
    stops queued submissions, which are reported as cancelled; submissions
    already in flight still run to completion.
    """

    def __init__(self, channel: Channel, config: Optional[DeliveryConfig] = None) -> None:
        self.channel = channel
        self.config = config or DeliveryConfig()

    # MARK: - Broadcast

    async def broadcast(
        self,
        messages: Sequence[Message],
        signers: Sequence[Keypair],
        window: Optional[ValidityWindow] = None,
    ) -> BroadcastReport:
        """
        Sign, submit and confirm messages with bounded concurrency.

        Args:
            messages: Messages to send, in planner order
            signers: Keypairs covering every required signer
            window: Validity window for the batch (fetched if omitted)

        Returns:
            BroadcastReport with one outcome per message, in input order
        """
        if not messages:
            return BroadcastReport()

        batch = _Batch(window or await self.channel.get_validity_window())
        semaphore = asyncio.Semaphore(self.config.concurrency)
        abort = asyncio.Event()

        async def run(index: int, message: Message) -> SubmissionOutcome:
            async with semaphore:
                outcome = SubmissionOutcome(
                    index=index, message=message, status=SubmissionStatus.CANCELLED
                )
                if abort.is_set():
                    return outcome

                try:
                    outcome.signature = await self._submit_and_confirm(
                        message, signers, batch, outcome
                    )
                    outcome.status = SubmissionStatus.CONFIRMED
                except (SubmissionError, ConfirmationTimeout) as e:
                    log.warning("message %d failed: %s", index, e)
                    outcome.status = SubmissionStatus.FAILED
                    outcome.error = e
                    if self.config.fail_fast:
                        abort.set()
                return outcome

        tasks = [asyncio.ensure_future(run(i, m)) for i, m in enumerate(messages)]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # Queued submissions stop here; in-flight ones finish before the error surfaces
            abort.set()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        report = BroadcastReport(outcomes=list(outcomes), window_refreshes=batch.refreshes)
        log.info(
            "broadcast %d message(s): %d confirmed, %d failed, %d cancelled",
            len(messages),
            len(report.confirmed()),
            len(report.failed()),
            len(report.cancelled()),
        )
        return report

    async def _submit_and_confirm(
        self,
        message: Message,
        signers: Sequence[Keypair],
        batch: _Batch,
        outcome: SubmissionOutcome,
    ) -> str:
        """Submit one message, refreshing the batch window on expiry."""
        refreshes = 0
        while True:
            window = batch.window
            signed = sign_message(message, window.token, signers)
            outcome.attempts += 1
            try:
                signature = await self.channel.submit(signed.encode())
                log.debug("submitted %s", signature)
                await self.channel.confirm(signature, window)
                log.debug("confirmed %s", signature)
                return signature
            except (WindowExpiredError, ConfirmationTimeout):
                if refreshes >= self.config.max_window_refreshes:
                    raise
                refreshes += 1
                await batch.refresh(self.channel, window)

    # MARK: - Reconciliation

    async def read_content(self, address: bytes) -> Optional[bytes]:
        """Observed payload bytes at an address, or None if nothing is stored."""
        stored = await self.channel.read_storage(address)
        if stored is None:
            return None
        return stored_content(stored)

    async def reconcile(
        self,
        address: bytes,
        messages: Sequence[Message],
        signers: Sequence[Keypair],
        on_phase: Optional[Callable[[TransmissionState], None]] = None,
    ) -> ReconcileReport:
        """
        Read storage, resubmit writes that did not land, and repeat.

        Args:
            address: Buffer address
            messages: Write messages previously sent
            signers: Keypairs covering every required signer
            on_phase: Called with WRITING before each resubmission pass and
                RECONCILING after it

        Returns:
            ReconcileReport of the resubmission passes

        Raises:
            FramesMissingError: If writes are still missing after the round limit
        """
        report = ReconcileReport()
        delay = self.config.settle_delay

        while True:
            if delay > 0:
                await asyncio.sleep(delay)
                delay *= self.config.backoff_factor

            content = await self.read_content(address)
            if content is None:
                offsets = [op.frame.offset for m in messages for op in m.writes()]
                raise FramesMissingError(offsets, report.rounds)

            retries = plan_retries(content, messages)
            if not retries:
                log.info("storage at %s matches after %d round(s)",
                         encode_address(address), report.rounds)
                return report

            if report.rounds >= self.config.max_reconcile_rounds:
                offsets = [op.frame.offset for m in retries for op in m.writes()]
                raise FramesMissingError(offsets, report.rounds)

            report.rounds += 1
            log.warning("round %d: resubmitting %d mismatched frame(s)", report.rounds, len(retries))
            report.resubmitted.append(retries)
            if on_phase is not None:
                on_phase(TransmissionState.WRITING)
            # Each pass runs under its own fresh window
            report.broadcasts.append(await self.broadcast(retries, signers))
            if on_phase is not None:
                on_phase(TransmissionState.RECONCILING)

    # MARK: - Verification

    async def verify(self, address: bytes, checksum: bytes, payload_length: int) -> bytes:
        """
        Check stored content against the planned checksum.

        Returns:
            The verified payload bytes

        Raises:
            IntegrityError: If the stored payload does not hash to the checksum
        """
        content = await self.read_content(address) or b""
        actual = compute_checksum(content)
        if len(content) != payload_length or actual != checksum:
            raise IntegrityError(checksum, actual)
        return content
