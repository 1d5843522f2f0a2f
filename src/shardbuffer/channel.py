"""
Channel interfaces for ShardBuffer.

This module provides the abstract base class the delivery engine talks to,
plus an in-memory implementation that simulates both the channel and the
receiving store. The in-memory channel can drop, reject or expire
submissions to exercise the self-healing path.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .keys import encode_address, verify_signature
from .message import (
    WINDOW_TOKEN_SIZE,
    Message,
    decode_message,
    decode_signed_message,
)
from .operations import Initialize, Assign, Write, Close
from .types import (
    STORAGE_HEADER_SIZE,
    AssemblyError,
    ConfirmationTimeout,
    SubmissionError,
    WindowExpiredError,
)

log = logging.getLogger("shardbuffer.channel")


@dataclass(frozen=True)
class ValidityWindow:
    """A finite-lifetime token a message must be signed under."""

    token: bytes
    """Opaque token embedded in the signed message."""

    last_valid_height: int
    """Last height at which messages under this token are accepted."""


@dataclass(frozen=True)
class Confirmation:
    """Confirmation of a submitted message."""

    signature: str
    """Submission identifier."""

    height: int
    """Height at which the message was applied."""


class Channel(ABC):
    """Abstract base class for the size-bounded, unreliable message channel."""

    @abstractmethod
    async def get_validity_window(self) -> ValidityWindow:
        """Obtain a fresh validity window."""
        pass

    @abstractmethod
    async def submit(self, signed_message: bytes) -> str:
        """Submit a signed message, returning its signature."""
        pass

    @abstractmethod
    async def confirm(self, signature: str, window: ValidityWindow) -> Confirmation:
        """Wait until a submission is confirmed or its window expires."""
        pass

    @abstractmethod
    async def read_storage(self, address: bytes) -> Optional[bytes]:
        """Fetch the current stored bytes at an address (None if absent)."""
        pass


class InMemoryChannel(Channel):
    """
    In-memory channel and receiving store.

    Stored layout is the 32-byte authority address followed by the payload.
    Messages matching ``drop`` are accepted and confirmed but never applied,
    messages matching ``reject`` fail at submission, messages matching
    ``stall`` never land (confirmation waits out the window), and
    ``on_submit`` runs before every submission (e.g. to expire windows mid-batch).
    """

    def __init__(self, window_lifetime: int = 150, latency: float = 0.0) -> None:
        self.window_lifetime = window_lifetime
        self.latency = latency
        self.height = 0
        self.drop: Optional[Callable[[Message], bool]] = None
        self.reject: Optional[Callable[[Message], bool]] = None
        self.stall: Optional[Callable[[Message], bool]] = None
        self.on_submit: Optional[Callable[[Message], None]] = None
        self.submitted: list[Message] = []
        self.dropped: list[Message] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self._storage: dict[bytes, bytearray] = {}
        self._windows: dict[bytes, int] = {}
        self._results: dict[str, tuple[int, Optional[str]]] = {}
        self._stalled: set[str] = set()

    # MARK: - Channel

    async def get_validity_window(self) -> ValidityWindow:
        self._prune_windows()
        token = os.urandom(WINDOW_TOKEN_SIZE)
        last_valid = self.height + self.window_lifetime
        self._windows[token] = last_valid
        return ValidityWindow(token=token, last_valid_height=last_valid)

    async def submit(self, signed_message: bytes) -> str:
        await asyncio.sleep(0)

        try:
            signed = decode_signed_message(signed_message)
            message, token = decode_message(signed.payload)
        except AssemblyError as e:
            raise SubmissionError(f"Malformed submission: {e}")

        signature = signed.signature
        for address, sig in signed.signatures:
            if not verify_signature(address, sig, signed.payload):
                raise SubmissionError(f"Invalid signature from {encode_address(address)}", signature)
        signed_by = {address for address, _ in signed.signatures}
        for address in message.required_signers():
            if address not in signed_by:
                raise SubmissionError(f"Missing signature: {encode_address(address)}", signature)

        if self.on_submit is not None:
            self.on_submit(message)

        last_valid = self._windows.get(token)
        if last_valid is None or last_valid < self.height:
            raise WindowExpiredError("Validity window expired", signature)

        if self.reject is not None and self.reject(message):
            raise SubmissionError("Submission rejected", signature)

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        self.submitted.append(message)

        if self.stall is not None and self.stall(message):
            self._stalled.add(signature)
            return signature

        if self.drop is not None and self.drop(message):
            self.dropped.append(message)
            self._results[signature] = (self.height, None)
        else:
            self._results[signature] = (self.height, self._execute(message))
        return signature

    async def confirm(self, signature: str, window: ValidityWindow) -> Confirmation:
        await asyncio.sleep(self.latency)

        if signature in self._stalled:
            self._stalled.discard(signature)
            self.in_flight = max(0, self.in_flight - 1)
            self.height = max(self.height, window.last_valid_height + 1)
            self._prune_windows()
            raise ConfirmationTimeout(signature)

        result = self._results.pop(signature, None)
        if result is None:
            if window.last_valid_height < self.height:
                raise ConfirmationTimeout(signature)
            raise SubmissionError("Unknown submission", signature)

        self.in_flight = max(0, self.in_flight - 1)
        height, error = result
        if error is not None:
            raise SubmissionError(f"Execution failed: {error}", signature)
        return Confirmation(signature=signature, height=height)

    async def read_storage(self, address: bytes) -> Optional[bytes]:
        await asyncio.sleep(0)
        stored = self._storage.get(address)
        return bytes(stored) if stored is not None else None

    # MARK: - Simulation controls

    def advance(self, blocks: int = 1) -> None:
        """Advance the channel height."""
        self.height += blocks

    def expire_windows(self) -> None:
        """Move the height past every window issued so far."""
        if self._windows:
            self.height = max(self._windows.values()) + 1
        self._prune_windows()

    def _prune_windows(self) -> None:
        """Forget tokens whose last valid height has passed."""
        self._windows = {
            token: last_valid
            for token, last_valid in self._windows.items()
            if last_valid >= self.height
        }

    def tamper(self, address: bytes, offset: int, data: bytes) -> None:
        """Overwrite stored payload bytes directly, bypassing the channel."""
        stored = self._storage[address]
        start = STORAGE_HEADER_SIZE + offset
        stored[start : start + len(data)] = data

    # MARK: - Receiving store

    def _execute(self, message: Message) -> Optional[str]:
        """Apply a message atomically, returning an error string on failure."""
        authority = message.fee_payer
        sizes: dict[bytes, Optional[int]] = {}
        owners: dict[bytes, bytes] = {}

        allocation = message.allocation
        if allocation is not None:
            if allocation.address in self._storage:
                return "Storage already in use"
            sizes[allocation.address] = allocation.space
            owners[allocation.address] = bytes(STORAGE_HEADER_SIZE)

        # Validate every operation before touching storage
        for op in message.operations:
            if op.buffer not in sizes:
                stored = self._storage.get(op.buffer)
                sizes[op.buffer] = len(stored) if stored is not None else None
                if stored is not None:
                    owners[op.buffer] = bytes(stored[:STORAGE_HEADER_SIZE])

            size = sizes[op.buffer]
            if size is None:
                return f"No storage at {encode_address(op.buffer)}"
            if not isinstance(op, Initialize) and owners[op.buffer] != authority:
                return "Invalid authority"

            if isinstance(op, Initialize):
                if STORAGE_HEADER_SIZE + len(op.frame.data) > size:
                    return "Initialize exceeds storage"
                owners[op.buffer] = authority
            elif isinstance(op, Assign):
                owners[op.buffer] = op.new_authority
            elif isinstance(op, Write):
                if STORAGE_HEADER_SIZE + op.frame.end > size:
                    return "Write exceeds storage"
            elif isinstance(op, Close):
                sizes[op.buffer] = None

        if allocation is not None:
            self._storage[allocation.address] = bytearray(allocation.space)

        for op in message.operations:
            if isinstance(op, Close):
                del self._storage[op.buffer]
                continue

            stored = self._storage[op.buffer]
            if isinstance(op, Initialize):
                stored[:STORAGE_HEADER_SIZE] = authority
                stored[STORAGE_HEADER_SIZE : STORAGE_HEADER_SIZE + len(op.frame.data)] = op.frame.data
            elif isinstance(op, Assign):
                stored[:STORAGE_HEADER_SIZE] = op.new_authority
            elif isinstance(op, Write):
                start = STORAGE_HEADER_SIZE + op.frame.offset
                stored[start : start + len(op.frame.data)] = op.frame.data

        log.debug("applied %d operation(s) at height %d", len(message.operations), self.height)
        return None
