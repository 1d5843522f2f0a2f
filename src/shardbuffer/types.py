"""Type definitions and protocol constants for ShardBuffer."""

from typing import Optional


# Channel constants
MAX_MESSAGE_SIZE = 1232
INIT_OVERHEAD = 358
WRITE_OVERHEAD = 208

# Priority directive accounting
DIRECTIVE_BASE_OVERHEAD = 20
DIRECTIVE_OVERHEAD = 8

# Frame encoding
OFFSET_SIZE = 3  # u24 little-endian
MAX_OFFSET = 0xFFFFFF

# Receiving store layout
ADDRESS_SIZE = 32
STORAGE_HEADER_SIZE = ADDRESS_SIZE  # authority address precedes the payload
CHECKSUM_SIZE = 32  # SHA-256

# Signature constants
SIGNATURE_SIZE = 64


# Exception types
class ShardBufferError(Exception):
    """Base exception for ShardBuffer errors."""
    pass


class PlanningError(ShardBufferError):
    """Payload cannot be split under the given overhead profile."""
    pass


class BuildError(ShardBufferError):
    """Malformed operand for an operation record."""
    pass


class AssemblyError(ShardBufferError):
    """Message cannot be assembled (oversized, empty or unsigned)."""
    pass


class SubmissionError(ShardBufferError):
    """Channel rejected or failed to relay a message."""

    def __init__(self, message: str, signature: Optional[str] = None) -> None:
        self.signature = signature
        super().__init__(message)


class WindowExpiredError(SubmissionError):
    """Message was submitted with an expired validity window."""
    pass


class ConfirmationTimeout(ShardBufferError):
    """Validity window elapsed before the message was confirmed."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Confirmation timed out for {signature}")


class DeliveryError(ShardBufferError):
    """Delivery failed terminally."""
    pass


class FramesMissingError(DeliveryError):
    """Frames still absent from storage after the reconciliation bound."""

    def __init__(self, offsets: list[int], rounds: int) -> None:
        self.offsets = offsets
        self.rounds = rounds
        super().__init__(
            f"{len(offsets)} frame(s) still missing after {rounds} reconciliation round(s)"
        )


class IntegrityError(ShardBufferError):
    """Stored content does not hash to the planned checksum."""

    def __init__(self, expected: bytes, actual: bytes) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: expected {expected.hex()}, got {actual.hex()}")


class TransmissionStateError(ShardBufferError):
    """Operation not allowed in the current transmission state."""
    pass
