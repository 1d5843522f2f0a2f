"""
ShardBuffer - Large payloads through size-bounded channels

Splits a payload into frames that fit one message each, delivers them with
bounded concurrency, self-heals dropped frames and verifies a SHA-256
checksum of the stored result.
"""

from .planner import (
    DirectiveKind,
    PriorityDirective,
    PriorityFee,
    OverheadProfile,
    Frame,
    ShardPlan,
    plan,
    compute_checksum,
    directive_overhead,
    frame_count,
    frame_from_write_data,
)
from .operations import (
    OperationKind,
    Initialize,
    Assign,
    Write,
    Close,
    Operation,
    initialize,
    assign,
    write,
    close,
    decode_operation,
)
from .message import (
    Message,
    SignedMessage,
    StorageAllocation,
    assemble,
    sign_message,
    decode_message,
    decode_signed_message,
)
from .keys import Keypair, encode_address, decode_address, verify_signature
from .types import (
    MAX_MESSAGE_SIZE,
    INIT_OVERHEAD,
    WRITE_OVERHEAD,
    MAX_OFFSET,
    STORAGE_HEADER_SIZE,
    ShardBufferError,
    PlanningError,
    BuildError,
    AssemblyError,
    SubmissionError,
    WindowExpiredError,
    ConfirmationTimeout,
    DeliveryError,
    FramesMissingError,
    IntegrityError,
    TransmissionStateError,
)
from .models import (
    TransmissionState,
    SubmissionStatus,
    SubmissionOutcome,
    BroadcastReport,
    ReconcileReport,
    UploadResult,
)
from .channel import (
    Channel,
    ValidityWindow,
    Confirmation,
    InMemoryChannel,
)
from .engine import (
    DeliveryConfig,
    DeliveryEngine,
    plan_retries,
)
from .client import ShardBuffer

__version__ = "0.1.0"

__all__ = [
    # Planner
    "DirectiveKind",
    "PriorityDirective",
    "PriorityFee",
    "OverheadProfile",
    "Frame",
    "ShardPlan",
    "plan",
    "compute_checksum",
    "directive_overhead",
    "frame_count",
    "frame_from_write_data",
    # Operations
    "OperationKind",
    "Initialize",
    "Assign",
    "Write",
    "Close",
    "Operation",
    "initialize",
    "assign",
    "write",
    "close",
    "decode_operation",
    # Message
    "Message",
    "SignedMessage",
    "StorageAllocation",
    "assemble",
    "sign_message",
    "decode_message",
    "decode_signed_message",
    # Keys
    "Keypair",
    "encode_address",
    "decode_address",
    "verify_signature",
    # Constants
    "MAX_MESSAGE_SIZE",
    "INIT_OVERHEAD",
    "WRITE_OVERHEAD",
    "MAX_OFFSET",
    "STORAGE_HEADER_SIZE",
    # Errors
    "ShardBufferError",
    "PlanningError",
    "BuildError",
    "AssemblyError",
    "SubmissionError",
    "WindowExpiredError",
    "ConfirmationTimeout",
    "DeliveryError",
    "FramesMissingError",
    "IntegrityError",
    "TransmissionStateError",
    # Models
    "TransmissionState",
    "SubmissionStatus",
    "SubmissionOutcome",
    "BroadcastReport",
    "ReconcileReport",
    "UploadResult",
    # Channel
    "Channel",
    "ValidityWindow",
    "Confirmation",
    "InMemoryChannel",
    # Engine
    "DeliveryConfig",
    "DeliveryEngine",
    "plan_retries",
    # Client
    "ShardBuffer",
]
