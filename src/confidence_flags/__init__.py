"""Confidence feature flag client library."""

from .client import ConfidenceClient
from .coercion import coerce, coerce_with_error
from .config import ConfidenceOptions, Region, build_options, deep_merge, load_options
from .context import EvaluationContext
from .dot_notation import extract_flag_value, navigate, parse
from .exceptions import ConfidenceError, ConfidenceErrorCodes
from .logger import new_logger, null_logger
from .models import (
    ClientIdentity,
    Event,
    EventBatch,
    ResolutionOutcome,
    ResolvedFlag,
    ResolveReason,
    ResolveRequest,
    ResolveResponse,
    SdkId,
    SdkInfo,
)
from .provider import (
    AssignmentSink,
    ConfidenceProvider,
    FlagProvider,
    InMemoryProvider,
    LocalProvider,
    LocalResolver,
    ProviderState,
)
from .resolver import FlagResolver
from .telemetry import (
    AssignmentInfo,
    AssignmentLogger,
    DefaultAssignment,
    DefaultAssignmentReason,
    FlagAssignedEvent,
    FlagAssignment,
    FlagToApply,
    build_assignment_event,
)
from .transport import (
    EventTransport,
    HttpEventTransport,
    HttpResolveTransport,
    InMemoryResolveTransport,
    ResolveTransport,
)
from .values import DynamicValue, ValueKind

__all__ = [
    "AssignmentInfo",
    "AssignmentLogger",
    "AssignmentSink",
    "ClientIdentity",
    "ConfidenceClient",
    "ConfidenceError",
    "ConfidenceErrorCodes",
    "ConfidenceOptions",
    "ConfidenceProvider",
    "DefaultAssignment",
    "DefaultAssignmentReason",
    "DynamicValue",
    "EvaluationContext",
    "Event",
    "EventBatch",
    "EventTransport",
    "FlagAssignedEvent",
    "FlagAssignment",
    "FlagProvider",
    "FlagResolver",
    "FlagToApply",
    "HttpEventTransport",
    "HttpResolveTransport",
    "InMemoryProvider",
    "InMemoryResolveTransport",
    "LocalProvider",
    "LocalResolver",
    "ProviderState",
    "Region",
    "ResolutionOutcome",
    "ResolveReason",
    "ResolveRequest",
    "ResolveResponse",
    "ResolveTransport",
    "ResolvedFlag",
    "SdkId",
    "SdkInfo",
    "ValueKind",
    "build_assignment_event",
    "build_options",
    "coerce",
    "coerce_with_error",
    "deep_merge",
    "extract_flag_value",
    "load_options",
    "navigate",
    "new_logger",
    "null_logger",
    "parse",
]
