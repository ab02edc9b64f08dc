"""Protocol-agnostic building blocks: data model, IDs, errors, config and auth."""

from __future__ import annotations

from lmproxy.core.auth import AuthMatcher, WireProtocol, build_matchers
from lmproxy.core.config import GatewayConfig
from lmproxy.core.errors import (
    AuthError,
    GatewayError,
    NotFoundError,
    StatefulContinuationError,
    UpstreamError,
    ValidationError,
    error_from_status,
)
from lmproxy.core.ids import IdNamespace, generate_id
from lmproxy.core.models import (
    ChatRequest,
    CompletionResult,
    DataPart,
    End,
    Failed,
    Part,
    Role,
    StreamFragment,
    TextDelta,
    TextPart,
    ToolCallDelta,
    ToolCallPart,
    ToolCallResult,
    ToolChoicePolicy,
    ToolResultPart,
    ToolSpec,
    UnifiedMessage,
    Usage,
)

__all__ = [
    "AuthError",
    "AuthMatcher",
    "ChatRequest",
    "CompletionResult",
    "DataPart",
    "End",
    "Failed",
    "GatewayConfig",
    "GatewayError",
    "IdNamespace",
    "NotFoundError",
    "Part",
    "Role",
    "StatefulContinuationError",
    "StreamFragment",
    "TextDelta",
    "TextPart",
    "ToolCallDelta",
    "ToolCallPart",
    "ToolCallResult",
    "ToolChoicePolicy",
    "ToolResultPart",
    "ToolSpec",
    "UnifiedMessage",
    "Usage",
    "UpstreamError",
    "ValidationError",
    "WireProtocol",
    "build_matchers",
    "error_from_status",
    "generate_id",
]
