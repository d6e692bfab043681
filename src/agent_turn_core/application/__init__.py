"""Application layer."""

from agent_turn_core.application.cancellation import CancellationSignal
from agent_turn_core.application.models import (
    ConfirmationDetails,
    ConfirmationKind,
    ConfirmationOutcome,
    FunctionResponse,
    ToolCall,
    ToolCallRequest,
    ToolCallStatus,
    ToolResult,
)
from agent_turn_core.application.tools import (
    BaseTool,
    ToolNotFoundError,
    ToolRegistrationError,
    ToolRegistry,
)
from agent_turn_core.application.policy import ApprovalMode, ApprovalPolicy
from agent_turn_core.application.scheduler import (
    DuplicateCallIdError,
    InvalidConfirmationError,
    SchedulerBusyError,
    ToolCallNotFoundError,
    ToolCallScheduler,
)
from agent_turn_core.application.turn import (
    ContentGenerator,
    FunctionCall,
    ModelChunk,
    Turn,
    TurnEvent,
    TurnEventType,
)
from agent_turn_core.application.conversation import (
    ConversationService,
    TurnInProgressError,
)

__all__ = [
    "ApprovalMode",
    "ApprovalPolicy",
    "BaseTool",
    "CancellationSignal",
    "ConfirmationDetails",
    "ConfirmationKind",
    "ConfirmationOutcome",
    "ContentGenerator",
    "ConversationService",
    "DuplicateCallIdError",
    "FunctionCall",
    "FunctionResponse",
    "InvalidConfirmationError",
    "ModelChunk",
    "SchedulerBusyError",
    "ToolCall",
    "ToolCallNotFoundError",
    "ToolCallRequest",
    "ToolCallScheduler",
    "ToolCallStatus",
    "ToolNotFoundError",
    "ToolRegistrationError",
    "ToolRegistry",
    "ToolResult",
    "Turn",
    "TurnEvent",
    "TurnEventType",
    "TurnInProgressError",
]
