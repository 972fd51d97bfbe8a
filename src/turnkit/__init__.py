"""
turnkit - a provider-neutral agent loop for LLM tool use.

Streams responses from OpenAI or Anthropic as one canonical event model,
runs the tools the model asks for, persists the conversation as a
branching tree, and keeps long conversations inside the context window.

Example:
    from turnkit import AgentLoop, OpenAIAdapter, SessionManager, create_builtin_tools

    manager = SessionManager("~/.turnkit/sessions")
    loop = AgentLoop(
        adapter=OpenAIAdapter(model="gpt-4o"),
        session=manager.create(),
        tools=create_builtin_tools(),
    )

    result = await loop.run("What files are in this directory?")
    print(result.text)
"""

from turnkit.accumulator import ToolCallAccumulator
from turnkit.adapters import (
    AdapterRegistry,
    AnthropicAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    ScriptedAdapter,
    ToolDefinition,
    TurnRequest,
    create_default_registry,
)
from turnkit.agent import AgentLoop, LoopResult
from turnkit.compaction import (
    CompactionPolicy,
    Compactor,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)
from turnkit.config import AgentConfig, DispatcherConfig, RetryPolicy
from turnkit.credentials import (
    CredentialResolver,
    EnvCredentialResolver,
    StaticCredentialResolver,
)
from turnkit.dispatcher import ToolDispatcher
from turnkit.errors import (
    AgentAbortedError,
    CompactionError,
    DuplicateExecutionError,
    InvalidTransitionError,
    LoopBusyError,
    ProviderError,
    SessionLoadError,
    SessionLockedError,
    ToolExecutionError,
    ToolValidationError,
    TurnkitError,
)
from turnkit.events import (
    AFTER_TOOL_RESULT,
    AGENT_END,
    AGENT_START,
    BEFORE_TOOL_CALL,
    COMPACTION,
    FOLLOW_UP,
    MESSAGE_APPENDED,
    STEERING,
    STREAM_EVENT,
    TOOL_EXECUTION_UPDATE,
    TURN_END,
    TURN_START,
    AgentEvent,
    EventBus,
    StreamEvent,
    ToolCallEventResult,
    ToolResultEventResult,
)
from turnkit.logging import get_logger, setup_logging
from turnkit.model_registry import ModelDefinition, ModelRegistry, TokenUsage
from turnkit.models import (
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolResultBlock,
)
from turnkit.session import Session, SessionManager, SessionStore
from turnkit.steering import CancellationToken, SteeringQueue
from turnkit.tools import (
    BashTool,
    FunctionTool,
    ReadTool,
    Tool,
    ToolOutput,
    ToolRegistry,
    create_builtin_tools,
    tool,
)

__version__ = "0.1.0"

__all__ = [
    # Agent loop
    "AgentLoop",
    "LoopResult",
    "AgentConfig",
    "DispatcherConfig",
    "RetryPolicy",
    # Adapters
    "AdapterRegistry",
    "AnthropicAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ScriptedAdapter",
    "ToolDefinition",
    "TurnRequest",
    "create_default_registry",
    # Credentials
    "CredentialResolver",
    "EnvCredentialResolver",
    "StaticCredentialResolver",
    # Events
    "AFTER_TOOL_RESULT",
    "AGENT_END",
    "AGENT_START",
    "BEFORE_TOOL_CALL",
    "COMPACTION",
    "FOLLOW_UP",
    "MESSAGE_APPENDED",
    "STEERING",
    "STREAM_EVENT",
    "TOOL_EXECUTION_UPDATE",
    "TURN_END",
    "TURN_START",
    "AgentEvent",
    "EventBus",
    "StreamEvent",
    "ToolCallEventResult",
    "ToolResultEventResult",
    # Messages and tool calls
    "Message",
    "ReasoningBlock",
    "TextBlock",
    "ToolCall",
    "ToolCallBlock",
    "ToolResultBlock",
    "ToolCallAccumulator",
    "ToolDispatcher",
    # Sessions and compaction
    "Session",
    "SessionManager",
    "SessionStore",
    "CompactionPolicy",
    "Compactor",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "estimate_tokens",
    # Steering
    "CancellationToken",
    "SteeringQueue",
    # Tools
    "BashTool",
    "FunctionTool",
    "ReadTool",
    "Tool",
    "ToolOutput",
    "ToolRegistry",
    "create_builtin_tools",
    "tool",
    # Models
    "ModelDefinition",
    "ModelRegistry",
    "TokenUsage",
    # Errors
    "AgentAbortedError",
    "CompactionError",
    "DuplicateExecutionError",
    "InvalidTransitionError",
    "LoopBusyError",
    "ProviderError",
    "SessionLoadError",
    "SessionLockedError",
    "ToolExecutionError",
    "ToolValidationError",
    "TurnkitError",
    # Logging
    "get_logger",
    "setup_logging",
]
