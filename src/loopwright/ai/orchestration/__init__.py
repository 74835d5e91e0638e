"""Agent turn loop and the pieces it is built from."""

# Core types
from .types import (
    CacheControl,
    ChatRequest,
    ContentBlock,
    JsonValue,
    Message,
    ModelResponse,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolResult,
    Usage,
)
from .errors import (
    AgentError,
    BufferOverflowError,
    StreamingUnsupportedError,
    TurnCancelledError,
    is_streaming_unsupported,
)

# History and outbound repair
from .history import ConversationHistory
from .validation import is_valid, repair

# Streaming reassembly
from .json_repair import JsonStreamAccumulator, is_complete_json, repair_streamed_json
from .accumulator import StreamAccumulator, ToolCallAccumulator

# Tools, caching and persistence
from .cache_control import annotate_tool_results, supports_prompt_caching
from .dispatcher import ToolDispatcher
from .persistence import ChatRepository, ChatSession, PendingWriteBuffer

# Turn loop
from .config import AgentConfiguration
from .agent import Agent, ModelClient, StreamSink, ToolCallback

__all__ = [
    "Agent",
    "AgentConfiguration",
    "AgentError",
    "BufferOverflowError",
    "CacheControl",
    "ChatRepository",
    "ChatRequest",
    "ChatSession",
    "ContentBlock",
    "ConversationHistory",
    "JsonStreamAccumulator",
    "JsonValue",
    "Message",
    "ModelClient",
    "ModelResponse",
    "PendingWriteBuffer",
    "StreamAccumulator",
    "StreamEvent",
    "StreamSink",
    "StreamingUnsupportedError",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "ToolCallback",
    "ToolDispatcher",
    "ToolResult",
    "TurnCancelledError",
    "Usage",
    "annotate_tool_results",
    "is_complete_json",
    "is_streaming_unsupported",
    "is_valid",
    "repair",
    "repair_streamed_json",
    "supports_prompt_caching",
]
