"""Chat layer: model client, tools, outcomes and the conversation orchestrator."""

from .llm import ChatModel, ToolRun
from .orchestrator import ChatReply, ConversationOrchestrator, PendingAttachmentStore, PendingContext
from .results import Failure, Outcome, summarize
from .tools import ToolRegistry, build_registry

__all__ = [
    "ChatModel",
    "ToolRun",
    "ChatReply",
    "ConversationOrchestrator",
    "PendingAttachmentStore",
    "PendingContext",
    "Failure",
    "Outcome",
    "summarize",
    "ToolRegistry",
    "build_registry",
]
