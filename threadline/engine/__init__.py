"""Conversation engine: context assembly, the agentic loop and compaction."""

from threadline.engine.context import ContextAssembler
from threadline.engine.loop import AgenticLoop, LoopResult, ToolStatus
from threadline.engine.summarizer import Summarizer
from threadline.engine.turn import ChatEngine

__all__ = [
    "AgenticLoop",
    "ChatEngine",
    "ContextAssembler",
    "LoopResult",
    "Summarizer",
    "ToolStatus",
]
