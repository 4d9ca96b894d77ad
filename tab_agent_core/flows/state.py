"""State definition for the tool-calling loop graph."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, TypedDict

from tab_agent_core.domain.extension_settings import ProviderSettings
from tab_agent_core.tools.definitions import ToolCall


class LoopPhase(str, Enum):
    IDLE = "IDLE"
    LLM_CALL_PENDING = "LLM_CALL_PENDING"
    TOOL_CALLS_PENDING = "TOOL_CALLS_PENDING"
    TOOL_EXECUTION_PENDING = "TOOL_EXECUTION_PENDING"
    FINAL_ANSWER = "FINAL_ANSWER"
    FAILED = "FAILED"


class LoopState(TypedDict, total=False):
    """State shared across LangGraph nodes for one user message.

    The conversation itself is not carried here: every LLM call re-reads the
    tab history from the settings document.
    """

    tab_id: Optional[str]
    provider: ProviderSettings
    tools_enabled: bool
    screenshot_tool_enabled: bool
    phase: LoopPhase
    rounds: int
    max_rounds: int
    tools_attached: bool
    assistant_text: str
    pending_calls: List[ToolCall]
    final_content: Optional[str]
