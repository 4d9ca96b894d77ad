"""LangGraph construction for the tool-calling loop.

    llm_call ──(text)──────────────▶ final ──▶ END
        │
        ├──(tool calls)──▶ tool_calls ──▶ tool_execution ──▶ llm_call
        │
        └──(tool calls, budget spent)──▶ budget_exceeded
"""

from __future__ import annotations

from typing import Any, Dict, Protocol

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from tab_agent_core.flows.state import LoopState


class LoopNodes(Protocol):
    async def llm_call(self, state: LoopState) -> Dict[str, Any]:
        ...

    async def record_tool_calls(self, state: LoopState) -> Dict[str, Any]:
        ...

    async def execute_tools(self, state: LoopState) -> Dict[str, Any]:
        ...

    async def finalize(self, state: LoopState) -> Dict[str, Any]:
        ...

    async def budget_exceeded(self, state: LoopState) -> Dict[str, Any]:
        ...


def route_after_llm(state: LoopState) -> str:
    if not state.get("pending_calls"):
        return "final"
    if state.get("rounds", 0) >= state.get("max_rounds", 0):
        return "budget_exceeded"
    return "tool_calls"


def recursion_limit_for(max_rounds: int) -> int:
    # 每轮工具调用经过 3 个节点，最后一次 llm_call + final 再加 2 个
    return max_rounds * 3 + 5


def build_graph(nodes: LoopNodes) -> CompiledStateGraph:
    graph = StateGraph(LoopState)
    graph.add_node("llm_call", nodes.llm_call)
    graph.add_node("tool_calls", nodes.record_tool_calls)
    graph.add_node("tool_execution", nodes.execute_tools)
    graph.add_node("final", nodes.finalize)
    graph.add_node("budget_exceeded", nodes.budget_exceeded)
    graph.set_entry_point("llm_call")
    graph.add_conditional_edges(
        "llm_call",
        route_after_llm,
        {"final": "final", "tool_calls": "tool_calls", "budget_exceeded": "budget_exceeded"},
    )
    graph.add_edge("tool_calls", "tool_execution")
    graph.add_edge("tool_execution", "llm_call")
    graph.add_edge("final", END)
    graph.add_edge("budget_exceeded", END)
    return graph.compile()
