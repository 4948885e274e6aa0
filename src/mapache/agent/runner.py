"""
Agent Runner - the reasoning engine behind POST /run.

A LangGraph ReAct loop: the `agent` node calls the chat model with every
available tool bound (hosted-remote MCP declarations plus the tools of each
connected MCP session), the `tools` node executes local tool calls, and the
loop ends when the model answers without local tool calls. Hosted MCP calls are
executed by the OpenAI Responses API itself and only show up in the trace.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Optional, Sequence, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.prebuilt import ToolNode, tools_condition
from loguru import logger

from mapache.config.settings import BridgeSettings
from mapache.tools.mcp_tool import remote_tools_for
from mapache.tools.registry import ToolRegistrySnapshot

HOSTED_CALL_TYPES = {"mcp_call", "server_tool_call"}


class AgentState(TypedDict):
    messages: Annotated[List[BaseMessage], add_messages]


@dataclass
class RunResult:
    output: str
    tool_events: List[Dict[str, Any]] = field(default_factory=list)
    citations: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"output": self.output, "toolEvents": self.tool_events, "citations": self.citations}


def message_text(message: BaseMessage) -> str:
    content = getattr(message, "content", "")
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") in ("text", "output_text"):
            parts.append(str(block.get("text") or ""))
    return "".join(parts)


def _content_blocks(message: BaseMessage) -> List[Dict[str, Any]]:
    content = getattr(message, "content", None)
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def _hosted_calls(message: AIMessage) -> List[Dict[str, Any]]:
    found = [b for b in _content_blocks(message) if b.get("type") in HOSTED_CALL_TYPES]
    # Older langchain-openai releases park built-in tool output here instead.
    for item in message.additional_kwargs.get("tool_outputs", []) or []:
        if isinstance(item, dict) and item.get("type") in HOSTED_CALL_TYPES:
            found.append(item)
    return found


def extract_tool_events(messages: Sequence[BaseMessage]) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    for msg in messages:
        if isinstance(msg, AIMessage):
            for call in msg.tool_calls or []:
                events.append({"type": "tool_call", "name": call.get("name"), "args": call.get("args"), "id": call.get("id")})
            for block in _hosted_calls(msg):
                events.append(
                    {
                        "type": "hosted_mcp_call",
                        "serverLabel": block.get("server_label"),
                        "name": block.get("name"),
                        "arguments": block.get("arguments") or block.get("args"),
                        "output": block.get("output"),
                        "error": block.get("error"),
                    }
                )
        elif isinstance(msg, ToolMessage):
            events.append(
                {
                    "type": "tool_result",
                    "name": msg.name,
                    "toolCallId": msg.tool_call_id,
                    "status": getattr(msg, "status", "success"),
                    "content": msg.content if isinstance(msg.content, str) else message_text(msg),
                }
            )
    return events


def extract_citations(message: BaseMessage) -> List[Dict[str, Any]]:
    citations: List[Dict[str, Any]] = []
    for block in _content_blocks(message):
        for ann in block.get("annotations", []) or []:
            if isinstance(ann, dict):
                citations.append(ann)
    return citations


class AgentRunner:
    """Builds and runs the agent graph against the current registry snapshot."""

    def __init__(self, settings: BridgeSettings, *, llm: Any = None) -> None:
        self._settings = settings
        self._llm = llm
        self._graph_for: Optional[ToolRegistrySnapshot] = None
        self._graph: Any = None

    @property
    def name(self) -> str:
        return self._settings.agent_name

    def _get_llm(self) -> Any:
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=self._settings.openai_model,
                api_key=self._settings.openai_api_key,
                use_responses_api=True,
            )
        return self._llm

    def build_graph(self, snapshot: ToolRegistrySnapshot) -> Any:
        local_tools = [
            tool.as_langchain_tool()
            for client in snapshot.clients
            for tool in remote_tools_for(client, snapshot.tools_for(client.name))
        ]
        bound: List[Any] = [*snapshot.hosted_declarations(), *local_tools]
        llm = self._get_llm()
        model = llm.bind_tools(bound) if bound else llm
        instructions = self._settings.agent_instructions

        async def agent_node(state: AgentState) -> Dict[str, Any]:
            response = await model.ainvoke([SystemMessage(content=instructions), *state["messages"]])
            return {"messages": [response]}

        graph = StateGraph(AgentState)
        graph.add_node("agent", agent_node)
        graph.set_entry_point("agent")
        if local_tools:
            graph.add_node("tools", ToolNode(local_tools, handle_tool_errors=True))
            graph.add_conditional_edges("agent", tools_condition, {"tools": "tools", END: END})
            graph.add_edge("tools", "agent")
        else:
            graph.add_edge("agent", END)

        logger.info(
            f"Agent graph built: hosted={len(snapshot.hosted)} local_tools={len(local_tools)}"
        )
        return graph.compile()

    def _graph_for_snapshot(self, snapshot: ToolRegistrySnapshot) -> Any:
        if self._graph is None or self._graph_for is not snapshot:
            self._graph = self.build_graph(snapshot)
            self._graph_for = snapshot
        return self._graph

    async def run(self, prompt: str, snapshot: ToolRegistrySnapshot) -> RunResult:
        graph = self._graph_for_snapshot(snapshot)
        final_state = await graph.ainvoke(
            {"messages": [HumanMessage(content=prompt)]},
            config={"recursion_limit": int(self._settings.agent_recursion_limit)},
        )
        produced = list(final_state["messages"])[1:]
        last = produced[-1] if produced else AIMessage(content="")
        return RunResult(
            output=message_text(last),
            tool_events=extract_tool_events(produced),
            citations=extract_citations(last),
        )
