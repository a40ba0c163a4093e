"""
LangGraph implementation of the agent step loop.

Each reasoning step runs through these nodes:
- model_node: One model call with the tool schemas
- tools_node: Executes the proposed tool calls against the sandbox
- record_node: Submits the step's ordered messages to the audit sink

The loop ends when a step proposes no tool calls, when the model cannot be
invoked, or when the step budget is spent (a soft cutoff that still returns
whatever text has accrued).
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from langgraph.graph import StateGraph, END

from edit_worker.sandbox.executor import CONCURRENT_TOOLS, tool_definitions
from edit_worker.schemas import ModelTurn, ThreadMessage, ToolInvocation, ToolOutcome
from edit_worker.state import AgentState, create_initial_state

logger = logging.getLogger(__name__)


DEFAULT_MAX_STEPS = 20
DEFAULT_MAX_PARALLEL_TOOLS = 4


def _load_prompt(filename: str) -> str:
    """Load a prompt template from the prompts directory."""
    prompt_path = Path(__file__).parent / "prompts" / filename
    return prompt_path.read_text(encoding="utf-8")


def build_system_prompt(app_dir: str, app_port: int, workdir: str) -> str:
    """Render the edit system prompt for a sandbox layout."""
    return _load_prompt("edit_system.txt").format(app_dir=app_dir, app_port=app_port, workdir=workdir)


def step_messages(turn: ModelTurn, invocations: List[ToolInvocation]) -> List[ThreadMessage]:
    """
    Build one step's audit batch.

    Order: every tool_call, then every tool_result, then the assistant entry.
    """
    messages = [
        ThreadMessage(role="tool_call", tool_name=invocation.name, tool_args=invocation.arguments)
        for invocation in invocations
    ]

    for invocation in invocations:
        outcome = invocation.outcome or ToolOutcome.fail("Tool was not executed")
        messages.append(
            ThreadMessage(role="tool_result", tool_name=invocation.name, tool_result=outcome.to_dict())
        )

    messages.append(ThreadMessage(role="assistant", content=turn.text, usage=turn.usage))
    return messages


def tool_batches(invocations: List[ToolInvocation]) -> List[List[ToolInvocation]]:
    """
    Split a step's tool calls into batches that run one after another.

    Consecutive read-only calls share a batch; any other call is a batch of
    its own, so writes and commands see the effects of the calls before them.
    """
    batches: List[List[ToolInvocation]] = []
    for invocation in invocations:
        concurrent = invocation.name in CONCURRENT_TOOLS
        if concurrent and batches and batches[-1][0].name in CONCURRENT_TOOLS:
            batches[-1].append(invocation)
        else:
            batches.append([invocation])
    return batches


@dataclass
class AgentRunResult:
    """What an agent run produced."""
    response: str
    steps: int
    tool_calls: int
    status: str
    error: Optional[str] = None
    budget_exhausted: bool = False


class AgentStepLoop:
    """
    Bounded tool-calling loop for one edit request.

    Args:
        llm: Client exposing ``invoke_tools(messages, tools) -> ModelTurn``
        executor: Tool executor bound to the project's sandbox
        sink: Audit sink receiving each step's messages
        thread_id: Thread the messages belong to
        max_steps: Step budget
        max_parallel_tools: Upper bound on tool calls run concurrently in one step
    """

    def __init__(
        self,
        llm: Any,
        executor: Any,
        sink: Any,
        thread_id: str,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_parallel_tools: int = DEFAULT_MAX_PARALLEL_TOOLS,
    ):
        self.llm = llm
        self.executor = executor
        self.sink = sink
        self.thread_id = thread_id
        self.max_steps = max_steps
        self.max_parallel_tools = max(1, max_parallel_tools)
        self.tools = tool_definitions()
        self._budget_exhausted = False

    # =========================================================================
    # GRAPH NODES
    # =========================================================================

    def model_node(self, state: AgentState) -> AgentState:
        """Ask the model for the next step."""
        try:
            turn = self.llm.invoke_tools(state["context"], self.tools)
        except Exception as e:
            logger.error("Model invocation failed after %d steps: %s", state["steps"], e)
            state["status"] = "failed"
            state["error"] = str(e)
            return state

        state["steps"] = state["steps"] + 1
        state["turn"] = turn
        state["invocations"] = [
            ToolInvocation.from_request(call.id, call.name, call.arguments)
            for call in turn.tool_calls
        ]
        logger.debug(
            "Step %d on thread %s: %d tool call(s)",
            state["steps"],
            self.thread_id,
            len(turn.tool_calls),
        )
        return state

    def tools_node(self, state: AgentState) -> AgentState:
        """Run the proposed tool calls in batches, then append calls and results to context."""
        turn = state["turn"]
        invocations = state["invocations"]

        outcomes: List[ToolOutcome] = []
        for batch in tool_batches(invocations):
            if len(batch) == 1:
                outcomes.append(self.executor.execute(batch[0]))
                continue
            workers = min(self.max_parallel_tools, len(batch))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                # map() yields in submission order
                outcomes.extend(pool.map(self.executor.execute, batch))

        context = list(state["context"])
        context.append({
            "role": "assistant",
            "content": turn.text,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in turn.tool_calls
            ],
        })
        for invocation, outcome in zip(invocations, outcomes):
            context.append({
                "role": "tool",
                "tool_call_id": invocation.call_id,
                "content": json.dumps(outcome.to_dict()),
            })

        state["context"] = context
        state["tool_calls"] = state["tool_calls"] + len(invocations)
        return state

    def record_node(self, state: AgentState) -> AgentState:
        """Hand the step's messages to the audit sink and decide whether to continue."""
        turn = state["turn"]
        invocations = state["invocations"]

        try:
            self.sink.submit(self.thread_id, step_messages(turn, invocations))
        except Exception:
            logger.exception("Could not queue messages for step %d of thread %s", state["steps"], self.thread_id)

        if turn.text:
            state["response"] = turn.text

        if not turn.tool_calls:
            state["status"] = "done"
        elif state["steps"] >= self.max_steps:
            logger.warning(
                "Thread %s reached the step budget (%d) before a final answer",
                self.thread_id,
                self.max_steps,
            )
            self._budget_exhausted = True
            state["status"] = "done"

        state["turn"] = None
        state["invocations"] = []
        return state

    # =========================================================================
    # ROUTING LOGIC
    # =========================================================================

    def route_after_model(self, state: AgentState) -> Literal["tools_node", "record_node", "end"]:
        if state.get("status") == "failed":
            return "end"
        if state["invocations"]:
            return "tools_node"
        return "record_node"

    def route_after_record(self, state: AgentState) -> Literal["model_node", "end"]:
        if state.get("status") == "running":
            return "model_node"
        return "end"

    # =========================================================================
    # BUILD THE GRAPH
    # =========================================================================

    def build_graph(self) -> StateGraph:
        """Build and return the LangGraph state graph."""
        graph = StateGraph(AgentState)

        # Add nodes
        graph.add_node("model_node", self.model_node)
        graph.add_node("tools_node", self.tools_node)
        graph.add_node("record_node", self.record_node)

        # Set entry point
        graph.set_entry_point("model_node")

        graph.add_conditional_edges(
            "model_node",
            self.route_after_model,
            {
                "tools_node": "tools_node",
                "record_node": "record_node",
                "end": END,
            }
        )
        graph.add_edge("tools_node", "record_node")
        graph.add_conditional_edges(
            "record_node",
            self.route_after_record,
            {
                "model_node": "model_node",
                "end": END,
            }
        )

        return graph

    def run(self, prompt: str, system_prompt: str) -> AgentRunResult:
        """
        Drive the loop to completion.

        Args:
            prompt: The user's edit request
            system_prompt: Tool descriptions and domain guidance

        Returns:
            AgentRunResult with the final text, step and tool-call counts
        """
        self._budget_exhausted = False
        graph = self.build_graph().compile()
        initial_state = create_initial_state(prompt, system_prompt)

        # Three node visits per step, plus headroom
        final_state: Dict[str, Any] = graph.invoke(
            initial_state,
            config={"recursion_limit": self.max_steps * 3 + 5},
        )

        return AgentRunResult(
            response=final_state.get("response") or "",
            steps=final_state.get("steps", 0),
            tool_calls=final_state.get("tool_calls", 0),
            status=final_state.get("status", "failed"),
            error=final_state.get("error"),
            budget_exhausted=self._budget_exhausted,
        )
