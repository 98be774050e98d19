"""
Agent client for AG-UI agents.

Posts a run request to the agent endpoint and consumes the Server-Sent Events
stream it answers with, folding AG-UI events into a trajectory. The run id
sent with the request is the id the agent stamps on its spans, which is what
the trace poller later searches for.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .models import Agent, TestCase, TrajectoryStep
from . import config

logger = logging.getLogger(__name__)


class AgentInvocationError(Exception):
    """The agent endpoint failed or reported a run error."""


@dataclass
class AgentInvocation:
    run_id: str
    thread_id: str
    trajectory: List[TrajectoryStep] = field(default_factory=list)
    event_count: int = 0
    duration_seconds: float = 0.0


class _TrajectoryBuilder:
    """Accumulates streamed AG-UI events into trajectory steps."""

    def __init__(self):
        self.steps: List[TrajectoryStep] = []
        self._text: Dict[str, List[str]] = {}
        self._thinking: List[str] = []
        self._tool_calls: Dict[str, Dict[str, Any]] = {}

    def handle(self, event: Dict[str, Any]) -> None:
        etype = event.get("type", "")

        if etype == "TEXT_MESSAGE_START":
            self._text[event.get("messageId", "")] = []
        elif etype == "TEXT_MESSAGE_CONTENT":
            self._text.setdefault(event.get("messageId", ""), []).append(event.get("delta", ""))
        elif etype == "TEXT_MESSAGE_END":
            content = "".join(self._text.pop(event.get("messageId", ""), []))
            if content:
                self.steps.append(TrajectoryStep(type="response", content=content))

        elif etype in ("THINKING_TEXT_MESSAGE_CONTENT", "THINKING_CONTENT"):
            self._thinking.append(event.get("delta", ""))
        elif etype in ("THINKING_TEXT_MESSAGE_END", "THINKING_END"):
            self._flush_thinking()

        elif etype == "TOOL_CALL_START":
            self._flush_thinking()
            self._tool_calls[event.get("toolCallId", "")] = {
                "name": event.get("toolCallName", ""),
                "args": [],
                "started": time.monotonic(),
            }
        elif etype == "TOOL_CALL_ARGS":
            call = self._tool_calls.get(event.get("toolCallId", ""))
            if call is not None:
                call["args"].append(event.get("delta", ""))
        elif etype == "TOOL_CALL_END":
            call = self._tool_calls.get(event.get("toolCallId", ""))
            if call is not None:
                raw_args = "".join(call["args"])
                try:
                    args = json.loads(raw_args) if raw_args else {}
                except json.JSONDecodeError:
                    args = {"raw": raw_args}
                self.steps.append(TrajectoryStep(
                    type="action",
                    content=f"Calling {call['name']}",
                    tool_name=call["name"],
                    tool_args=args if isinstance(args, dict) else {"value": args},
                ))
        elif etype == "TOOL_CALL_RESULT":
            call = self._tool_calls.pop(event.get("toolCallId", ""), None)
            latency = (time.monotonic() - call["started"]) * 1000 if call else None
            content = event.get("content", "")
            if not isinstance(content, str):
                content = json.dumps(content, default=str)
            self.steps.append(TrajectoryStep(
                type="tool_result",
                content=content,
                tool_name=call["name"] if call else None,
                status="failure" if event.get("error") else "success",
                latency_ms=latency,
            ))

    def _flush_thinking(self) -> None:
        if self._thinking:
            self.steps.append(TrajectoryStep(type="thinking", content="".join(self._thinking)))
            self._thinking = []

    def finish(self) -> List[TrajectoryStep]:
        self._flush_thinking()
        # Text messages whose END never arrived
        for chunks in self._text.values():
            content = "".join(chunks)
            if content:
                self.steps.append(TrajectoryStep(type="response", content=content))
        self._text = {}
        return self.steps


def build_run_input(test_case: TestCase, model_id: str, run_id: str, thread_id: str) -> Dict[str, Any]:
    """AG-UI RunAgentInput payload for one test case."""
    return {
        "threadId": thread_id,
        "runId": run_id,
        "messages": [
            {"id": f"msg_{uuid.uuid4().hex[:12]}", "role": "user", "content": test_case.initial_prompt}
        ],
        "tools": [],
        "context": [c.model_dump() for c in test_case.context],
        "state": {},
        "forwardedProps": {"model": model_id, "testCaseId": test_case.id},
    }


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one ``data: {...}`` line; other lines yield None."""
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data:
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping non-JSON SSE data: {data[:200]}")
        return None
    return event if isinstance(event, dict) else None


class AgentClient:
    def __init__(self, timeout_seconds: float = None, transport: httpx.AsyncBaseTransport = None):
        self.timeout_seconds = timeout_seconds or config.AGENT_TIMEOUT_SECONDS
        self._transport = transport

    async def invoke(
        self,
        agent: Agent,
        test_case: TestCase,
        model_id: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> AgentInvocation:
        """Run one test case against the agent and collect its trajectory.

        Raises:
            AgentInvocationError: non-2xx response or a RUN_ERROR event
        """
        run_id = str(uuid.uuid4())
        thread_id = str(uuid.uuid4())
        payload = build_run_input(test_case, model_id, run_id, thread_id)
        request_headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **agent.headers,
            **(headers or {}),
        }

        builder = _TrajectoryBuilder()
        invocation = AgentInvocation(run_id=run_id, thread_id=thread_id)
        started = time.monotonic()
        timeout = httpx.Timeout(self.timeout_seconds, read=config.AGENT_IDLE_TIMEOUT_SECONDS)

        logger.info(f"Invoking agent {agent.key} for test case {test_case.id} (run_id={run_id})")
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            async with client.stream("POST", agent.endpoint, json=payload, headers=request_headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise AgentInvocationError(f"HTTP {response.status_code}: {body[:500]}")

                async for line in response.aiter_lines():
                    event = parse_sse_line(line)
                    if event is None:
                        continue
                    invocation.event_count += 1
                    etype = event.get("type")

                    if etype == "RUN_STARTED" and event.get("runId"):
                        invocation.run_id = event["runId"]
                    elif etype == "RUN_ERROR":
                        raise AgentInvocationError(event.get("message") or "Agent reported RUN_ERROR")
                    elif etype == "RUN_FINISHED":
                        break
                    else:
                        builder.handle(event)

        invocation.trajectory = builder.finish()
        invocation.duration_seconds = time.monotonic() - started
        logger.info(
            f"Agent {agent.key} finished test case {test_case.id}: "
            f"{invocation.event_count} events, {len(invocation.trajectory)} steps in {invocation.duration_seconds:.1f}s"
        )
        return invocation
