"""
Observability backend client.

Looks up OTel spans for an agent run id in an OpenSearch traces index and
turns them into a trajectory when the agent's own stream produced none.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import Span, TrajectoryStep
from . import config

logger = logging.getLogger(__name__)

RUN_ID_ATTRIBUTE = "run.id"


def _flatten_attributes(source: Dict[str, Any]) -> Dict[str, Any]:
    """Collect span attributes in dotted form.

    Data Prepper stores attributes as ``span.attributes.gen_ai@tool@name``
    keys; documents written by other exporters keep an ``attributes`` object.
    """
    attributes = dict(source.get("attributes") or {})
    prefix = "span.attributes."
    for key, value in source.items():
        if key.startswith(prefix):
            attributes[key[len(prefix):].replace("@", ".")] = value
    return attributes


def hit_to_span(source: Dict[str, Any]) -> Span:
    status = source.get("status")
    if isinstance(status, dict):
        status = status.get("code", "UNSET")
    duration_ns = source.get("durationInNanos")
    duration = duration_ns / 1_000_000 if duration_ns is not None else float(source.get("duration") or 0.0)
    return Span(
        trace_id=source.get("traceId", ""),
        span_id=source.get("spanId", ""),
        parent_span_id=source.get("parentSpanId") or None,
        name=source.get("name", ""),
        start_time=source.get("startTime", ""),
        end_time=source.get("endTime", ""),
        duration=duration,
        status=str(status if status is not None else "UNSET"),
        attributes=_flatten_attributes(source),
    )


def build_span_query(run_id: str, size: int = None) -> Dict[str, Any]:
    return {
        "size": size or config.TRACE_QUERY_SIZE,
        "query": {
            "bool": {
                "should": [
                    {"term": {config.TRACE_RUN_ID_FIELD: run_id}},
                    {"term": {f"attributes.{RUN_ID_ATTRIBUTE}": run_id}},
                ],
                "minimum_should_match": 1,
            }
        },
        "sort": [{"startTime": {"order": "asc"}}],
    }


def spans_to_trajectory(spans: List[Span]) -> List[TrajectoryStep]:
    """Derive trajectory steps from GenAI semantic-convention spans."""
    steps: List[TrajectoryStep] = []
    for span in sorted(spans, key=lambda s: s.start_time):
        attrs = span.attributes
        operation = attrs.get("gen_ai.operation.name", "")
        tool_name = attrs.get("gen_ai.tool.name")

        if operation == "execute_tool" or tool_name or span.name.startswith("Tool:"):
            name = tool_name or span.name.replace("Tool:", "").strip()
            raw_args = attrs.get("gen_ai.tool.call.arguments")
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else (raw_args or {})
            except json.JSONDecodeError:
                args = {"raw": raw_args}
            action = TrajectoryStep(
                type="action",
                content=f"Calling {name}",
                tool_name=name,
                tool_args=args if isinstance(args, dict) else {"value": args},
            )
            if span.start_time:
                action.timestamp = span.start_time
            steps.append(action)
            result = attrs.get("gen_ai.tool.call.result")
            if result is not None:
                steps.append(TrajectoryStep(
                    type="tool_result",
                    content=result if isinstance(result, str) else json.dumps(result, default=str),
                    tool_name=name,
                    status="failure" if span.status.upper() == "ERROR" else "success",
                    latency_ms=span.duration,
                ))
        elif operation in ("chat", "text_completion") or "gen_ai.completion" in attrs:
            completion = attrs.get("gen_ai.completion") or attrs.get("gen_ai.output.messages")
            if completion:
                steps.append(TrajectoryStep(
                    type="response",
                    content=completion if isinstance(completion, str) else json.dumps(completion, default=str),
                    latency_ms=span.duration,
                ))
    return steps


class TracesClient:
    def __init__(
        self,
        endpoint: Optional[str] = None,
        index: Optional[str] = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.endpoint = (endpoint if endpoint is not None else config.OBSERVABILITY_ENDPOINT).rstrip("/")
        self.index = index or config.OBSERVABILITY_TRACES_INDEX
        self._transport = transport
        self._warned_unconfigured = False

    @property
    def configured(self) -> bool:
        return bool(self.endpoint)

    async def fetch_spans(self, run_id: str) -> List[Span]:
        """Spans whose run id attribute equals ``run_id``; empty until they propagate.

        Raises:
            httpx.HTTPError: the backend could not be queried
        """
        if not self.configured:
            if not self._warned_unconfigured:
                logger.warning("Observability data source not configured; trace lookups return no spans")
                self._warned_unconfigured = True
            return []

        auth = None
        if config.OBSERVABILITY_USERNAME:
            auth = (config.OBSERVABILITY_USERNAME, config.OBSERVABILITY_PASSWORD)

        async with httpx.AsyncClient(
            timeout=30.0,
            auth=auth,
            verify=not config.OBSERVABILITY_TLS_SKIP_VERIFY,
            transport=self._transport,
        ) as client:
            response = await client.post(f"{self.endpoint}/{self.index}/_search", json=build_span_query(run_id))
            if response.status_code == 404:
                # Index pattern matches nothing yet
                return []
            response.raise_for_status()
            hits = response.json().get("hits", {}).get("hits", [])

        spans = [hit_to_span(h.get("_source", {})) for h in hits]
        logger.debug(f"Found {len(spans)} span(s) for run_id={run_id}")
        return spans
