"""
LLM judge for agent trajectories.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. RATE LIMIT HANDLING WITH EXPONENTIAL BACKOFF (Feature: rate-limit-retry)
   - Automatic retry with exponential backoff when the LLM endpoint returns 429 errors
   - Configurable max attempts, base delay, and max delay via config.py
   - Jitter added to prevent thundering herd on retries

2. TRAJECTORY JUDGING (Feature: llm-judge)
   - Scores a trajectory against the test case's expected outcomes and
     expected trajectory with any OpenAI-compatible chat endpoint
   - Tolerates fenced / prose-wrapped / <think>-prefixed JSON answers
   - Accepts accuracy at the top level or inside a metrics object

==============================================================================
"""

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Generic, List, Optional, TypeVar

from .models import (
    ExpectedTrajectoryStep, ImprovementStrategy, JudgeMetrics,
    JudgeResult, PassFailStatus, TrajectoryStep,
)
from . import config

logger = logging.getLogger(__name__)

T = TypeVar('T')


class JudgeError(Exception):
    """The judge answered with something that is not a verdict."""


# ==============================================================================
# RETRY RESULT WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
@dataclass
class RetryResult(Generic[T]):
    """Result from retry_with_backoff including retry statistics.

    Attributes:
        result: The actual return value from the wrapped function
        retry_count: Number of retries that occurred (0 = success on first try)
        had_rate_limit: True if any rate limit error was encountered
    """
    result: T
    retry_count: int
    had_rate_limit: bool


def _is_rate_limit(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        '429' in error_str or
        'rate' in error_str and 'limit' in error_str or
        'too many requests' in error_str
    )


# ==============================================================================
# EXPONENTIAL BACKOFF RETRY WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
# ONLY rate limit errors are retried; everything else is raised immediately.
# The delay doubles every attempt and carries 0-10% jitter.
# ==============================================================================
def _backoff_delay(retry: int, base_delay: float) -> float:
    """Delay before retry number ``retry`` (1-based), capped, plus up to 10% jitter."""
    delay = min(base_delay * (2 ** (retry - 1)), config.RETRY_MAX_DELAY)
    return delay + random.uniform(0, delay * 0.1)


async def retry_with_backoff(func, *args, max_attempts=None, base_delay=None, on_retry=None, **kwargs) -> RetryResult:
    """Call ``func`` until it stops failing with rate limits.

    Args:
        func: Async callable, invoked with ``*args`` and ``**kwargs``
        max_attempts: Total calls allowed (default RETRY_MAX_ATTEMPTS)
        base_delay: First wait in seconds, doubled on every further retry
        on_retry: Optional async callback(retry, max_attempts, wait_time, error)
                  awaited before each wait, e.g. to surface progress to users

    Raises:
        Any non-rate-limit error at once, or the last rate-limit error when
        the attempts run out
    """
    max_attempts = max_attempts or config.RETRY_MAX_ATTEMPTS
    base_delay = config.RETRY_BASE_DELAY if base_delay is None else base_delay
    retries = 0

    while True:
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if not _is_rate_limit(e):
                raise
            if retries + 1 >= max_attempts:
                logger.error(f"Giving up after {max_attempts} rate-limited attempts: {str(e)[:200]}")
                raise
            retries += 1
            wait_time = _backoff_delay(retries, base_delay)
            logger.warning(f"Rate limited, retry {retries}/{max_attempts - 1} in {wait_time:.1f}s: {str(e)[:100]}")
            if on_retry is not None:
                try:
                    await on_retry(retries, max_attempts, wait_time, str(e)[:100])
                except Exception as cb_err:
                    logger.warning(f"on_retry callback failed: {cb_err}")
            await asyncio.sleep(wait_time)
            continue
        return RetryResult(result=result, retry_count=retries, had_rate_limit=retries > 0)


def _extract_json(text: str) -> dict:
    """Extract JSON from LLM output that may contain extra text.

    Handles:
    - Clean JSON (just returns parsed)
    - Markdown code fences (```json ... ```)
    - Reasoning model output with <think>...</think> tags
    - Leading/trailing prose around a JSON object
    """
    text = text.strip()

    text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL).strip()
    text = re.sub(r'<think>.*', '', text, flags=re.DOTALL).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fence_match = re.search(r'```(?:json)?\s*\n?(.*?)\n?\s*```', text, re.DOTALL)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    brace_match = re.search(r'\{.*\}', text, re.DOTALL)
    if brace_match:
        try:
            return json.loads(brace_match.group(0))
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("No JSON object found in LLM output", text, 0)


JUDGE_SYSTEM_PROMPT = """You are an expert evaluator of AI agents. Your task is to evaluate how well an agent performed against expected outcomes.

## Your Task

1. Analyze the agent's trajectory: its thoughts, actions, tool calls and outputs
2. Compare it against the expected outcomes and, when given, the expected trajectory
3. Calculate accuracy from how many expected outcomes were met
4. Decide pass or fail

## Accuracy Calculation

- Count outcomes achieved (partial = 0.5, full = 1.0)
- accuracy = (achieved_score / total_outcomes) * 100, rounded to the nearest integer

## Pass/Fail Determination

- passed: accuracy >= 70 AND no critical failures
- failed: accuracy < 70 OR critical failures present (wrong conclusions,
  missing critical steps, hallucinated or fabricated data)

## Output Format

Respond with this JSON structure only:

{
  "pass_fail_status": "passed" | "failed",
  "accuracy": <number 0-100>,
  "metrics": {"faithfulness": <0-100>, "latency_score": <0-100>, "trajectory_alignment_score": <0-100>},
  "reasoning": "<which outcomes were met and which were not>",
  "improvement_strategies": [
    {"category": "<Tool Usage | Analysis Depth | Reasoning | Data Correlation | Communication>",
     "issue": "<what could be improved>",
     "recommendation": "<specific actionable suggestion>",
     "priority": "high" | "medium" | "low"}
  ]
}

Provide 1-3 improvement strategies, especially for failed evaluations. The
accuracy field must be at the top level."""


def build_evaluation_prompt(
    trajectory: List[TrajectoryStep],
    expected_outcomes: List[str],
    expected_trajectory: Optional[List[ExpectedTrajectoryStep]] = None,
) -> str:
    lines = ["## Agent Trajectory", ""]
    for i, step in enumerate(trajectory, start=1):
        header = f"{i}. [{step.type}]"
        if step.tool_name:
            header += f" {step.tool_name}"
        lines.append(header)
        if step.tool_args:
            lines.append(f"   args: {json.dumps(step.tool_args, default=str)[:2000]}")
        if step.content:
            lines.append(f"   {step.content[:4000]}")
    if not trajectory:
        lines.append("(the agent produced no steps)")

    lines += ["", "## Expected Outcomes", ""]
    lines += [f"- {o}" for o in expected_outcomes] or ["(none given)"]

    if expected_trajectory:
        lines += ["", "## Expected Trajectory", ""]
        for i, step in enumerate(expected_trajectory, start=1):
            tools = f" (tools: {', '.join(step.required_tools)})" if step.required_tools else ""
            lines.append(f"{i}. {step.description}{tools}")

    return "\n".join(lines)


def parse_judge_response(content: str) -> JudgeResult:
    try:
        result = _extract_json(content)
    except json.JSONDecodeError as e:
        raise JudgeError(f"Failed to parse LLM judge response: {content[:200]}") from e
    if not isinstance(result, dict):
        raise JudgeError("LLM judge response is not a JSON object")

    metrics = result.get("metrics") or {}
    accuracy = result.get("accuracy", metrics.get("accuracy", 0))
    status = str(result.get("pass_fail_status") or "failed").lower()

    strategies = []
    for item in result.get("improvement_strategies") or []:
        if not isinstance(item, dict):
            continue
        priority = str(item.get("priority", "medium")).lower()
        strategies.append(ImprovementStrategy(
            category=item.get("category", ""),
            issue=item.get("issue", ""),
            recommendation=item.get("recommendation", ""),
            priority=priority if priority in ("high", "medium", "low") else "medium",
        ))

    return JudgeResult(
        pass_fail_status=PassFailStatus.passed if status == "passed" else PassFailStatus.failed,
        metrics=JudgeMetrics(
            accuracy=float(accuracy or 0),
            faithfulness=metrics.get("faithfulness"),
            latency_score=metrics.get("latency_score"),
            trajectory_alignment_score=metrics.get("trajectory_alignment_score"),
        ),
        llm_judge_reasoning=result.get("reasoning", "") or "",
        improvement_strategies=strategies,
    )


class JudgeService:
    def __init__(self, model: Optional[str] = None):
        self.model = model or config.LLM_MODEL
        self.openai_client = None

    def _ensure_client(self):
        if self.openai_client is None:
            logger.info(f"Initializing OpenAI-compatible judge client (base_url={config.LLM_BASE_URL}, model={self.model})")
            from openai import OpenAI  # Lazy import to speed up server startup
            self.openai_client = OpenAI(base_url=config.LLM_BASE_URL, api_key=config.LLM_API_KEY)
        return self.openai_client

    async def evaluate(
        self,
        trajectory: List[TrajectoryStep],
        expected_outcomes: List[str],
        expected_trajectory: Optional[List[ExpectedTrajectoryStep]] = None,
        on_retry=None,
    ) -> JudgeResult:
        """Judge a trajectory.

        ``on_retry`` is handed to retry_with_backoff and hears about every
        rate-limit wait.

        Raises:
            JudgeError: the answer could not be parsed
            Exception: transport errors from the LLM endpoint, after rate-limit retries
        """
        client = self._ensure_client()
        messages = [
            {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
            {"role": "user", "content": build_evaluation_prompt(trajectory, expected_outcomes, expected_trajectory)},
        ]

        async def _call_llm_judge():
            return await asyncio.to_thread(
                client.chat.completions.create,
                model=self.model,
                messages=messages,
                temperature=config.JUDGE_TEMPERATURE,
                max_tokens=config.JUDGE_MAX_TOKENS,
            )

        retry_result = await retry_with_backoff(_call_llm_judge, on_retry=on_retry)
        if retry_result.had_rate_limit:
            logger.warning(f"Judge call completed after {retry_result.retry_count} rate-limit retries")

        content = (retry_result.result.choices[0].message.content or "").strip()
        logger.debug(f"LLM judge response: {content[:300]}...")
        verdict = parse_judge_response(content)
        logger.info(f"Judge verdict: {verdict.pass_fail_status.value} (accuracy={verdict.metrics.accuracy})")
        return verdict


# Service instance
_judge_service: Optional[JudgeService] = None


def get_judge_service() -> JudgeService:
    global _judge_service
    if _judge_service is None:
        _judge_service = JudgeService()
    return _judge_service
