"""
Protocol Controller - bounded ANALYZE/decide loop against the reasoning oracle.

States:
    AWAITING_TOOL_OR_DECISION -> DECIDED | ABORTED

One cycle is at most ``max_iterations`` oracle rounds (default 5): up to
``max_iterations - 1`` ANALYZE rounds and one mandatory final round in which
only a decision array is accepted. Failures never retry the oracle call; a
failed round consumes its iteration, and a failure in the final round aborts
with an empty decision set (HOLD).

The per-call timeout is enforced here, not by the client: each call runs on
its own daemon thread, so the deadline starts when the call starts and a hung
call never blocks another bot. After the deadline the controller stops
waiting and abandons the thread.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ai.model_client import ModelClient
from ai.prompt_builder import build_iteration_prompt
from ai.response_parser import OracleReply, parse_oracle_response
from ai.schemas import AiDecision
from ai.transcript import DecisionTranscript
from analytics.sandbox import AnalyticsSandbox, tool_names
from core.exceptions import (
    InsufficientDataError,
    InvalidToolCallError,
    OracleError,
    OracleTimeoutError,
    OracleUnavailableError,
    ProtocolViolation,
    ToolError,
)
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


class ProtocolState(str, Enum):
    AWAITING_TOOL_OR_DECISION = "AWAITING_TOOL_OR_DECISION"
    DECIDED = "DECIDED"
    ABORTED = "ABORTED"


@dataclass
class ProtocolConfig:
    max_iterations: int = 5
    call_timeout_seconds: float = 10.0
    cycle_budget_seconds: float = 30.0
    max_prompt_chars: int = 500_000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProtocolConfig":
        data = data or {}
        return cls(
            max_iterations=max(1, int(data.get("max_iterations", 5))),
            call_timeout_seconds=float(data.get("call_timeout_seconds", 10.0)),
            cycle_budget_seconds=float(data.get("cycle_budget_seconds", 30.0)),
            max_prompt_chars=int(data.get("max_prompt_chars", 500_000)),
        )


@dataclass
class ProtocolResult:
    state: ProtocolState
    decisions: List[AiDecision] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    transcript: DecisionTranscript = field(default_factory=DecisionTranscript)
    base_prompt: str = ""
    last_prompt: str = ""
    iterations: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def decided(self) -> bool:
        return self.state == ProtocolState.DECIDED

    @property
    def analysis_count(self) -> int:
        return self.transcript.analysis_count()


class ProtocolController:
    """Runs one decision cycle's oracle conversation."""

    def __init__(self, client: ModelClient, config: Optional[ProtocolConfig] = None,
                 metrics: Optional[MetricsRecorder] = None):
        self.client = client
        self.config = config or ProtocolConfig()
        self.metrics = metrics or MetricsRecorder()

    # ------------------------------------------------------------------
    # Oracle call
    # ------------------------------------------------------------------

    def _submit(self, prompt: str, timeout: float, bot_id: str) -> Future:
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def _target():
            try:
                future.set_result(self.client.complete(prompt, timeout))
            except Exception as exc:
                future.set_exception(exc)

        name = f"oracle-{bot_id}" if bot_id else "oracle"
        threading.Thread(target=_target, name=name, daemon=True).start()
        return future

    def _call_oracle(self, prompt: str, timeout: float, bot_id: str = "") -> str:
        provider = getattr(self.client, "name", type(self.client).__name__)
        start = time.perf_counter()
        future = self._submit(prompt, timeout, bot_id)
        try:
            text = future.result(timeout=timeout)
        except FutureTimeout:
            self.metrics.record_oracle_call(provider, time.perf_counter() - start, "timeout")
            raise OracleTimeoutError(f"Oracle call exceeded {timeout:.1f}s") from None
        except OracleError:
            self.metrics.record_oracle_call(provider, time.perf_counter() - start, "error")
            raise
        except Exception as exc:
            self.metrics.record_oracle_call(provider, time.perf_counter() - start, "error")
            logger.error(f"Oracle client {provider} raised unexpectedly: {exc}", exc_info=True)
            raise OracleUnavailableError(f"Oracle call failed: {exc}") from exc

        self.metrics.record_oracle_call(provider, time.perf_counter() - start, "ok")
        if not isinstance(text, str) or not text.strip():
            raise OracleUnavailableError("Oracle returned an empty payload")
        return text

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, base_prompt: str, sandbox: Optional[AnalyticsSandbox] = None,
            bot_id: str = "") -> ProtocolResult:
        """
        Drive the conversation to DECIDED or ABORTED.

        Args:
            base_prompt: Rendered cycle prompt (portfolio, market, history)
            sandbox: Tool sandbox for this cycle; None disables ANALYZE
            bot_id: For log context only
        """
        start = time.monotonic()
        deadline = start + self.config.cycle_budget_seconds
        max_iterations = self.config.max_iterations if sandbox is not None else 1
        result = ProtocolResult(state=ProtocolState.AWAITING_TOOL_OR_DECISION, base_prompt=base_prompt)
        tag = f"[{bot_id}] " if bot_id else ""

        def abort(note: str, error: Optional[str] = None) -> ProtocolResult:
            result.state = ProtocolState.ABORTED
            result.decisions = []
            result.notes.append(note)
            result.error = error or note
            result.duration_seconds = time.monotonic() - start
            logger.warning(f"{tag}Cycle aborted after {result.iterations} iteration(s): {note}")
            return result

        for iteration in range(1, max_iterations + 1):
            final = iteration == max_iterations
            prompt = build_iteration_prompt(base_prompt, iteration, max_iterations, result.transcript.render())
            result.last_prompt = prompt
            result.iterations = iteration

            if len(prompt) > self.config.max_prompt_chars:
                return abort(
                    f"ABORTED: prompt is {len(prompt)} chars (limit {self.config.max_prompt_chars}); "
                    "no decisions applied"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return abort(f"ABORTED: cycle budget of {self.config.cycle_budget_seconds:.0f}s exhausted")
            timeout = min(self.config.call_timeout_seconds, remaining)

            try:
                text = self._call_oracle(prompt, timeout, bot_id)
                reply = parse_oracle_response(text)
            except (OracleError, InvalidToolCallError) as exc:
                kind = type(exc).__name__
                logger.warning(f"{tag}Iteration {iteration}/{max_iterations}: {kind}: {exc}")
                if isinstance(exc, InvalidToolCallError):
                    result.transcript.record_tool_error(iteration, None, None, str(exc))
                    self.metrics.record_tool_call("unknown", "invalid_call")
                else:
                    result.transcript.record_oracle_error(iteration, f"{kind}: {exc}")
                if final:
                    return abort(f"ABORTED: {kind} on final iteration ({exc}); holding", error=str(exc))
                continue

            if reply.is_analysis:
                if final:
                    violation = ProtocolViolation(
                        f"ANALYZE '{reply.analysis.tool}' requested on final iteration {iteration}"
                    )
                    result.transcript.record_protocol_violation(iteration, str(violation), tool=reply.analysis.tool)
                    return abort(f"PROTOCOL VIOLATION: {violation}; request not executed, no decisions applied")
                self._run_tool(reply, sandbox, iteration, result.transcript, tag)
                continue

            result.state = ProtocolState.DECIDED
            result.decisions = reply.decisions
            result.notes.extend(reply.notes)
            for decision in reply.decisions:
                if decision.reasoning:
                    result.transcript.record_reasoning(iteration, f"{decision.label()}: {decision.reasoning}")
            result.duration_seconds = time.monotonic() - start
            logger.info(
                f"{tag}Decided after {iteration} iteration(s), {result.analysis_count} analysis call(s): "
                f"{[d.label() for d in reply.decisions] or 'HOLD'}"
            )
            return result

        # Unreachable: the final iteration always returns
        return abort("ABORTED: iteration budget exhausted")

    def _run_tool(self, reply: OracleReply, sandbox: AnalyticsSandbox, iteration: int,
                  transcript: DecisionTranscript, tag: str) -> None:
        request = reply.analysis
        label = request.tool.strip().lower()
        if label not in tool_names():
            label = "unknown"
        try:
            output = sandbox.execute(request.tool, request.parameters)
        except ToolError as exc:
            outcome = "insufficient_data" if isinstance(exc, InsufficientDataError) else "invalid_call"
            self.metrics.record_tool_call(label, outcome)
            transcript.record_tool_error(iteration, request.tool, request.parameters, str(exc), request.reasoning)
            logger.warning(f"{tag}Tool {request.tool} failed at iteration {iteration}: {exc}")
            return

        self.metrics.record_tool_call(label, "ok")
        transcript.record_tool_result(iteration, request.tool, request.parameters, output, request.reasoning)
        logger.info(f"{tag}Tool {request.tool} executed at iteration {iteration}")
