"""
Decision transcript: ordered, append-only record of one cycle.

Every tool request and its result or error, every oracle failure and the
reasoning strings the oracle attached are appended here. The transcript is
rendered back into the next round's prompt and stored with the decision log.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

TOOL_RESULT = "tool_result"
TOOL_ERROR = "tool_error"
ORACLE_ERROR = "oracle_error"
PROTOCOL_VIOLATION = "protocol_violation"
REASONING = "reasoning"

_RESULT_PREVIEW_CHARS = 2000


@dataclass(frozen=True)
class TranscriptEntry:
    iteration: int
    kind: str
    tool: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    reasoning: Optional[str] = None
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_error(self) -> bool:
        return self.kind in (TOOL_ERROR, ORACLE_ERROR, PROTOCOL_VIOLATION)


class DecisionTranscript:
    """Append-only; entries are never edited or removed."""

    def __init__(self):
        self._entries: List[TranscriptEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(tuple(self._entries))

    @property
    def entries(self) -> List[TranscriptEntry]:
        return list(self._entries)

    def _append(self, entry: TranscriptEntry) -> TranscriptEntry:
        self._entries.append(entry)
        return entry

    def record_tool_result(self, iteration: int, tool: str, parameters: Dict[str, Any],
                           result: Dict[str, Any], reasoning: Optional[str] = None) -> TranscriptEntry:
        return self._append(TranscriptEntry(
            iteration=iteration, kind=TOOL_RESULT, tool=tool,
            parameters=dict(parameters), result=result, reasoning=reasoning,
        ))

    def record_tool_error(self, iteration: int, tool: Optional[str], parameters: Optional[Dict[str, Any]],
                          error: str, reasoning: Optional[str] = None) -> TranscriptEntry:
        return self._append(TranscriptEntry(
            iteration=iteration, kind=TOOL_ERROR, tool=tool,
            parameters=dict(parameters or {}), error=error, reasoning=reasoning,
        ))

    def record_oracle_error(self, iteration: int, error: str) -> TranscriptEntry:
        return self._append(TranscriptEntry(iteration=iteration, kind=ORACLE_ERROR, error=error))

    def record_protocol_violation(self, iteration: int, error: str, tool: Optional[str] = None) -> TranscriptEntry:
        return self._append(TranscriptEntry(iteration=iteration, kind=PROTOCOL_VIOLATION, tool=tool, error=error))

    def record_reasoning(self, iteration: int, reasoning: str) -> TranscriptEntry:
        return self._append(TranscriptEntry(iteration=iteration, kind=REASONING, reasoning=reasoning))

    def analysis_count(self) -> int:
        """Number of ANALYZE requests seen (successful or not)."""
        return sum(1 for e in self._entries if e.kind in (TOOL_RESULT, TOOL_ERROR))

    def errors(self) -> List[TranscriptEntry]:
        return [e for e in self._entries if e.is_error]

    def render(self) -> str:
        """Prompt section listing earlier analysis rounds, oldest first."""
        lines: List[str] = []
        for entry in self._entries:
            if entry.kind == TOOL_RESULT:
                body = json.dumps(entry.result, default=str)
                if len(body) > _RESULT_PREVIEW_CHARS:
                    body = body[:_RESULT_PREVIEW_CHARS] + "..."
                lines.append(f"[Iteration {entry.iteration}] {entry.tool}({json.dumps(entry.parameters, default=str)})")
                if entry.reasoning:
                    lines.append(f"  Reasoning: {entry.reasoning}")
                lines.append(f"  Result: {body}")
            elif entry.kind == TOOL_ERROR:
                lines.append(f"[Iteration {entry.iteration}] {entry.tool or '?'} FAILED: {entry.error}")
            elif entry.kind in (ORACLE_ERROR, PROTOCOL_VIOLATION):
                lines.append(f"[Iteration {entry.iteration}] ERROR: {entry.error}")
            elif entry.kind == REASONING:
                lines.append(f"[Iteration {entry.iteration}] Reasoning: {entry.reasoning}")
        return "\n".join(lines)

    def to_list(self) -> List[Dict[str, Any]]:
        return [asdict(e) for e in self._entries]
