"""
Oracle response parsing.

Turns free-form oracle text into exactly one of:
- an ``AnalysisRequest`` (the oracle wants a sandbox tool run), or
- a list of ``AiDecision`` (possibly empty = HOLD).

JSON may arrive wrapped in markdown fences or surrounded by prose; the first
JSON value that looks like a request or a decision set wins.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import ValidationError

from ai.schemas import AiDecision, AnalysisRequest, DecisionAction
from core.exceptions import InvalidToolCallError, OracleMalformedResponseError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_DECODER = json.JSONDecoder()


@dataclass
class OracleReply:
    """Validated oracle response."""
    analysis: Optional[AnalysisRequest] = None
    decisions: List[AiDecision] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def is_analysis(self) -> bool:
        return self.analysis is not None


def _is_candidate(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    if isinstance(value, list):
        return all(isinstance(item, dict) for item in value)
    return False


def _scan(text: str) -> Optional[Any]:
    for idx, char in enumerate(text):
        if char not in "[{":
            continue
        try:
            value, _ = _DECODER.raw_decode(text, idx)
        except json.JSONDecodeError:
            continue
        if _is_candidate(value):
            return value
    return None


def extract_json(text: Optional[str]) -> Optional[Any]:
    """
    Return the first JSON object, or array of objects, found in ``text``.

    Fenced blocks are searched before the raw text.
    """
    if not text or not isinstance(text, str):
        return None

    for block in _FENCE_RE.findall(text):
        value = _scan(block)
        if value is not None:
            return value
    return _scan(text)


def _is_analyze(obj: Any) -> bool:
    return isinstance(obj, dict) and str(obj.get("action", "")).strip().upper() == "ANALYZE"


def _parse_analysis(obj: dict) -> AnalysisRequest:
    try:
        return AnalysisRequest.model_validate(obj)
    except ValidationError as exc:
        raise InvalidToolCallError(f"Malformed ANALYZE request: {exc.errors()[0]['msg']}") from exc


def _parse_decisions(raw: List[dict], notes: List[str]) -> List[AiDecision]:
    decisions: List[AiDecision] = []
    for idx, item in enumerate(raw):
        if _is_analyze(item):
            notes.append(f"IGNORED decision #{idx + 1}: ANALYZE mixed into a decision set")
            continue
        try:
            decision = AiDecision.model_validate(item)
        except ValidationError as exc:
            reason = exc.errors()[0]["msg"]
            notes.append(f"IGNORED decision #{idx + 1}: {reason}")
            logger.warning(f"Dropping invalid decision {item}: {reason}")
            continue
        if decision.action == DecisionAction.HOLD:
            continue
        decisions.append(decision)
    return decisions


def parse_oracle_response(text: Optional[str]) -> OracleReply:
    """
    Classify and validate an oracle response.

    Raises:
        OracleMalformedResponseError: no usable JSON in the text
        InvalidToolCallError: an ANALYZE object with a malformed shape
    """
    payload = extract_json(text)
    if payload is None:
        preview = (text or "")[:200].replace("\n", " ")
        raise OracleMalformedResponseError(f"No JSON request or decision array found: {preview!r}")

    if isinstance(payload, dict):
        if _is_analyze(payload):
            return OracleReply(analysis=_parse_analysis(payload))
        if isinstance(payload.get("decisions"), list):
            payload = payload["decisions"]
        elif "action" in payload:
            payload = [payload]
        else:
            raise OracleMalformedResponseError("JSON object is neither an ANALYZE request nor a decision")

    if not all(isinstance(item, dict) for item in payload):
        raise OracleMalformedResponseError("Decision array must contain only objects")

    if len(payload) == 1 and _is_analyze(payload[0]):
        return OracleReply(analysis=_parse_analysis(payload[0]))

    reply = OracleReply()
    reply.decisions = _parse_decisions(payload, reply.notes)
    return reply
