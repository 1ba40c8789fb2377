"""LLM-backed explanations and prioritisation for reconciliation exceptions."""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .models import CATEGORY_DUPLICATE, CATEGORY_MISMATCH, CATEGORY_UNMATCHED, CATEGORY_VALIDATION

LOGGER = logging.getLogger(__name__)

REASON_SEVERITIES = {
    CATEGORY_UNMATCHED: "high",
    CATEGORY_DUPLICATE: "high",
    CATEGORY_MISMATCH: "medium",
    CATEGORY_VALIDATION: "low",
}

_VALID_SEVERITIES = {"low", "medium", "high"}

_JSON_SCHEMA = {
    "name": "reconciliation_exception_annotation",
    "schema": {
        "type": "object",
        "properties": {
            "severity": {
                "type": "string",
                "description": "Operational priority: low, medium or high.",
            },
            "summary": {
                "type": "string",
                "description": "Human readable explanation (1-2 sentences).",
            },
        },
        "required": ["severity", "summary"],
        "additionalProperties": False,
    },
}


@dataclass(frozen=True)
class LLMConfig:
    """Runtime configuration for the LLM integration."""

    model: str
    temperature: float
    api_key: str | None
    max_calls: int = 50

    @classmethod
    def from_env(cls) -> "LLMConfig":
        model = os.getenv("RECON_OPENAI_MODEL", "gpt-4o-mini")
        temperature = float(os.getenv("RECON_OPENAI_TEMPERATURE", "0.2"))
        api_key = os.getenv("RECON_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
        max_calls = int(os.getenv("RECON_OPENAI_MAX_CALLS", "50"))
        return cls(model=model, temperature=temperature, api_key=api_key, max_calls=max_calls)


@dataclass(frozen=True, slots=True)
class ExceptionAnnotation:
    explanation: str
    severity: str
    source: str = "rule"
    raw_response: Dict[str, object] | None = None


class Finding(Protocol):
    record_id: str
    rule: str
    source1_value: str
    source2_value: str
    category: str
    field: Optional[str]
    message: Optional[str]


class StructuredClient(Protocol):
    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None: ...


class OpenAIStructuredClient:
    """Structured-output calls through the OpenAI Responses API."""

    def __init__(self, config: LLMConfig) -> None:
        from openai import OpenAI

        self._config = config
        self._client = OpenAI(api_key=config.api_key)

    def request(self, *, messages: list[dict[str, Any]], schema: dict[str, Any]) -> Dict[str, Any] | None:
        response = self._client.responses.create(
            model=self._config.model,
            temperature=self._config.temperature,
            input=messages,
            text={"format": {"type": "json_schema", "strict": True, **schema}},
        )
        text = getattr(response, "output_text", None)
        if text:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                LOGGER.warning("LLM response could not be parsed as JSON. Falling back to rules.")
                return None
        return _extract_json_payload(response)


def _block_text(block: Any) -> str | None:
    content = getattr(block, "content", None)
    if isinstance(content, list) and content:
        first = content[0]
        return first.get("text") if isinstance(first, dict) else getattr(first, "text", None)
    message = getattr(block, "message", None)
    if message is not None and getattr(message, "content", None):
        first = message.content[0]
        return first.get("text") if isinstance(first, dict) else getattr(first, "text", None)
    return getattr(block, "text", None)


def _extract_json_payload(response: Any) -> Dict[str, Any] | None:
    """Normalise an OpenAI client response into a Python dictionary."""

    outputs = getattr(response, "output", None) or getattr(response, "outputs", None)
    if not outputs:
        # Older SDKs use `choices`
        outputs = getattr(response, "choices", None)
    if not outputs:
        return None

    for block in outputs:
        text = _block_text(block)
        if not text:
            continue
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            continue
    LOGGER.warning("LLM response could not be parsed as JSON. Falling back to rules.")
    return None


def fallback_explanation(finding: Finding) -> str:
    if finding.category == CATEGORY_MISMATCH:
        return (
            f"{finding.field} differs on record {finding.record_id}: source 1 reports "
            f"{finding.source1_value!r} while source 2 reports {finding.source2_value!r}."
        )
    if finding.category == CATEGORY_UNMATCHED:
        if finding.source1_value:
            return f"Record {finding.record_id} (key {finding.source1_value}) has no counterpart in source 2."
        return f"Record {finding.record_id} (key {finding.source2_value}) has no counterpart in source 1."
    if finding.category == CATEGORY_DUPLICATE:
        return (
            f"Match key {finding.source1_value} on record {finding.record_id} is not unique "
            f"({finding.source2_value}); de-duplicate the sources before pairing."
        )
    detail = f": {finding.message}" if finding.message else "."
    return f"Record {finding.record_id} failed rule {finding.rule}{detail}"


def _fallback_annotation(finding: Finding, severity: str | None = None) -> ExceptionAnnotation:
    return ExceptionAnnotation(
        explanation=fallback_explanation(finding),
        severity=severity or REASON_SEVERITIES.get(finding.category, "medium"),
        source="rule",
    )


def _compose_user_payload(finding: Finding) -> dict[str, Any]:
    return {
        "category": finding.category,
        "rule": finding.rule,
        "record_id": finding.record_id,
        "field": finding.field,
        "source1_value": finding.source1_value,
        "source2_value": finding.source2_value,
        "message": finding.message,
    }


class ExceptionAnnotator:
    """Explains exceptions with an LLM, falling back to rule-based text."""

    def __init__(self, config: LLMConfig, client: StructuredClient | None) -> None:
        self._config = config
        self._client = client
        self._calls = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "ExceptionAnnotator":
        config = LLMConfig.from_env()
        client = OpenAIStructuredClient(config) if config.api_key else None
        return cls(config=config, client=client)

    def for_run(self) -> "ExceptionAnnotator":
        """Return an annotator sharing this client with a fresh call budget."""

        return ExceptionAnnotator(self._config, self._client)

    def _take_call(self) -> bool:
        with self._lock:
            if self._calls >= self._config.max_calls:
                return False
            self._calls += 1
            return True

    def annotate(self, finding: Finding) -> ExceptionAnnotation:
        client = _TEST_CLIENT.client or self._client
        if client is None or not self._take_call():
            return _fallback_annotation(finding)

        messages = [
            {
                "role": "system",
                "content": "You are a senior operations analyst specialised in two-party transaction reconciliations.",
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_text",
                        "text": (
                            "Classify and explain the reconciliation exception. "
                            "Return JSON that aligns with the provided schema."
                        ),
                    },
                    {"type": "input_text", "text": json.dumps(_compose_user_payload(finding), indent=2)},
                ],
            },
        ]

        try:
            payload = client.request(messages=messages, schema=_JSON_SCHEMA)
        except Exception as exc:  # pragma: no cover - network/runtime failure
            LOGGER.warning("LLM annotation failed; using rule-based fallback: %s", exc)
            return _fallback_annotation(finding)

        if not payload:
            return _fallback_annotation(finding)

        severity = str(payload.get("severity", "")).lower()
        if severity not in _VALID_SEVERITIES:
            return _fallback_annotation(finding)
        summary = payload.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return _fallback_annotation(finding, severity=severity)
        return ExceptionAnnotation(
            explanation=summary.strip(),
            severity=severity,
            source="openai",
            raw_response=payload,
        )


class _TestClientSlot:
    client: StructuredClient | None = None


_TEST_CLIENT = _TestClientSlot()


def set_structured_client_for_testing(client: StructuredClient | None) -> None:
    """Route every annotator through ``client``; ``None`` restores normal behaviour."""

    _TEST_CLIENT.client = client
