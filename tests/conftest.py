import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from reconengine import llm
from reconengine.models import SourceRow


@pytest.fixture(autouse=True)
def offline_llm(monkeypatch):
    """Keep every annotator on the rule-based path unless a test installs a client."""

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("RECON_OPENAI_API_KEY", raising=False)
    llm.set_structured_client_for_testing(None)
    yield
    llm.set_structured_client_for_testing(None)


class StubClient:
    """Deterministic structured-output client keyed on the exception category."""

    _SEVERITY_MAP = {
        "unmatched": "high",
        "duplicate": "high",
        "mismatch": "medium",
        "validation": "low",
    }

    def __init__(self):
        self.calls = []

    def request(self, *, messages, schema):
        payload = self._extract_payload(messages)
        self.calls.append(payload)
        if schema.get("name") != "reconciliation_exception_annotation":
            raise AssertionError(f"Unexpected schema requested: {schema.get('name')!r}")
        category = payload.get("category", "")
        return {
            "severity": self._SEVERITY_MAP.get(category, "medium"),
            "summary": f"Stub review of {payload.get('rule')} on {payload.get('record_id')}.",
        }

    def _extract_payload(self, messages):
        for block in reversed(messages):
            content = block.get("content")
            if not isinstance(content, list):
                continue
            for item in reversed(content):
                if not isinstance(item, dict):
                    continue
                if item.get("type") not in {"text", "input_text"}:
                    continue
                try:
                    return json.loads(item.get("text", ""))
                except json.JSONDecodeError:
                    continue
        return {}


@pytest.fixture
def stub_llm():
    stub = StubClient()
    llm.set_structured_client_for_testing(stub)
    yield stub
    llm.set_structured_client_for_testing(None)


def make_rows(side, rows):
    return [SourceRow(side=side, row_number=index, values=dict(values)) for index, values in enumerate(rows, start=1)]


@pytest.fixture
def rows():
    return make_rows


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, header, data):
        path = tmp_path / name
        lines = [",".join(header)] + [",".join(str(cell) for cell in row) for row in data]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write

