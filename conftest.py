import os
import shutil
from pathlib import Path

import pytest

from chronicle.errors import ProviderFailure
from chronicle.llm import Completion
from chronicle.models import TokenUsage
from chronicle.storage import JsonStore

TEST_DATA_DIR = Path("data-tests")

# backend.app builds a module-level app on import; keep it out of ./data
os.environ.setdefault("DATA_DIR", str(TEST_DATA_DIR))


class StubProvider:
    """Scripted LLMProvider. Each call pops the next response or raises it."""

    def __init__(self, role: str, responses: list | None = None) -> None:
        self.name = "stub"
        self.model = f"stub-{role}"
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    def script(self, *responses) -> None:
        self.responses.extend(responses)

    async def complete(self, system, history, user, *, json_mode=False, temperature=0.5, max_tokens=2000):
        self.calls.append({
            "system": system,
            "history": history,
            "user": user,
            "json_mode": json_mode,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if not self.responses:
            raise ProviderFailure(f"{self.model} has no scripted response")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return Completion(
            text=item,
            usage=TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def store(tmp_path) -> JsonStore:
    return JsonStore(tmp_path / "data")


@pytest.fixture
def providers() -> dict[str, StubProvider]:
    return {role: StubProvider(role) for role in ("brain", "voice", "reviewer")}


@pytest.fixture
def provider_factory(providers):
    return lambda role, route: providers[role]


@pytest.fixture
def secrets() -> dict[str, str]:
    return {"openai": "sk-test-openai", "anthropic": "sk-test-anthropic"}
