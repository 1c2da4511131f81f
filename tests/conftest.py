"""Common test fixtures for rollout sessions."""

import textwrap
from pathlib import Path

import pytest

from laminar_rollout.cache import CachedCallRecord, CacheStore
from laminar_rollout.protocol import ROLLOUT_SESSION_ID_ENV, ROLLOUT_STATE_SERVER_ADDRESS_ENV, WorkerConfig


@pytest.fixture(autouse=True)
def clean_rollout_env(monkeypatch: pytest.MonkeyPatch):
    """Keep a developer's session variables from leaking into tests."""
    monkeypatch.delenv(ROLLOUT_SESSION_ID_ENV, raising=False)
    monkeypatch.delenv(ROLLOUT_STATE_SERVER_ADDRESS_ENV, raising=False)


@pytest.fixture
def store() -> CacheStore:
    return CacheStore()


@pytest.fixture
def make_record():
    """Factory for cached call records."""

    def _make(output: str = "hello", name: str = "llm", **attributes) -> CachedCallRecord:
        return CachedCallRecord(name=name, input=[{"role": "user", "content": "hi"}], output=output, attributes=attributes)

    return _make


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        file_path="agent.py",
        args={"question": "hi"},
        cache_server_port=35667,
        base_url="http://localhost",
        http_port=8000,
        grpc_port=8001,
    )


@pytest.fixture
def rollout_file(tmp_path: Path) -> Path:
    """A user file with a single rollout function."""
    path = tmp_path / "agent_module.py"
    path.write_text(
        textwrap.dedent(
            """
            from laminar_rollout import rollout_entrypoint


            @rollout_entrypoint
            def agent(question: str, turns: int = 2):
                print("thinking about", question)
                return {"answer": question.upper(), "turns": turns}
            """
        )
    )
    return path
