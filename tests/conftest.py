import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    """Fresh stores, limiter and push channels for every test; no network."""
    from src.branchchat.infrastructure import chat_store, events
    from src.branchchat.security import rate_limit
    from src.branchchat.services import model_source, streaming

    for name in (
        "OPENROUTER_API_KEY",
        "REDIS_URL",
        "BRANCHCHAT_RATE_LIMIT_POLICY_FILE",
        "BRANCHCHAT_RATE_LIMIT_DISABLED",
        "BRANCHCHAT_PAID_MODEL_LIMITS",
        "BRANCHCHAT_DEFAULT_RESOLUTION",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BRANCHCHAT_SWEEPER_ENABLED", "0")
    monkeypatch.setenv("JWT_SECRET", "test-secret")

    monkeypatch.setattr(chat_store, "_store", None)
    monkeypatch.setattr(rate_limit, "_limiter", None)
    monkeypatch.setattr(events, "_broadcaster", None)
    monkeypatch.setattr(events, "_publisher", None)
    monkeypatch.setattr(model_source, "_source", None)
    monkeypatch.setattr(streaming, "_registry", None)
    yield


class FakeClock:
    """Injectable epoch-ms clock."""

    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock(1_000_000)
