import pytest

from chorus.graph import GraphBuilder


@pytest.fixture(autouse=True)
def _clean_chorus_env(monkeypatch):
    """Keep tests independent of any CHORUS_* settings in the shell."""
    for name in ("CHORUS_IDLE_TIMEOUT", "CHORUS_SEARCH_PATH", "CHORUS_LOG_LEVEL", "CHORUS_TRACE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHORUS_IDLE_TIMEOUT", "0")
    yield


@pytest.fixture
def builder():
    return GraphBuilder("main", source="test.yaml")
