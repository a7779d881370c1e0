import pytest

from kvloader.options import MAX_CONCURRENCY_ENV_VAR, TIMEOUT_ENV_VAR


@pytest.fixture(autouse=True)
def test_unset_env(monkeypatch):
    monkeypatch.delenv(MAX_CONCURRENCY_ENV_VAR, raising=False)
    monkeypatch.delenv(TIMEOUT_ENV_VAR, raising=False)
