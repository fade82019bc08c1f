import pytest

from stata_mcp_client.config.settings import StataClientSettings, get_settings
from stata_mcp_client.mcp.connection_manager import ConnectionManager
from tests.mocks.fake_transport import FakeTransport
from tests.mocks.settings import make_settings

# Register the in-memory worker so settings can select it by name
ConnectionManager.register_transport_factory("fake", FakeTransport)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    monkeypatch.delenv("STATA_SETUP_TIMEOUT", raising=False)
    get_settings.cache_clear()


@pytest.fixture
def settings() -> StataClientSettings:
    return make_settings()
