import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_detect_project_root_is_backend_parent(tmp_path):
    backend_dir = tmp_path / "agent" / "backend"
    backend_dir.mkdir(parents=True, exist_ok=True)

    assert config._detect_project_root(backend_dir.resolve()) == (tmp_path / "agent").resolve()


def test_relative_sqlite_path_resolved_against_project_root(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_PROJECT_ROOT", tmp_path.resolve())

    normalized = config.Settings._normalize_database_url("sqlite+aiosqlite:///./data/agent.db")

    expected_path = (tmp_path / "data" / "agent.db").resolve()
    assert normalized == f"sqlite+aiosqlite:///{expected_path}"


def test_absolute_and_memory_urls(tmp_path):
    absolute = (tmp_path / "x.db").resolve()

    assert (
        config.Settings._normalize_database_url(f"'sqlite+aiosqlite:///{absolute}'")
        == f"sqlite+aiosqlite:///{absolute}"
    )
    assert (
        config.Settings._normalize_database_url("sqlite+aiosqlite:///:memory:")
        == "sqlite+aiosqlite:///:memory:"
    )
    assert config.Settings._normalize_database_url("postgresql+asyncpg://db/agent") == (
        "postgresql+asyncpg://db/agent"
    )


def test_url_fields_trimmed(monkeypatch):
    monkeypatch.setenv("CLOUD_API_URL", ' "https://cloud.example.com/" ')
    monkeypatch.setenv("AGENT_SECRETS_KEY", "   ")

    settings = config.Settings()

    assert settings.CLOUD_API_URL == "https://cloud.example.com"
    assert settings.AGENT_SECRETS_KEY is None


def test_broker_mode_selects_session(monkeypatch):
    from services.broker import RealBrokerSession, SimulatedBrokerSession, create_broker_session

    monkeypatch.setenv("BROKER_MODE", "simulated")
    assert isinstance(create_broker_session(config.Settings()), SimulatedBrokerSession)

    monkeypatch.setenv("BROKER_MODE", "live")
    assert isinstance(create_broker_session(config.Settings()), RealBrokerSession)
