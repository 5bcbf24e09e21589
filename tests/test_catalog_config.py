"""Tests for settings, the built-in catalog and services-file loading."""

import json

import pytest

from stackready.catalog import build_catalog, default_catalog, load_catalog
from stackready.config import load_settings
from stackready.exceptions import ConfigurationError
from stackready.models import CommandCheck, HttpCheck


# -------------------------------------------------------------------
# Settings
# -------------------------------------------------------------------


def test_default_settings(clean_env):
    settings = load_settings()
    assert settings.health_check_timeout == 120
    assert settings.health_check_interval == 2
    assert settings.profile == "full"
    assert settings.fail_fast is False
    assert settings.check_ports is None
    assert settings.database_dsn == "postgresql://postgres@localhost:5432/zero_to_running_dev"
    assert settings.redis_url == "redis://localhost:6379/0"


def test_settings_from_environment(clean_env, monkeypatch):
    monkeypatch.setenv("HEALTH_CHECK_TIMEOUT", "300")
    monkeypatch.setenv("PROFILE", "minimal")
    monkeypatch.setenv("DATABASE_PASSWORD", "pw")
    settings = load_settings()
    assert settings.health_check_timeout == 300
    assert settings.profile == "minimal"
    assert settings.database_dsn.startswith("postgresql://postgres:pw@")


def test_settings_from_dotenv(clean_env):
    (clean_env / ".env").write_text("HEALTH_CHECK_INTERVAL=5\nREDIS_PASSWORD=r3d1s\n")
    settings = load_settings()
    assert settings.health_check_interval == 5
    assert settings.redis_url == "redis://:r3d1s@localhost:6379/0"


def test_overrides_win_and_none_is_ignored(clean_env, monkeypatch):
    monkeypatch.setenv("HEALTH_CHECK_TIMEOUT", "300")
    settings = load_settings(health_check_timeout=30, profile=None)
    assert settings.health_check_timeout == 30
    assert settings.profile == "full"


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"health_check_timeout": 0}, "HEALTH_CHECK_TIMEOUT"),
        ({"probe_timeout": -1}, "PROBE_TIMEOUT"),
        ({"grace_period": -1}, "GRACE_PERIOD"),
        ({"output_format": "xml"}, "OUTPUT_FORMAT"),
        ({"log_format": "yaml"}, "LOG_FORMAT"),
    ],
)
def test_invalid_settings(clean_env, overrides, field):
    with pytest.raises(ConfigurationError, match=field):
        load_settings(**overrides)


def test_non_numeric_environment_value(clean_env, monkeypatch):
    monkeypatch.setenv("HEALTH_CHECK_TIMEOUT", "soon")
    with pytest.raises(ConfigurationError, match="health_check_timeout"):
        load_settings()


# -------------------------------------------------------------------
# Built-in catalog
# -------------------------------------------------------------------


def test_full_profile(clean_env):
    services = default_catalog(load_settings()).select("full")
    by_name = {s.name: s for s in services}

    assert list(by_name) == ["postgres", "redis", "backend", "frontend"]
    assert by_name["backend"].depends_on == {"postgres", "redis"}
    assert by_name["frontend"].depends_on == {"backend"}
    assert isinstance(by_name["postgres"].check, CommandCheck)
    assert by_name["postgres"].check.probe == "postgres-query"
    assert by_name["redis"].check.probe == "redis-ping"
    assert by_name["backend"].check == HttpCheck(url="http://localhost:3001/health/ready")
    assert by_name["frontend"].ports == (3000,)
    assert by_name["postgres"].check.required_tables == ()


def test_required_tables_reach_the_postgres_check(clean_env, monkeypatch):
    monkeypatch.setenv("DATABASE_REQUIRED_TABLES", "users, sessions,,")
    settings = load_settings()

    assert settings.required_tables == ("users", "sessions")
    postgres = next(s for s in default_catalog(settings).select("full") if s.name == "postgres")
    assert postgres.check.required_tables == ("users", "sessions")


def test_minimal_profile_drops_redis_edge(clean_env):
    services = default_catalog(load_settings()).select("minimal")
    by_name = {s.name: s for s in services}

    assert sorted(by_name) == ["backend", "postgres"]
    assert by_name["backend"].depends_on == {"postgres"}


def test_catalog_uses_timing_settings(clean_env):
    settings = load_settings(health_check_interval=0.5, grace_period=3, service_timeout=20)
    service = default_catalog(settings).select("full")[0]
    assert service.poll_interval == 0.5
    assert service.grace_period == 3
    assert service.timeout == 20


def test_unknown_profile_lists_available(clean_env):
    with pytest.raises(ConfigurationError, match="full, minimal"):
        default_catalog(load_settings()).select("huge")


def test_select_none_returns_everything(clean_env):
    assert len(default_catalog(load_settings()).select(None)) == 4


def test_duplicate_service_names(make_service):
    with pytest.raises(ConfigurationError, match="Duplicate"):
        build_catalog([make_service("db"), make_service("db")])


def test_dependency_outside_catalog(make_service):
    with pytest.raises(ConfigurationError, match="ghost"):
        build_catalog([make_service("api", ["ghost"])])


def test_profile_with_unknown_member(make_service):
    with pytest.raises(ConfigurationError, match="ghost"):
        build_catalog([make_service("api")], {"core": ["api", "ghost"]})


# -------------------------------------------------------------------
# Services file
# -------------------------------------------------------------------


def test_load_services_file(clean_env):
    path = clean_env / "services.json"
    path.write_text(json.dumps({
        "profiles": {"core": ["db", "api"]},
        "services": [
            {"name": "db", "kind": "database", "ports": [5432],
             "check": {"type": "tcp", "host": "localhost", "port": 5432}},
            {"name": "api", "kind": "api", "depends_on": ["db"], "grace_period": 1,
             "check": {"type": "http", "url": "http://localhost:8080/health", "expected_status": [200, 204]}},
            {"name": "worker", "depends_on": ["db"],
             "check": {"type": "command", "probe": "exec", "target": "true"}},
        ],
    }))

    catalog = load_catalog(path, load_settings(health_check_interval=3))

    assert catalog.profiles == {"core": ["db", "api"]}
    api = catalog.services["api"]
    assert api.check.expected_status == (200, 204)
    assert api.grace_period == 1
    assert api.poll_interval == 3
    assert [s.name for s in catalog.select("core")] == ["db", "api"]


def test_services_file_missing(clean_env):
    with pytest.raises(ConfigurationError, match="not found"):
        load_catalog(clean_env / "nope.json", load_settings())


def test_services_file_bad_check_type(clean_env):
    path = clean_env / "services.json"
    path.write_text(json.dumps({"services": [{"name": "db", "check": {"type": "smtp"}}]}))
    with pytest.raises(ConfigurationError, match="invalid service 'db'"):
        load_catalog(path, load_settings())


def test_services_file_without_services_list(clean_env):
    path = clean_env / "services.json"
    path.write_text("{}")
    with pytest.raises(ConfigurationError, match="'services' list"):
        load_catalog(path, load_settings())
