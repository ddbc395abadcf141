import io
import json
import logging

import pytest

from config import Settings, configure_logging, load_settings


def test_defaults_without_file_or_environment():
    settings = load_settings(environ={})
    assert settings == Settings()
    assert not settings.uses_database


def test_yaml_file_then_environment(tmp_path):
    path = tmp_path / "printshop.yaml"
    path.write_text(
        "database_url: sqlite:///shop.db\n"
        "overdue_business_days: 3\n"
        "cors_origins: [http://localhost:3000]\n"
        "unknown_key: 1\n"
    )
    env = {"PRINTSHOP_CONFIG_FILE": str(path), "PRINTSHOP_OVERDUE_BUSINESS_DAYS": "4"}

    settings = load_settings(environ=env)

    assert settings.database_url == "sqlite:///shop.db"
    assert settings.overdue_business_days == 4
    assert settings.cors_origins == ["http://localhost:3000"]
    assert settings.uses_database


def test_environment_lists_are_comma_separated():
    settings = load_settings(environ={"PRINTSHOP_CORS_ORIGINS": "http://a, http://b"})
    assert settings.cors_origins == ["http://a", "http://b"]


def test_bad_values_are_rejected(tmp_path):
    with pytest.raises(ValueError, match="integer"):
        load_settings(environ={"PRINTSHOP_PORT": "eighty"})
    with pytest.raises(ValueError):
        load_settings(environ={"PRINTSHOP_OVERDUE_SCAN_INTERVAL_SECONDS": "0"})
    with pytest.raises(FileNotFoundError):
        load_settings(path=str(tmp_path / "missing.yaml"), environ={})


def test_configure_logging_emits_json_lines():
    stream = io.StringIO()
    root = configure_logging("DEBUG", stream=stream)
    try:
        logging.getLogger("printshop.test").info("claimed %s", "order-1")
    finally:
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)

    entry = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert entry["level"] == "INFO"
    assert entry["logger"] == "printshop.test"
    assert entry["message"] == "claimed order-1"
