import json

import pytest

from queuectl.config import Config
from queuectl.errors import ValidationError


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.json"


def test_first_use_writes_defaults(config_file):
    config = Config(str(config_file))
    assert json.loads(config_file.read_text()) == config.defaults
    assert config.get("stale_after") is None


def test_invalid_stored_values_fall_back_to_defaults(config_file):
    config_file.write_text(
        json.dumps({"base_delay": "two", "poll_interval": "fast", "max_retries": 2.5, "max_backoff": 60})
    )
    config = Config(str(config_file))
    assert config.get("base_delay") == 2
    assert config.get("poll_interval") == 2000
    assert config.get("max_retries") == 3
    assert config.get("max_backoff") == 60


def test_unknown_stored_keys_are_ignored(config_file):
    config_file.write_text(json.dumps({"colour": "red", "stale_after": 300}))
    config = Config(str(config_file))
    assert "colour" not in config.get_all()
    assert config.get("stale_after") == 300


@pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
def test_unusable_file_reads_as_defaults(config_file, content):
    config_file.write_text(content)
    config = Config(str(config_file))
    assert config.get_all() == config.defaults


@pytest.mark.parametrize("key,value", [("base_delay", -1), ("poll_interval", None), ("max_retries", True)])
def test_set_rejects_bad_values(config_file, key, value):
    config = Config(str(config_file))
    with pytest.raises(ValidationError):
        config.set(key, value)
    assert config.get(key) == config.defaults[key]
