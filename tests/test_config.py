import pytest

from clipchain.core.config import Config, get_config, reset_config, set_config
from clipchain.core.exceptions import ConfigurationError
from clipchain.core.security import redact_api_key


def test_defaults_are_valid() -> None:
    config = Config()

    assert config.polling.interval == 10.0
    assert config.polling.max_attempts == 60
    assert config.chaining.failure_policy == "abort-on-first-failure"
    assert config.chaining.frame_epsilon == 0.1
    assert config.stitching.transition_type == "fade"
    assert config.performance.max_concurrent_submissions == 3


def test_from_dict_overrides_sections() -> None:
    config = Config.from_dict({
        "chaining": {"failure_policy": "best-effort"},
        "stitching": {"transition_type": "wipe", "transition_duration": 1.0},
    })

    assert config.chaining.failure_policy == "best-effort"
    assert config.stitching.transition_type == "wipe"
    assert config.video.segment_duration == 8


@pytest.mark.parametrize(
    "data",
    [
        {"chaining": {"failure_policy": "retry-forever"}},
        {"stitching": {"transition_type": "spin"}},
        {"stitching": {"crf": 99}},
        {"polling": {"max_attempts": 0}},
        {"video": {"resolution": "4k"}},
        {"performance": {"max_concurrent_submissions": 0}},
        {"chaining": {"unknown_key": 1}},
        {"no_such_section": {}},
    ],
)
def test_invalid_values_are_rejected(data) -> None:
    with pytest.raises(ConfigurationError):
        Config.from_dict(data)


def test_load_interpolates_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CLIPCHAIN_TEST_OUTPUT", str(tmp_path / "jobs"))
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "output:\n"
        "  base_path: ${CLIPCHAIN_TEST_OUTPUT}\n"
        "services:\n"
        "  video_service: ${CLIPCHAIN_TEST_SERVICE:-fal}\n"
    )

    config = Config.load(config_file)

    assert config.output.base_path == str(tmp_path / "jobs")
    assert config.services.video_service == "fal"


def test_load_rejects_missing_explicit_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        Config.load(tmp_path / "missing.yaml")


def test_load_rejects_invalid_yaml(tmp_path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("output: [unclosed\n")

    with pytest.raises(ConfigurationError):
        Config.load(config_file)


def test_global_config_can_be_replaced() -> None:
    custom = Config.from_dict({"chaining": {"failure_policy": "best-effort"}})
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        reset_config()


def test_api_keys_are_redacted() -> None:
    text = "Authorization: Key abcdef0123456789:secretsecret GOOGLE_API_KEY=xyz https://x/y?key=abc123"

    redacted = redact_api_key(text)

    assert "secretsecret" not in redacted
    assert "xyz" not in redacted
    assert "abc123" not in redacted
