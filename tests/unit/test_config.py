"""Unit tests for configuration objects."""

import pytest

from delta_stream.config import (
    DEFAULT_API_SERVER,
    ClientConfig,
    StreamConfig,
    StreamParams,
)
from delta_stream.errors import SetupError


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig()
        assert config.api_server == DEFAULT_API_SERVER
        assert config.access_token is None

    def test_trailing_slash_is_stripped(self):
        assert ClientConfig(api_server="https://api.test/").api_server == "https://api.test"

    def test_api_server_must_be_fully_qualified(self):
        with pytest.raises(SetupError):
            ClientConfig(api_server="api.test")

    def test_require_token(self):
        assert ClientConfig(access_token="tok").require_token() == "tok"
        with pytest.raises(SetupError, match="requires an access token"):
            ClientConfig().require_token()

    def test_from_env(self):
        config = ClientConfig.from_env(
            {
                "DELTA_STREAM_API_SERVER": "http://localhost:5555",
                "DELTA_STREAM_ACCESS_TOKEN": "tok",
                "DELTA_STREAM_TIMEOUT": "5",
            }
        )
        assert config.api_server == "http://localhost:5555"
        assert config.access_token == "tok"
        assert config.timeout == 5.0

    def test_from_env_empty(self):
        assert ClientConfig.from_env({}) == ClientConfig()

    def test_from_env_bad_timeout(self):
        with pytest.raises(SetupError):
            ClientConfig.from_env({"DELTA_STREAM_TIMEOUT": "soon"})


class TestStreamConfig:
    def test_defaults(self):
        config = StreamConfig()
        assert config.streaming_timeout == 15.0
        assert config.max_restart_retries == 5
        assert (config.initial_delay, config.max_delay, config.factor) == (0.25, 30.0, 4.0)
        assert config.randomization_factor == 0.5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"streaming_timeout": 0},
            {"max_restart_retries": -1},
            {"initial_delay": 0},
            {"initial_delay": 5.0, "max_delay": 1.0},
            {"factor": 0.5},
            {"randomization_factor": 1.5},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            StreamConfig(**overrides)


class TestStreamParams:
    """Query string construction."""

    def test_cursor_only(self):
        assert StreamParams().to_query("abc") == {"cursor": "abc"}

    def test_types_are_comma_joined(self):
        params = StreamParams(include_types=["thread", "message"], exclude_types=("contact",))
        assert params.to_query("abc") == {
            "cursor": "abc",
            "exclude_types": "contact",
            "include_types": "thread,message",
        }

    def test_types_from_string(self):
        params = StreamParams(include_types="thread, message,,")
        assert params.include_types == ("thread", "message")

    def test_expanded(self):
        assert StreamParams(expanded=True).to_query("abc")["expanded"] == "true"

    def test_extra_params_are_passed_through(self):
        params = StreamParams(extra={"view": "count", "ignored": None})
        assert params.to_query("abc") == {"view": "count", "cursor": "abc"}

    def test_cursor_wins_over_extra(self):
        params = StreamParams(extra={"cursor": "stale"})
        assert params.to_query("fresh")["cursor"] == "fresh"

    def test_immutable(self):
        params = StreamParams()
        with pytest.raises(AttributeError):
            params.expanded = True  # type: ignore[misc]
