"""Tests for EngineSettings.from_env()."""

import os
from unittest.mock import patch

import pytest

from workflow_builder.config import EngineSettings


class TestEngineSettings:
    def test_defaults(self):
        """Unset variables fall back to the dataclass defaults."""
        with patch.dict(os.environ, {}, clear=True):
            settings = EngineSettings.from_env()
        assert settings == EngineSettings()
        assert settings.history_limit == 50
        assert settings.log_level == "WARNING"

    def test_values_from_environment(self):
        env = {
            "WORKFLOW_HISTORY_LIMIT": "5",
            "WORKFLOW_ALLOW_SELF_LOOPS": "yes",
            "WORKFLOW_STRICT_SINGLE_TRIGGER": "1",
            "WORKFLOW_SUMMARY_DELAY": "0",
            "WORKFLOW_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = EngineSettings.from_env()

        assert settings.history_limit == 5
        assert settings.allow_self_loops is True
        assert settings.strict_single_trigger is True
        assert settings.summary_delay == 0.0
        assert settings.log_level == "DEBUG"

    def test_blank_bool_uses_default(self):
        with patch.dict(os.environ, {"WORKFLOW_ALLOW_SELF_LOOPS": "  "}, clear=True):
            assert EngineSettings.from_env().allow_self_loops is False

    def test_history_limit_must_be_positive(self):
        with patch.dict(os.environ, {"WORKFLOW_HISTORY_LIMIT": "0"}, clear=True):
            with pytest.raises(ValueError, match="WORKFLOW_HISTORY_LIMIT"):
                EngineSettings.from_env()

    def test_frozen(self):
        with pytest.raises(Exception):
            EngineSettings().history_limit = 3

    def test_apply_options(self):
        settings = EngineSettings(allow_self_loops=True)
        assert settings.apply_options == {"allow_self_loops": True, "strict_single_trigger": False}
