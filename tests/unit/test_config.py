"""
Unit tests for configuration management.
"""

import logging
from unittest.mock import Mock, patch

import pytest

from kernelbridge.core.config import (
    DEFAULT_KERNEL_NAME,
    DEFAULT_MARKDOWN_REGEX,
    DEFAULT_TEXT_OUTPUT_LIMIT,
    BridgeConfig,
    configure_logging,
    get_allow_unauthorized_remote,
    get_kernel_language,
    get_kernel_name,
    get_markdown_regex,
    get_startup_code,
    get_text_output_limit,
    get_use_default_config,
    load_config,
)


class TestConfiguration:
    """Test cases for configuration utilities."""

    def test_get_text_output_limit_default(self):
        """Test get_text_output_limit returns the default when unset."""
        mock_logger = Mock()

        result = get_text_output_limit({}, mock_logger)

        assert result == DEFAULT_TEXT_OUTPUT_LIMIT
        mock_logger.warning.assert_not_called()

    def test_get_text_output_limit_zero_disables(self):
        """Test a zero ceiling is accepted (it disables trimming)."""
        assert get_text_output_limit({"text_output_limit": 0}, Mock()) == 0

    def test_get_text_output_limit_error_fallback(self):
        """Test get_text_output_limit falls back to the default on a malformed value."""
        mock_logger = Mock()

        result = get_text_output_limit({"text_output_limit": "lots"}, mock_logger)

        assert result == DEFAULT_TEXT_OUTPUT_LIMIT
        mock_logger.warning.assert_called_once()

    def test_get_text_output_limit_rejects_negative(self):
        mock_logger = Mock()

        assert get_text_output_limit({"text_output_limit": -5}, mock_logger) == DEFAULT_TEXT_OUTPUT_LIMIT
        mock_logger.warning.assert_called_once()

    def test_get_use_default_config(self):
        assert get_use_default_config({}, Mock()) is True
        assert get_use_default_config({"use_default_config": False}, Mock()) is False

    def test_get_allow_unauthorized_remote_rejects_non_bool(self):
        """Test truthy strings are not mistaken for an opt-in."""
        mock_logger = Mock()

        result = get_allow_unauthorized_remote({"allow_unauthorized_remote": "yes"}, mock_logger)

        assert result is False
        mock_logger.warning.assert_called_once()

    def test_get_kernel_name_error_fallback(self):
        mock_logger = Mock()

        assert get_kernel_name({"kernel_name": "  "}, mock_logger) == DEFAULT_KERNEL_NAME
        mock_logger.warning.assert_called_once()

    def test_get_kernel_language_is_lowercased(self):
        assert get_kernel_language({"kernel_language": "Python"}, Mock()) == "python"

    def test_get_markdown_regex_empty_means_default(self):
        assert get_markdown_regex({"markdown_regex": ""}, Mock()) == DEFAULT_MARKDOWN_REGEX

    def test_get_markdown_regex_invalid_pattern_falls_back(self):
        mock_logger = Mock()

        assert get_markdown_regex({"markdown_regex": "(unclosed"}, mock_logger) == DEFAULT_MARKDOWN_REGEX
        mock_logger.warning.assert_called_once()

    def test_get_startup_code_accepts_single_string(self):
        assert get_startup_code({"startup_code": "import numpy as np"}, Mock()) == ("import numpy as np",)

    def test_get_startup_code_drops_blank_entries(self):
        settings = {"startup_code": ["import os", "", "   ", 42, "x = 1"]}

        assert get_startup_code(settings, Mock()) == ("import os", "x = 1")

    def test_load_config_assembles_all_settings(self):
        settings = {
            "text_output_limit": 7,
            "use_default_config": False,
            "allow_unauthorized_remote": True,
            "launch_timeout_ms": 1000,
            "kernel_name": "conda-env",
            "startup_code": ["x = 1"],
        }

        config = load_config(settings, Mock())

        assert config == BridgeConfig(
            text_output_limit=7,
            use_default_config=False,
            allow_unauthorized_remote=True,
            launch_timeout_ms=1000,
            kernel_name="conda-env",
            startup_code=("x = 1",),
        )

    def test_load_config_without_settings_uses_defaults(self):
        assert load_config() == BridgeConfig()

    def test_config_is_immutable(self):
        config = BridgeConfig()

        with pytest.raises(Exception):
            config.text_output_limit = 1


class TestConfigureLogging:
    def test_configure_logging_attaches_file_handler(self, tmp_path):
        logger = logging.getLogger("kernelbridge")
        log_file = tmp_path / "kernelbridge.log"
        with patch.object(logger, "handlers", []):
            configure_logging(str(log_file), logging.INFO)

            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0], logging.FileHandler)
            assert logger.level == logging.INFO
            logger.handlers[0].close()
        logger.setLevel(logging.NOTSET)


if __name__ == "__main__":
    pytest.main([__file__])
