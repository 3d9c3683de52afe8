"""
Configuration management utilities for kernelbridge.

Settings come from an external collaborator as a plain mapping. Each getter
reads one key with an appropriate default and falls back to that default
(logging a warning) when the value is malformed. The assembled BridgeConfig
is passed explicitly to connect/execute; nothing here reads global state.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple

DEFAULT_TEXT_OUTPUT_LIMIT = 20000
DEFAULT_LAUNCH_TIMEOUT_MS = 60000
DEFAULT_KERNEL_READY_TIMEOUT_MS = 30000
DEFAULT_SHUTDOWN_TIMEOUT_MS = 2000
DEFAULT_KERNEL_NAME = "python3"
DEFAULT_KERNEL_LANGUAGE = "python"
DEFAULT_MARKDOWN_REGEX = r"^\s*#\s*(%%|<codecell>|In\[\d*?\]|In\[ \])\s*\[markdown\]|^\s*#\s*<markdowncell>"


@dataclass(frozen=True)
class BridgeConfig:
    """Explicit configuration threaded through connect and execute."""

    text_output_limit: int = DEFAULT_TEXT_OUTPUT_LIMIT
    use_default_config: bool = True
    allow_unauthorized_remote: bool = False
    launch_timeout_ms: int = DEFAULT_LAUNCH_TIMEOUT_MS
    kernel_ready_timeout_ms: int = DEFAULT_KERNEL_READY_TIMEOUT_MS
    shutdown_timeout_ms: int = DEFAULT_SHUTDOWN_TIMEOUT_MS
    kernel_name: str = DEFAULT_KERNEL_NAME
    kernel_language: str = DEFAULT_KERNEL_LANGUAGE
    markdown_regex: str = DEFAULT_MARKDOWN_REGEX
    startup_code: Tuple[str, ...] = field(default_factory=tuple)


def _get_int(settings: Mapping[str, Any], key: str, default: int, logger: logging.Logger, minimum: int = 0) -> int:
    try:
        value = settings.get(key, default)
        if isinstance(value, bool):
            raise TypeError(f"expected an integer, got {value!r}")
        value = int(value)
        if value < minimum:
            raise ValueError(f"{value} is below the minimum of {minimum}")
        return value
    except Exception as e:
        logger.warning(f"Invalid value for setting '{key}', using default {default}: {e}")
        return default


def _get_bool(settings: Mapping[str, Any], key: str, default: bool, logger: logging.Logger) -> bool:
    try:
        value = settings.get(key, default)
        if not isinstance(value, bool):
            raise TypeError(f"expected a boolean, got {value!r}")
        return value
    except Exception as e:
        logger.warning(f"Invalid value for setting '{key}', using default {default}: {e}")
        return default


def get_text_output_limit(settings: Mapping[str, Any], logger: logging.Logger) -> int:
    """
    Get the text output ceiling for a single cell.

    Args:
        settings: Mapping supplied by the settings collaborator
        logger: Logger instance for error reporting

    Returns:
        int: Maximum number of characters of stream text kept per output.
             0 disables truncation. Defaults to 20000.
    """
    return _get_int(settings, "text_output_limit", DEFAULT_TEXT_OUTPUT_LIMIT, logger)


def get_use_default_config(settings: Mapping[str, Any], logger: logging.Logger) -> bool:
    """
    Get whether local servers are launched with an isolated, empty Jupyter config.

    Returns:
        bool: Defaults to True, which ignores the user's own jupyter_notebook_config.py.
    """
    return _get_bool(settings, "use_default_config", True, logger)


def get_allow_unauthorized_remote(settings: Mapping[str, Any], logger: logging.Logger) -> bool:
    """
    Get whether remote servers with self-signed certificates may be used.

    This is disabled by default; certificate verification is only skipped
    when the user opts in explicitly.
    """
    return _get_bool(settings, "allow_unauthorized_remote", False, logger)


def get_launch_timeout_ms(settings: Mapping[str, Any], logger: logging.Logger) -> int:
    return _get_int(settings, "launch_timeout_ms", DEFAULT_LAUNCH_TIMEOUT_MS, logger, minimum=1)


def get_kernel_ready_timeout_ms(settings: Mapping[str, Any], logger: logging.Logger) -> int:
    return _get_int(settings, "kernel_ready_timeout_ms", DEFAULT_KERNEL_READY_TIMEOUT_MS, logger, minimum=1)


def get_shutdown_timeout_ms(settings: Mapping[str, Any], logger: logging.Logger) -> int:
    return _get_int(settings, "shutdown_timeout_ms", DEFAULT_SHUTDOWN_TIMEOUT_MS, logger, minimum=1)


def get_kernel_name(settings: Mapping[str, Any], logger: logging.Logger) -> str:
    try:
        name = settings.get("kernel_name", DEFAULT_KERNEL_NAME)
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"expected a kernel name, got {name!r}")
        return name
    except Exception as e:
        logger.warning(f"Invalid kernel name setting, using default '{DEFAULT_KERNEL_NAME}': {e}")
        return DEFAULT_KERNEL_NAME


def get_kernel_language(settings: Mapping[str, Any], logger: logging.Logger) -> str:
    """Language used to pick a fallback kernel spec when kernel_name is not installed."""
    language = settings.get("kernel_language", DEFAULT_KERNEL_LANGUAGE)
    if not isinstance(language, str) or not language.strip():
        logger.warning(f"Invalid kernel language setting, using default '{DEFAULT_KERNEL_LANGUAGE}'")
        return DEFAULT_KERNEL_LANGUAGE
    return language.lower()


def get_markdown_regex(settings: Mapping[str, Any], logger: logging.Logger) -> str:
    """
    Get the regular expression that marks a cell as markdown.

    Returns:
        str: Matched against the first line of the submitted source. An empty
             value in the settings means the default pattern.
    """
    try:
        pattern = settings.get("markdown_regex") or DEFAULT_MARKDOWN_REGEX
        if not isinstance(pattern, str):
            raise TypeError(f"expected a string, got {pattern!r}")
        re.compile(pattern)
        return pattern
    except Exception as e:
        logger.warning(f"Invalid markdown regex setting, using default: {e}")
        return DEFAULT_MARKDOWN_REGEX


def get_startup_code(settings: Mapping[str, Any], logger: logging.Logger) -> Tuple[str, ...]:
    try:
        lines = settings.get("startup_code", ())
        if isinstance(lines, str):
            lines = [lines]
        result: List[str] = [line for line in lines if isinstance(line, str) and line.strip()]
        return tuple(result)
    except Exception as e:
        logger.warning(f"Invalid startup_code setting, ignoring it: {e}")
        return ()


def load_config(settings: Optional[Mapping[str, Any]] = None, logger: Optional[logging.Logger] = None) -> BridgeConfig:
    """
    Assemble a BridgeConfig from a settings mapping.

    Args:
        settings: Mapping supplied by the settings collaborator (may be None)
        logger: Logger instance for error reporting

    Returns:
        BridgeConfig: Configuration with defaults for anything missing or invalid
    """
    settings = settings or {}
    logger = logger or logging.getLogger("kernelbridge.config")
    return BridgeConfig(
        text_output_limit=get_text_output_limit(settings, logger),
        use_default_config=get_use_default_config(settings, logger),
        allow_unauthorized_remote=get_allow_unauthorized_remote(settings, logger),
        launch_timeout_ms=get_launch_timeout_ms(settings, logger),
        kernel_ready_timeout_ms=get_kernel_ready_timeout_ms(settings, logger),
        shutdown_timeout_ms=get_shutdown_timeout_ms(settings, logger),
        kernel_name=get_kernel_name(settings, logger),
        kernel_language=get_kernel_language(settings, logger),
        markdown_regex=get_markdown_regex(settings, logger),
        startup_code=get_startup_code(settings, logger),
    )


def configure_logging(filename: Optional[str] = None, level: int = logging.DEBUG) -> None:
    """
    Route kernelbridge logs to a file (or stderr when no filename is given).

    Intended for host applications; importing kernelbridge never configures logging.
    """
    logger = logging.getLogger("kernelbridge")
    handler = logging.FileHandler(filename) if filename else logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
