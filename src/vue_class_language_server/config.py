import logging
import os
import shlex
import sys
from typing import Any, List, Mapping, Optional

import attrs

logger = logging.getLogger(__name__)

LOG_FILE_ENV = "VUE_CLASS_LS_LOG_FILE"
LOG_LEVEL_ENV = "VUE_CLASS_LS_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@attrs.define
class ServerConfig:
    """Settings read from ``initializationOptions``, with environment fallbacks."""

    typescript_server_command: List[str] = attrs.field(factory=list)
    use_typescript: bool = True
    diagnostics_delay: float = 0.3
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_initialization_options(cls, options: Optional[Mapping[str, Any]]) -> "ServerConfig":
        options = options or {}
        config = cls(
            log_level=os.environ.get(LOG_LEVEL_ENV, "INFO"),
            log_file=os.environ.get(LOG_FILE_ENV) or None,
        )

        command = options.get("typescriptServerCommand")
        if isinstance(command, str):
            config.typescript_server_command = shlex.split(command)
        elif isinstance(command, list):
            config.typescript_server_command = [str(part) for part in command]

        if "useTypeScript" in options:
            config.use_typescript = bool(options["useTypeScript"])

        delay = options.get("diagnosticsDelay")
        if delay is not None:
            try:
                config.diagnostics_delay = max(float(delay), 0.0)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid diagnosticsDelay: {delay!r}")

        if options.get("logLevel"):
            config.log_level = str(options["logLevel"])
        if options.get("logFile"):
            config.log_file = str(options["logFile"])
        return config

    @property
    def level(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Log to stderr and optionally to a file. Stdout carries the protocol."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def apply_logging(config: ServerConfig) -> None:
    """Reconfigure logging once the client sent its options."""
    configure_logging(config.level, config.log_file)
    logger.info(f"Log level {logging.getLevelName(config.level)}")
