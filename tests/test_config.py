import logging

from vue_class_language_server.config import (
    LOG_FILE_ENV,
    LOG_LEVEL_ENV,
    ServerConfig,
)


def test_defaults(monkeypatch):
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    monkeypatch.delenv(LOG_FILE_ENV, raising=False)
    config = ServerConfig.from_initialization_options(None)

    assert config.typescript_server_command == []
    assert config.use_typescript is True
    assert config.diagnostics_delay == 0.3
    assert config.level == logging.INFO
    assert config.log_file is None


def test_initialization_options(monkeypatch):
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    config = ServerConfig.from_initialization_options(
        {
            "typescriptServerCommand": "npx typescript-language-server --stdio",
            "useTypeScript": False,
            "diagnosticsDelay": "0",
            "logLevel": "debug",
        }
    )

    assert config.typescript_server_command == ["npx", "typescript-language-server", "--stdio"]
    assert config.use_typescript is False
    assert config.diagnostics_delay == 0.0
    assert config.level == logging.DEBUG


def test_command_list_and_invalid_delay():
    config = ServerConfig.from_initialization_options(
        {"typescriptServerCommand": ["node", "tls.js"], "diagnosticsDelay": "soon"}
    )
    assert config.typescript_server_command == ["node", "tls.js"]
    assert config.diagnostics_delay == 0.3


def test_environment_fallback(monkeypatch, tmp_path):
    log_file = str(tmp_path / "server.log")
    monkeypatch.setenv(LOG_LEVEL_ENV, "warning")
    monkeypatch.setenv(LOG_FILE_ENV, log_file)

    config = ServerConfig.from_initialization_options({})
    assert config.level == logging.WARNING
    assert config.log_file == log_file

    # Options win over the environment
    config = ServerConfig.from_initialization_options({"logLevel": "ERROR"})
    assert config.level == logging.ERROR


def test_unknown_level_falls_back_to_info():
    assert ServerConfig(log_level="chatty").level == logging.INFO
