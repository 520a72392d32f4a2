"""
Tests for server bootstrap: port selection, transport settings and process hooks.
"""
import asyncio
import sys
from unittest.mock import MagicMock, patch

import pytest

from app.core.config import Settings
from app.core.lifecycle import ProcessGuard
from app.realtime.socket import create_socket_server
from app.server import banner, build_server_config


class TestPort:
    def test_default_port(self, monkeypatch):
        monkeypatch.delenv("PORT", raising=False)
        config = build_server_config(Settings(_env_file=None))
        assert config.port == 5000

    def test_port_from_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "8123")
        config = build_server_config(Settings(_env_file=None))
        assert config.port == 8123

    def test_serves_combined_app(self):
        config = build_server_config(Settings(_env_file=None))
        assert config.app == "app.main:asgi_app"


class TestEnvironment:
    def test_node_env_default(self, monkeypatch):
        monkeypatch.delenv("NODE_ENV", raising=False)
        config = Settings(_env_file=None)
        assert config.NODE_ENV == "development"
        assert config.is_development

    def test_mode_comes_from_node_env_only(self):
        config = Settings(_env_file=None, NODE_ENV="test")
        assert not config.is_development
        assert not config.is_production
        assert "TESTING" not in Settings.model_fields

    def test_banner_mentions_mode_and_port(self):
        lines = banner(Settings(_env_file=None, NODE_ENV="production", PORT=7000))
        text = "\n".join(lines)
        assert "Server running in production mode" in text
        assert "Port: 7000" in text
        assert "http://localhost:7000" in text


class TestSocketServer:
    def test_keepalive_defaults(self):
        sio = create_socket_server(Settings(_env_file=None))
        assert sio.eio.ping_timeout == 60
        assert sio.eio.ping_interval == 25

    def test_cors_mirrors_client_url(self):
        sio = create_socket_server(Settings(_env_file=None, CLIENT_URL="https://docs.example.com"))
        assert sio.eio.cors_allowed_origins == ["https://docs.example.com"]


class TestProcessGuard:
    def test_async_error_requests_graceful_exit(self):
        server = MagicMock()
        server.should_exit = False
        guard = ProcessGuard(server)

        guard.handle_async_error(MagicMock(), {"message": "boom", "exception": RuntimeError("boom")})

        assert server.should_exit is True
        assert guard.exit_code == 1

    def test_async_error_without_server_exits(self):
        guard = ProcessGuard()
        with patch("app.core.lifecycle.os._exit") as exit_mock:
            guard.handle_async_error(MagicMock(), {"message": "boom"})
        exit_mock.assert_called_once_with(1)

    def test_uncaught_exception_exits_immediately(self):
        guard = ProcessGuard(MagicMock())
        previous = MagicMock()
        guard._previous_excepthook = previous
        error = ValueError("bad")

        with patch("app.core.lifecycle.os._exit") as exit_mock:
            guard.handle_uncaught_exception(ValueError, error, None)

        previous.assert_called_once_with(ValueError, error, None)
        exit_mock.assert_called_once_with(1)

    def test_keyboard_interrupt_is_not_fatal(self):
        guard = ProcessGuard()
        guard._previous_excepthook = MagicMock()
        with patch("app.core.lifecycle.os._exit") as exit_mock:
            guard.handle_uncaught_exception(KeyboardInterrupt, KeyboardInterrupt(), None)
        exit_mock.assert_not_called()

    def test_install_and_uninstall_excepthook(self):
        original = sys.excepthook
        guard = ProcessGuard()
        guard.install_excepthook()
        try:
            assert sys.excepthook == guard.handle_uncaught_exception
        finally:
            guard.uninstall()
        assert sys.excepthook is original

    @pytest.mark.anyio
    async def test_unretrieved_task_error_reaches_handler(self):
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        server = MagicMock()
        guard = ProcessGuard(server)
        guard.install_loop_handler(loop)
        try:
            loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": RuntimeError("x")})
        finally:
            loop.set_exception_handler(previous)
        assert server.should_exit is True
        assert guard.exit_code == 1
