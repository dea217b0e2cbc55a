# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the ``prerender`` entry point: argument parsing and config overrides."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from prerender.config import PrerenderConfig
from prerender.server import build_config, main, parse_server_args


class TestParseServerArgs:
    def test_defaults(self):
        args = parse_server_args([])
        assert args.host is None
        assert args.port is None
        assert args.max_concurrency is None
        assert args.log_json is False
        assert args.drain_timeout == 30

    def test_flags(self):
        args = parse_server_args(["--port", "8080", "--max-concurrency", "2", "--log-json"])
        assert args.port == 8080
        assert args.max_concurrency == 2
        assert args.log_json is True

    def test_unknown_args_ignored(self):
        args = parse_server_args(["--port", "9000", "--reload"])
        assert args.port == 9000


class TestBuildConfig:
    def test_no_overrides_returns_base(self):
        base = PrerenderConfig(port=4000)
        assert build_config(parse_server_args([]), base) is base

    def test_overrides_applied(self):
        base = PrerenderConfig()
        config = build_config(parse_server_args(["--host", "127.0.0.1", "--port", "8081", "--log-json"]), base)
        assert config.host == "127.0.0.1"
        assert config.port == 8081
        assert config.log_json is True
        assert config.cache_max_size == base.cache_max_size

    def test_invalid_override_raises(self):
        with pytest.raises(ValueError):
            build_config(parse_server_args(["--max-concurrency", "0"]), PrerenderConfig())


class TestMain:
    def test_invalid_config_exits_2(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--max-concurrency", "0"])
        assert exc_info.value.code == 2
        assert "invalid configuration" in capsys.readouterr().err

    def test_runs_server(self):
        with (
            patch("prerender.logging_config.configure") as configure,
            patch("anyio.run") as run,
        ):
            main(["--port", "3100"])
        configure.assert_called_once()
        run.assert_called_once()
