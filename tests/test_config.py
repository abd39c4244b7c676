"""Config module tests.

ESM_* environment variable parsing and configuration management.
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest

from exec_session_mcp.config import (
    DEFAULT_INTERRUPT_GRACE,
    Config,
    PtyMode,
    SigintMode,
    get_config,
    load_config,
    reload_config,
)


def _clean_env(**overrides: str) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith("ESM_")}
    env.update(overrides)
    return env


class TestDefaults:
    """Unset variables."""

    def test_defaults(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            config = load_config()
        assert config.gui_enabled is True
        assert config.gui_host == "127.0.0.1"
        assert config.gui_port == 0
        assert config.debug is False
        assert config.log_debug is False
        assert config.log_file is None
        assert config.sigint_mode == SigintMode.INTERRUPT
        assert config.sigint_double_tap_window == 1.0
        assert config.interrupt_grace == DEFAULT_INTERRUPT_GRACE
        assert config.pty_mode == PtyMode.AUTO
        assert config.workdir == Path.home()
        assert config.languages == {}

    def test_dataclass_defaults_match(self):
        config = Config()
        assert config.interrupt_grace == 3.0
        assert config.workdir == Path.home()


class TestParseBool:
    """Boolean variables."""

    @pytest.mark.parametrize("value", ["true", "1", "yes", "on", "TRUE", "Yes"])
    def test_truthy(self, value: str):
        with mock.patch.dict(os.environ, _clean_env(ESM_DEBUG=value), clear=True):
            assert load_config().debug is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "", "maybe"])
    def test_falsy(self, value: str):
        with mock.patch.dict(os.environ, _clean_env(ESM_DEBUG=value), clear=True):
            assert load_config().debug is False

    def test_gui_disabled(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_GUI="false"), clear=True):
            assert load_config().gui_enabled is False


class TestNumbers:
    """Ports and clamped floats."""

    def test_port(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_GUI_PORT="8765"), clear=True):
            assert load_config().gui_port == 8765

    @pytest.mark.parametrize("value", ["abc", "-1", "70000"])
    def test_invalid_port_is_random(self, value: str):
        with mock.patch.dict(os.environ, _clean_env(ESM_GUI_PORT=value), clear=True):
            assert load_config().gui_port == 0

    def test_interrupt_grace(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_INTERRUPT_GRACE="1.5"), clear=True):
            assert load_config().interrupt_grace == 1.5

    def test_interrupt_grace_clamped(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_INTERRUPT_GRACE="0"), clear=True):
            assert load_config().interrupt_grace == 0.1
        with mock.patch.dict(os.environ, _clean_env(ESM_INTERRUPT_GRACE="999"), clear=True):
            assert load_config().interrupt_grace == 60.0

    def test_interrupt_grace_invalid(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_INTERRUPT_GRACE="soon"), clear=True):
            assert load_config().interrupt_grace == DEFAULT_INTERRUPT_GRACE

    def test_double_tap_window(self):
        env = _clean_env(ESM_SIGINT_DOUBLE_TAP_WINDOW="2.5")
        with mock.patch.dict(os.environ, env, clear=True):
            assert load_config().sigint_double_tap_window == 2.5


class TestModes:
    """Enum variables."""

    def test_sigint_mode(self):
        env = _clean_env(ESM_SIGINT_MODE="interrupt_then_exit")
        with mock.patch.dict(os.environ, env, clear=True):
            assert load_config().sigint_mode == SigintMode.INTERRUPT_THEN_EXIT

    def test_pty_mode(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_PTY="Never"), clear=True):
            assert load_config().pty_mode == PtyMode.NEVER

    def test_pty_mode_invalid(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_PTY="sometimes"), clear=True):
            assert load_config().pty_mode == PtyMode.AUTO


class TestLanguages:
    """ESM_LANGUAGES parsing."""

    def test_single(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_LANGUAGES="ruby=ruby -e"), clear=True):
            assert load_config().languages == {"ruby": ["ruby", "-e"]}

    def test_multiple_and_case(self):
        env = _clean_env(ESM_LANGUAGES="Ruby=ruby -e; perl = perl -e")
        with mock.patch.dict(os.environ, env, clear=True):
            assert load_config().languages == {
                "ruby": ["ruby", "-e"],
                "perl": ["perl", "-e"],
            }

    def test_malformed_items_skipped(self):
        env = _clean_env(ESM_LANGUAGES="noequals;=ruby -e;lua=;tcl=tclsh")
        with mock.patch.dict(os.environ, env, clear=True):
            assert load_config().languages == {"tcl": ["tclsh"]}


class TestWorkdirAndLogging:
    def test_workdir(self, tmp_path: Path):
        with mock.patch.dict(os.environ, _clean_env(ESM_WORKDIR=str(tmp_path)), clear=True):
            assert load_config().workdir == tmp_path

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_LOG_DEBUG="1"), clear=True):
            config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert Path(config.log_file).name.startswith("esm_debug_")
        assert Path(config.log_file).parent.is_dir()


class TestGlobalConfig:
    def test_reload(self):
        with mock.patch.dict(os.environ, _clean_env(ESM_DEBUG="1"), clear=True):
            config = reload_config()
            assert config.debug is True
            assert get_config() is config
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            assert reload_config().debug is False

    def test_repr(self):
        text = repr(Config(languages={"ruby": ["ruby", "-e"]}))
        assert "sigint_mode=interrupt" in text
        assert "languages=ruby" in text
