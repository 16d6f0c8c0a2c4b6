import os

import pytest

from icestorm_server import config

ENV_VARS = ["PORT", "port", "HOST", "SYNTH_TOOLCHAIN_DIR", "SYNTH_MAKE", "SYNTH_WORKSPACE_ROOT", "SYNTH_TIMEOUT_SEC"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = config.load_settings()

    assert settings.port == 2019
    assert settings.host == "0.0.0.0"
    assert settings.make_command == ("make",)
    assert settings.toolchain_dir == os.path.abspath("./synthesis")
    assert settings.workspace_root is None
    assert settings.timeout_sec is None


def test_port_overrides(monkeypatch):
    monkeypatch.setenv("port", "3000")
    assert config.load_settings().port == 3000

    monkeypatch.setenv("PORT", "4000")
    assert config.load_settings().port == 4000


@pytest.mark.parametrize("value", ["abc", "0", "70000"])
def test_invalid_port(monkeypatch, value):
    monkeypatch.setenv("PORT", value)

    with pytest.raises(ValueError):
        config.load_settings()


def test_toolchain_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("SYNTH_MAKE", "make -j4")
    monkeypatch.setenv("SYNTH_TOOLCHAIN_DIR", str(tmp_path))
    monkeypatch.setenv("SYNTH_WORKSPACE_ROOT", str(tmp_path / "jobs"))
    monkeypatch.setenv("SYNTH_TIMEOUT_SEC", "120")

    settings = config.load_settings()

    assert settings.make_command == ("make", "-j4")
    assert settings.toolchain_dir == str(tmp_path)
    assert settings.workspace_root == str(tmp_path / "jobs")
    assert settings.timeout_sec == 120.0


def test_negative_timeout_rejected(monkeypatch):
    monkeypatch.setenv("SYNTH_TIMEOUT_SEC", "-5")

    with pytest.raises(ValueError):
        config.load_settings()
