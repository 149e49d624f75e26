"""Tests for the top-level *main* function.

The start-up sequence is run against a temporary ``JENKINS_HOME`` and an
image bundle under ``tmp_path``; ``os.execv``/``os.execvp`` are replaced so
the test process is never swapped out.
"""

from __future__ import annotations

import os

import pytest

import jenkins_entrypoint as ep
from jenkins_entrypoint import plugins, reconcile


@pytest.fixture()
def jenkins_env(monkeypatch, tmp_path, image_dirs):
    home = tmp_path / "jenkins-home"
    for key in list(os.environ):
        if key.startswith(("JENKINS_", "JAVA_", "OVERRIDE_PV_", "OPENSHIFT_", "KUBERNETES_")):
            monkeypatch.delenv(key, raising=False)
    for key in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY", "INSTALL_PLUGINS", "CUSTOM_CA_BUNDLE"):
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("JENKINS_HOME", str(home))
    monkeypatch.setenv("OPENSHIFT_JENKINS_IMAGE_VERSION", "4.0")
    monkeypatch.setattr(reconcile, "IMAGE_CONFIG_DIR", image_dirs.config)
    monkeypatch.setattr(plugins, "IMAGE_PLUGINS_DIR", image_dirs.plugins)
    monkeypatch.setattr(plugins, "RPM_PLUGINS_DIR", image_dirs.rpm)
    monkeypatch.setattr(ep.entrypoint, "build_java_options", lambda env: ep.JavaOptions(heap=["-Xmx512m"]))
    return home


def test_custom_command_is_exec_d(monkeypatch):
    called = {}

    def _fake_execvp(file, args):
        called["file"] = file
        called["args"] = args
        raise SystemExit(0)

    monkeypatch.setattr(ep.entrypoint.os, "execvp", _fake_execvp)

    with pytest.raises(SystemExit):
        ep.main(["bash", "-l"])

    assert called == {"file": "bash", "args": ["bash", "-l"]}


def test_main_prepares_volume_and_execs_java(monkeypatch, tmp_path, image_dirs, jenkins_env):
    (image_dirs.rpm / "git.jpi").write_text("rpm")

    java = tmp_path / "java"
    java.write_text("")
    monkeypatch.setattr(ep.entrypoint, "_java_binary", lambda: str(java))

    captured = {}

    def _fake_execv(path, argv):
        captured["path"] = path
        captured["argv"] = argv
        raise SystemExit(0)

    monkeypatch.setattr(ep.entrypoint.os, "execv", _fake_execv)

    with pytest.raises(SystemExit) as exc:
        ep.main(["--prefix=/jenkins"])

    assert exc.value.code == 0
    assert captured["path"] == str(java)
    assert "-Xmx512m" in captured["argv"]
    assert captured["argv"][-2:] == ["--httpPort=8080", "--prefix=/jenkins"]

    assert (jenkins_env / "configured").exists()
    assert (jenkins_env / "image-version").read_text() == "4.0\n"
    assert (jenkins_env / "plugins" / "git.jpi").is_symlink()


def test_main_dev_mode_returns_without_exec(monkeypatch, tmp_path, jenkins_env, capsys):
    monkeypatch.setattr(ep.entrypoint, "_java_binary", lambda: str(tmp_path / "missing-java"))
    monkeypatch.setattr(ep.entrypoint.os, "execv", lambda *a: pytest.fail("execv called"))

    ep.main([])

    assert "would exec" in capsys.readouterr().err
    assert (jenkins_env / "configured").exists()


def test_main_syncs_password_on_later_starts(monkeypatch, tmp_path, jenkins_env):
    monkeypatch.setattr(ep.entrypoint, "_java_binary", lambda: str(tmp_path / "missing-java"))
    calls = []
    monkeypatch.setattr(ep.entrypoint, "sync_admin_password", lambda home, env: calls.append(home))

    ep.main([])
    ep.main([])

    assert calls == [jenkins_env]


def test_main_fatal_error_exits_1(monkeypatch, jenkins_env, capsys):
    def _boom(*_a, **_kw):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(ep.entrypoint, "reconcile", _boom)

    with pytest.raises(SystemExit) as exc:
        ep.main([])

    assert exc.value.code == 1
    assert "FATAL: disk on fire" in capsys.readouterr().err
