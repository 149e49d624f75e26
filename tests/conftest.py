"""Pytest configuration - make the local *jenkins_entrypoint* package importable.

The project root is put on ``sys.path`` once at the beginning of the session
so the tests work without an editable install.  The fixtures below build a
throw-away image bundle and volume under ``tmp_path`` and keep every helper
away from the real service account and CA mounts of the machine running the
suite.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


def pytest_configure() -> None:  # noqa: D401 - Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parent.parent)).resolve()
    if str(root) not in sys.path:  # pragma: no cover - executed once
        sys.path.insert(0, str(root))


@pytest.fixture(autouse=True)
def _isolate_host(monkeypatch, tmp_path):
    """Point the cluster and trust store lookups at empty temporary paths."""

    from jenkins_entrypoint import certs, kube

    monkeypatch.setattr(kube, "SERVICE_ACCOUNT_DIR", tmp_path / "no-serviceaccount")
    monkeypatch.setattr(certs, "SERVICE_ACCOUNT_BUNDLES", ())
    monkeypatch.setattr(certs, "TRUSTSTORE", tmp_path / "truststore" / "cacerts")
    monkeypatch.setattr(certs, "JDK_CACERTS", tmp_path / "no-jdk-cacerts")


@pytest.fixture()
def image_dirs(tmp_path):
    """Empty image layout: configuration, image plugins and RPM plugins."""

    root = tmp_path / "image"
    dirs = SimpleNamespace(
        config=root / "configuration",
        plugins=root / "plugins",
        rpm=root / "rpm",
    )
    for directory in vars(dirs).values():
        directory.mkdir(parents=True)
    return dirs


@pytest.fixture()
def make_bundle(image_dirs):
    """Factory returning an :class:`ImageBundle` over :func:`image_dirs`."""

    from jenkins_entrypoint.reconcile import ImageBundle

    def _make(version: str = "4.0") -> ImageBundle:
        return ImageBundle(
            version=version,
            config_dir=image_dirs.config,
            plugins_dir=image_dirs.plugins,
            rpm_plugins_dir=image_dirs.rpm,
        )

    return _make


@pytest.fixture()
def home(tmp_path):
    """Location of the (not yet created) Jenkins volume."""

    return tmp_path / "volume"


def snapshot(root: Path) -> dict[str, tuple[str, str]]:
    """Return ``{relative path: (kind, content-or-link)}`` for everything under *root*."""

    state: dict[str, tuple[str, str]] = {}
    for path in sorted(root.rglob("*")):
        rel = str(path.relative_to(root))
        if path.is_symlink():
            state[rel] = ("link", os.readlink(path))
        elif path.is_dir():
            state[rel] = ("dir", "")
        else:
            state[rel] = ("file", path.read_text(encoding="utf-8"))
    return state


@pytest.fixture()
def take_snapshot():
    return snapshot
