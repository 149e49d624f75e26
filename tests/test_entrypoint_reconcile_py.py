"""End-to-end tests for :func:`reconcile` against a temporary volume.

Each test builds a small image bundle (configuration, image plugins and RPM
plugins) under ``tmp_path`` and runs the full pass: decision, actions,
dangling link cleanup and ``image-version`` update.
"""

from __future__ import annotations

import os

import pytest

from jenkins_entrypoint import jenkins_config, password
from jenkins_entrypoint import reconcile as rc
from jenkins_entrypoint.password import DEFAULT_PASSWORD, hash_password, verify_password
from jenkins_entrypoint.reconcile import DecisionKind, PathKind, PathState, VolumeState


def _write(path, text=""):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _configured_volume(home, version=None):
    home.mkdir(parents=True, exist_ok=True)
    (home / rc.CONFIGURED_MARKER).touch()
    if version is not None:
        _write(home / rc.IMAGE_VERSION_MARKER, version + "\n")
    (home / rc.PLUGINS_DIR).mkdir(exist_ok=True)
    return home


# ---------------------------------------------------------------------------
#  Fresh volume
# ---------------------------------------------------------------------------


def test_fresh_volume_is_initialised(home, image_dirs, make_bundle):
    _write(image_dirs.config / "hudson.tasks.Maven.xml", "<maven/>")
    _write(image_dirs.config / "config.xml.tpl", "<hudson>$KUBERNETES_CONFIG</hudson>")
    _write(image_dirs.plugins / "git.jpi", "git-4.0")

    decision = rc.reconcile(home, make_bundle("4.0"), {})

    assert decision.kind is DecisionKind.FRESH_INIT
    assert (home / "configured").is_file()
    assert (home / "image-version").read_text() == "4.0\n"
    assert verify_password(DEFAULT_PASSWORD, (home / "password").read_text())
    assert (home / "hudson.tasks.Maven.xml").read_text() == "<maven/>"
    assert (home / "config.xml").read_text() == "<hudson></hudson>"
    assert not (home / "config.xml.tpl").exists()
    assert (home / "plugins" / "git.jpi").read_text() == "git-4.0"


def test_fresh_volume_links_rpm_plugins_and_copies_the_rest(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _write(image_dirs.plugins / "matrix-auth.hpi", "image")

    rc.reconcile(home, make_bundle(), {})

    git = home / "plugins" / "git.jpi"
    matrix = home / "plugins" / "matrix-auth.hpi"
    assert git.is_symlink() and git.resolve() == (image_dirs.rpm / "git.jpi").resolve()
    assert matrix.is_file() and not matrix.is_symlink()


def test_fresh_volume_keeps_prior_content(home, image_dirs, make_bundle):
    _write(image_dirs.plugins / "git.jpi", "image")
    _write(home / "plugins" / "git.jpi", "user")
    _write(home / "jobs" / "build" / "config.xml", "<job/>")

    decision = rc.reconcile(home, make_bundle("4.0"), {})

    assert decision.kind is DecisionKind.FRESH_INIT
    assert (home / "plugins" / "git.jpi").read_text() == "user"
    assert (home / "jobs" / "build" / "config.xml").read_text() == "<job/>"
    assert (home / "configured").exists()
    assert (home / "image-version").read_text().strip() == "4.0"


def test_fresh_volume_installs_additional_plugins(monkeypatch, home, make_bundle):
    from jenkins_entrypoint import plugins

    calls = []

    def _fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))

    monkeypatch.setattr(plugins.subprocess, "run", _fake_run)

    rc.reconcile(home, make_bundle(), {"INSTALL_PLUGINS": "git:4.11.0, workflow-aggregator:2.6"})

    assert len(calls) == 1
    cmd, kwargs = calls[0]
    assert cmd[1:] == ["git:4.11.0", "workflow-aggregator:2.6"]
    assert kwargs["env"]["REF"] == str(home / "plugins")
    assert kwargs["check"] is True


# ---------------------------------------------------------------------------
#  Migration
# ---------------------------------------------------------------------------


def test_upgrade_relinks_bundled_plugins_and_drops_stale_links(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "git-4.0")
    _write(image_dirs.rpm / "credentials.jpi", "credentials-4.0")

    _configured_volume(home, "3.9")
    plugins_dir = home / "plugins"
    (plugins_dir / "git.jpi").symlink_to(image_dirs.rpm / "git.jpi")
    (plugins_dir / "removed.jpi").symlink_to(image_dirs.rpm / "removed.jpi")
    _write(plugins_dir / "credentials.jpi", "credentials-3.9")
    _write(plugins_dir / "credentials" / "META-INF" / "MANIFEST.MF", "stale")

    decision = rc.reconcile(home, make_bundle("4.0"), {})

    assert decision.kind is DecisionKind.FORCE_MIGRATE
    for name in ("git.jpi", "credentials.jpi"):
        link = plugins_dir / name
        assert link.is_symlink()
        assert os.readlink(link) == str(image_dirs.rpm / name)
    assert not (plugins_dir / "removed.jpi").is_symlink()
    assert not (plugins_dir / "credentials").exists()
    assert (home / "image-version").read_text() == "4.0\n"


def test_legacy_volume_gets_links_not_copies(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _configured_volume(home)
    _write(home / "plugins" / "git.jpi", "old copy")

    decision = rc.reconcile(home, make_bundle(), {})

    assert decision.kind is DecisionKind.FORCE_MIGRATE
    assert (home / "plugins" / "git.jpi").is_symlink()
    assert (home / "image-version").read_text().strip() == "4.0"


def test_force_migrate_runs_once_per_version_change(monkeypatch, home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _configured_volume(home, "A")

    calls = []
    original = rc.force_migrate

    def _counting(volume, bundle):
        calls.append(bundle.version)
        original(volume, bundle)

    monkeypatch.setattr(rc, "force_migrate", _counting)

    rc.reconcile(home, make_bundle("B"), {})
    rc.reconcile(home, make_bundle("B"), {})

    assert calls == ["B"]
    assert (home / "image-version").read_text().strip() == "B"


def test_disabled_migration_leaves_plugins_alone(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _configured_volume(home, "3.9")
    _write(home / "plugins" / "git.jpi", "pinned")

    decision = rc.reconcile(home, make_bundle("4.0"), {"DISABLE_PLUGIN_MIGRATION": "true"})

    assert decision.kind is DecisionKind.NO_OP
    assert (home / "plugins" / "git.jpi").read_text() == "pinned"
    assert (home / "image-version").read_text() == "4.0\n"


# ---------------------------------------------------------------------------
#  Steady state
# ---------------------------------------------------------------------------


def test_second_run_is_a_no_op(home, image_dirs, make_bundle, take_snapshot):
    _write(image_dirs.config / "hudson.tasks.Maven.xml", "<maven/>")
    _write(image_dirs.config / "proxy.xml.tpl", "<proxy><name>$PROXY_HOST</name></proxy>")
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _write(image_dirs.plugins / "matrix-auth.hpi", "image")

    bundle = make_bundle("4.0")
    rc.reconcile(home, bundle, {})
    first = take_snapshot(home)

    decision = rc.reconcile(home, bundle, {})

    assert decision.kind is DecisionKind.NO_OP
    assert take_snapshot(home) == first


def test_dangling_links_are_removed_on_every_start(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _configured_volume(home, "4.0")
    plugins_dir = home / "plugins"
    (plugins_dir / "git.jpi").symlink_to(image_dirs.rpm / "git.jpi")
    (plugins_dir / "gone.jpi").symlink_to(image_dirs.rpm / "gone.jpi")
    _write(plugins_dir / "user.jpi", "user override")

    decision = rc.reconcile(home, make_bundle("4.0"), {})

    assert decision.kind is DecisionKind.NO_OP
    assert sorted(p.name for p in plugins_dir.iterdir()) == ["git.jpi", "user.jpi"]
    assert (plugins_dir / "git.jpi").is_symlink()
    assert (plugins_dir / "user.jpi").read_text() == "user override"


# ---------------------------------------------------------------------------
#  Overrides
# ---------------------------------------------------------------------------


def test_config_override_keeps_user_added_files(home, image_dirs, make_bundle):
    _write(image_dirs.config / "hudson.tasks.Maven.xml", "<maven>image</maven>")
    _write(image_dirs.config / "config.xml.tpl", "<hudson>$KUBERNETES_CONFIG</hudson>")

    _configured_volume(home, "4.0")
    _write(home / "hudson.tasks.Maven.xml", "<maven>edited</maven>")
    _write(home / "config.xml", "<hudson>edited</hudson>")
    _write(home / "my-custom.xml", "<mine/>")

    decision = rc.reconcile(home, make_bundle("4.0"), {"OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG": "true"})

    assert decision.kind is DecisionKind.OVERRIDE_PV
    assert (home / "hudson.tasks.Maven.xml").read_text() == "<maven>image</maven>"
    assert (home / "config.xml").read_text() == "<hudson></hudson>"
    assert (home / "my-custom.xml").read_text() == "<mine/>"


def test_config_override_keeps_the_admin_password(home, image_dirs, make_bundle):
    _write(
        image_dirs.config / "users" / "admin" / "config.xml",
        "<user><properties><hudson.security.HudsonPrivateSecurityRealm_-Details>"
        "<passwordHash>IMAGE-BAKED</passwordHash>"
        "</hudson.security.HudsonPrivateSecurityRealm_-Details></properties></user>",
    )
    _configured_volume(home, "4.0")
    stored = hash_password("secret")
    _write(home / "password", stored + "\n")
    env = {"OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG": "true", "JENKINS_PASSWORD": "secret"}

    decision = rc.reconcile(home, make_bundle("4.0"), env)
    password.sync_admin_password(home, env)

    assert decision.kind is DecisionKind.OVERRIDE_PV
    user_hash = jenkins_config.get_value(home / password.ADMIN_USER_CONFIG, jenkins_config.PASSWORD_HASH_PATH)
    assert user_hash == stored
    assert verify_password("secret", user_hash)


def test_config_override_without_recorded_password_generates_one(home, image_dirs, make_bundle):
    _write(
        image_dirs.config / "users" / "admin" / "config.xml",
        "<user><properties><hudson.security.HudsonPrivateSecurityRealm_-Details>"
        "<passwordHash>IMAGE-BAKED</passwordHash>"
        "</hudson.security.HudsonPrivateSecurityRealm_-Details></properties></user>",
    )
    _configured_volume(home, "4.0")

    rc.reconcile(home, make_bundle("4.0"), {"OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG": "true"})

    stored = (home / "password").read_text().strip()
    assert verify_password(DEFAULT_PASSWORD, stored)
    assert jenkins_config.get_value(home / password.ADMIN_USER_CONFIG, jenkins_config.PASSWORD_HASH_PATH) == stored


def test_plugin_override_replaces_the_plugin_directory(home, image_dirs, make_bundle):
    _write(image_dirs.rpm / "git.jpi", "rpm")
    _write(image_dirs.plugins / "matrix-auth.hpi", "image")

    _configured_volume(home, "4.0")
    _write(home / "plugins" / "extra.jpi", "user")
    _write(home / "plugins" / "matrix-auth.hpi", "old")

    decision = rc.reconcile(home, make_bundle("4.0"), {"OVERRIDE_PV_PLUGINS_WITH_IMAGE_PLUGINS": "true"})

    assert decision.kind is DecisionKind.OVERRIDE_PV
    plugins_dir = home / "plugins"
    assert sorted(p.name for p in plugins_dir.iterdir()) == ["git.jpi", "matrix-auth.hpi"]
    assert (plugins_dir / "matrix-auth.hpi").read_text() == "image"
    assert (plugins_dir / "git.jpi").is_symlink()


def test_config_removal_failure_is_not_fatal(monkeypatch, home, image_dirs, make_bundle):
    _write(image_dirs.config / "a.xml", "image-a")
    _write(image_dirs.config / "b.xml", "image-b")
    _configured_volume(home, "4.0")
    _write(home / "a.xml", "volume-a")
    _write(home / "b.xml", "volume-b")

    real_unlink = type(home).unlink

    def _unlink(self, *args, **kwargs):
        if self.name == "a.xml" and self.parent == home:
            raise PermissionError("read-only")
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(home), "unlink", _unlink)

    removed = rc.remove_bundled_config(make_bundle(), home)

    assert removed == [home / "b.xml"]
    assert (home / "a.xml").read_text() == "volume-a"


# ---------------------------------------------------------------------------
#  Snapshot helpers
# ---------------------------------------------------------------------------


def test_path_state_probe(tmp_path):
    regular = _write(tmp_path / "file")
    link = tmp_path / "link"
    link.symlink_to(regular)
    dangling = tmp_path / "dangling"
    dangling.symlink_to(tmp_path / "missing")

    assert PathState.probe(regular).kind is PathKind.REGULAR_FILE
    assert PathState.probe(tmp_path).kind is PathKind.DIRECTORY
    assert PathState.probe(tmp_path / "missing") == PathState(PathKind.MISSING)

    state = PathState.probe(link)
    assert state.kind is PathKind.SYMLINK and state.target == regular and state.present

    state = PathState.probe(dangling)
    assert state.dangling and not state.present


def test_volume_state_of_missing_home(tmp_path):
    volume = VolumeState.load(tmp_path / "absent")

    assert volume.configured is False
    assert volume.image_version is None
    assert volume.plugins == {}
    assert volume.config == set()


@pytest.mark.parametrize("name", ["git.jpi", "git.hpi"])
def test_bundled_plugins_prefer_rpm_source(image_dirs, make_bundle, name):
    _write(image_dirs.rpm / name, "rpm")
    _write(image_dirs.plugins / name, "image")
    _write(image_dirs.plugins / "README", "not a plugin")

    bundle = make_bundle()

    assert bundle.bundled_plugins == {name: image_dirs.rpm / name}
