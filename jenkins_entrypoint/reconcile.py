"""Deployment reconciler - align the Jenkins volume with the running image.

Every container start compares two markers on the persistent volume with
the bundle baked into the image and picks exactly one outcome:

```
configured | image-version      | outcome
-----------+--------------------+---------------------------------------------
absent     | (any)              | FRESH_INIT    materialize, copy, install
present    | absent             | FORCE_MIGRATE legacy volume, relink plugins
present    | != image version   | FORCE_MIGRATE upgrade, relink plugins
present    | == image version   | OVERRIDE_PV   when an override flag is set
present    | == image version   | NO_OP         otherwise
```

Whatever the outcome, dangling plugin symlinks are removed afterwards and
the ``image-version`` marker is rewritten with the image's version.

Nothing in here raises for a missing path: :class:`PathState` reports it as
``MISSING`` and the creation branch is taken instead.
"""

from __future__ import annotations

import enum
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path

from jenkins_entrypoint import password, plugins, templates
from jenkins_entrypoint.environment import EntrypointEnv, gather_env, is_truthy

__all__ = [
    "IMAGE_CONFIG_DIR",
    "CONFIGURED_MARKER",
    "IMAGE_VERSION_MARKER",
    "PLUGINS_DIR",
    "PathKind",
    "PathState",
    "VolumeState",
    "ImageBundle",
    "DecisionKind",
    "Decision",
    "decide",
    "apply",
    "fresh_init",
    "force_migrate",
    "override_volume",
    "copy_config_tree",
    "remove_bundled_config",
    "deliver_bundled_plugins",
    "remove_dangling_plugin_links",
    "write_image_version",
    "reconcile",
]

IMAGE_CONFIG_DIR = Path("/opt/openshift/configuration")

CONFIGURED_MARKER = "configured"
IMAGE_VERSION_MARKER = "image-version"
PLUGINS_DIR = "plugins"


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


# ---------------------------------------------------------------------------
#  Filesystem state
# ---------------------------------------------------------------------------


class PathKind(enum.Enum):
    MISSING = "missing"
    REGULAR_FILE = "file"
    SYMLINK = "symlink"
    DIRECTORY = "directory"


@dataclass(frozen=True, slots=True)
class PathState:
    """What lives at a path, probed without following a final symlink.

    ``target`` is the raw link text for symlinks; ``dangling`` is *True* when
    that link no longer resolves.
    """

    kind: PathKind
    target: Path | None = None
    dangling: bool = False

    @classmethod
    def probe(cls, path: Path) -> PathState:
        if path.is_symlink():
            return cls(PathKind.SYMLINK, Path(os.readlink(path)), dangling=not path.exists())
        if path.is_dir():
            return cls(PathKind.DIRECTORY)
        if path.exists():
            return cls(PathKind.REGULAR_FILE)
        return cls(PathKind.MISSING)

    @property
    def present(self) -> bool:
        """Whether something usable lives there (dangling links do not count)."""

        return self.kind is not PathKind.MISSING and not self.dangling


@dataclass
class VolumeState:
    """Snapshot of the persistent volume taken at start-up."""

    home: Path
    configured: bool
    image_version: str | None
    plugins: dict[str, PathState] = field(default_factory=dict)
    config: set[str] = field(default_factory=set)

    @property
    def plugins_dir(self) -> Path:
        return self.home / PLUGINS_DIR

    @classmethod
    def load(cls, home: Path) -> VolumeState:
        configured = PathState.probe(home / CONFIGURED_MARKER).present

        version_file = home / IMAGE_VERSION_MARKER
        image_version: str | None = None
        if PathState.probe(version_file).kind is PathKind.REGULAR_FILE:
            image_version = version_file.read_text(encoding="utf-8").strip()

        plugin_states: dict[str, PathState] = {}
        plugins_dir = home / PLUGINS_DIR
        if plugins_dir.is_dir():
            for entry in sorted(plugins_dir.iterdir()):
                plugin_states[entry.name] = PathState.probe(entry)

        config: set[str] = set()
        if home.is_dir():
            config = {p.name for p in home.iterdir() if PathState.probe(p).kind is PathKind.REGULAR_FILE}

        return cls(home, configured, image_version, plugin_states, config)


@dataclass
class ImageBundle:
    """Read-only configuration and plugins shipped with one image release."""

    version: str
    config_dir: Path = IMAGE_CONFIG_DIR
    plugins_dir: Path = plugins.IMAGE_PLUGINS_DIR
    rpm_plugins_dir: Path = plugins.RPM_PLUGINS_DIR

    @classmethod
    def load(cls, env: EntrypointEnv | None = None) -> ImageBundle:
        """Describe the bundle of the running image (module constants are read at call time)."""

        env = gather_env(env)
        return cls(
            version=env["OPENSHIFT_JENKINS_IMAGE_VERSION"].strip(),
            config_dir=IMAGE_CONFIG_DIR,
            plugins_dir=plugins.IMAGE_PLUGINS_DIR,
            rpm_plugins_dir=plugins.RPM_PLUGINS_DIR,
        )

    @property
    def bundled_plugins(self) -> dict[str, Path]:
        """Map every bundled plugin file name to the image file backing it."""

        names: set[str] = set()
        for directory in (self.plugins_dir, self.rpm_plugins_dir):
            if not directory.is_dir():
                continue
            names.update(
                p.name for p in directory.iterdir()
                if p.is_file() and p.name.endswith(plugins.PLUGIN_SUFFIXES)
            )
        return {
            name: plugins.plugin_source(name, self.plugins_dir, self.rpm_plugins_dir)
            for name in sorted(names)
        }

    def delivery(self, name: str) -> plugins.PluginDelivery:
        return plugins.plugin_delivery(name, self.rpm_plugins_dir)

    @property
    def config_templates(self) -> dict[Path, Path]:
        """Map the volume-relative target of every template to the template."""

        return {
            templates.template_target(t.relative_to(self.config_dir)): t
            for t in templates.iter_templates(self.config_dir)
        }

    @property
    def config_files(self) -> list[Path]:
        """Return the relative paths of the plain (non-template) config files."""

        if not self.config_dir.is_dir():
            return []
        return sorted(
            p.relative_to(self.config_dir)
            for p in self.config_dir.rglob("*")
            if p.is_file() and not templates.is_template(p)
        )


# ---------------------------------------------------------------------------
#  Decision
# ---------------------------------------------------------------------------


class DecisionKind(enum.Enum):
    FRESH_INIT = "fresh-init"
    FORCE_MIGRATE = "force-migrate"
    OVERRIDE_PV = "override-pv"
    NO_OP = "no-op"


@dataclass(frozen=True, slots=True)
class Decision:
    kind: DecisionKind
    reason: str = ""
    override_config: bool = False
    override_plugins: bool = False


def decide(volume: VolumeState, bundle: ImageBundle, env: EntrypointEnv | None = None) -> Decision:
    """Return the reconciliation outcome for *volume*; first matching rule wins."""

    env = gather_env(env)

    if not volume.configured:
        return Decision(DecisionKind.FRESH_INIT, "volume not configured")

    migration_disabled = is_truthy(env["DISABLE_PLUGIN_MIGRATION"])

    if volume.image_version is None:
        if not migration_disabled:
            return Decision(DecisionKind.FORCE_MIGRATE, "legacy volume without image-version marker")
    elif volume.image_version != bundle.version:
        if not migration_disabled:
            return Decision(
                DecisionKind.FORCE_MIGRATE,
                f"image upgrade {volume.image_version} -> {bundle.version}",
            )

    override_config = is_truthy(env["OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG"])
    override_plugins = is_truthy(env["OVERRIDE_PV_PLUGINS_WITH_IMAGE_PLUGINS"])
    if override_config or override_plugins:
        return Decision(
            DecisionKind.OVERRIDE_PV,
            "override requested",
            override_config=override_config,
            override_plugins=override_plugins,
        )

    if migration_disabled and volume.image_version != bundle.version:
        return Decision(DecisionKind.NO_OP, "plugin migration disabled")
    return Decision(DecisionKind.NO_OP, "volume up to date")


# ---------------------------------------------------------------------------
#  Actions
# ---------------------------------------------------------------------------


def copy_config_tree(bundle: ImageBundle, home: Path) -> list[Path]:
    """Copy the plain image configuration files onto the volume.

    Files a template produces are left alone so each template keeps at most
    one materialized target.
    """

    produced = set(bundle.config_templates)
    copied: list[Path] = []
    for rel in bundle.config_files:
        if rel in produced:
            continue
        target = home / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink():
            target.unlink()
        shutil.copy2(bundle.config_dir / rel, target)
        copied.append(target)
    return copied


def remove_bundled_config(bundle: ImageBundle, home: Path) -> list[Path]:
    """Delete the volume files that the image also provides.

    Only paths present in the image configuration directory (or produced by
    one of its templates) are touched; files added by users survive.  Removal
    is best-effort: a file that cannot be deleted is reported and skipped.
    """

    removed: list[Path] = []
    for rel in sorted({*bundle.config_files, *bundle.config_templates}):
        target = home / rel
        state = PathState.probe(target)
        if state.kind not in (PathKind.REGULAR_FILE, PathKind.SYMLINK):
            continue
        try:
            target.unlink()
        except OSError as exc:
            _log(f"WARNING: could not remove {target}: {exc}")
            continue
        removed.append(target)
    return removed


def deliver_bundled_plugins(bundle: ImageBundle, plugins_dir: Path) -> list[Path]:
    """Link or copy every bundled plugin not already present on the volume."""

    delivered: list[Path] = []
    for name, source in bundle.bundled_plugins.items():
        target = plugins_dir / name
        if plugins.deliver_plugin(source, target, bundle.delivery(name)):
            delivered.append(target)
    return delivered


def fresh_init(volume: VolumeState, bundle: ImageBundle, env: EntrypointEnv | None = None) -> None:
    env = gather_env(env)
    home = volume.home
    home.mkdir(parents=True, exist_ok=True)

    templates.materialize_templates(bundle.config_dir, home, env)
    copy_config_tree(bundle, home)

    plugins.install_additional_plugins(plugins.parse_plugin_list(env["INSTALL_PLUGINS"]), volume.plugins_dir)
    volume.plugins_dir.mkdir(parents=True, exist_ok=True)
    deliver_bundled_plugins(bundle, volume.plugins_dir)

    password.initialise_admin_password(home, env)
    (home / CONFIGURED_MARKER).touch(exist_ok=True)


def force_migrate(volume: VolumeState, bundle: ImageBundle) -> None:
    """Replace every bundled plugin on the volume by a link to the image file."""

    for name, source in bundle.bundled_plugins.items():
        plugins.relink_plugin(source, volume.plugins_dir / name)


def override_volume(decision: Decision, volume: VolumeState, bundle: ImageBundle, env: EntrypointEnv | None = None) -> None:
    env = gather_env(env)
    home = volume.home

    if decision.override_config:
        _log("overriding volume configuration with image configuration")
        remove_bundled_config(bundle, home)
        templates.materialize_templates(bundle.config_dir, home, env)
        copy_config_tree(bundle, home)
        password.restore_admin_password(home, env)

    if decision.override_plugins:
        _log("overriding volume plugins with image plugins")
        if volume.plugins_dir.is_symlink():
            volume.plugins_dir.unlink()
        elif volume.plugins_dir.exists():
            shutil.rmtree(volume.plugins_dir)
        plugins.install_additional_plugins(plugins.parse_plugin_list(env["INSTALL_PLUGINS"]), volume.plugins_dir)
        volume.plugins_dir.mkdir(parents=True, exist_ok=True)
        deliver_bundled_plugins(bundle, volume.plugins_dir)


def apply(decision: Decision, volume: VolumeState, bundle: ImageBundle, env: EntrypointEnv | None = None) -> None:
    """Execute the action list attached to *decision*."""

    if decision.kind is DecisionKind.FRESH_INIT:
        fresh_init(volume, bundle, env)
    elif decision.kind is DecisionKind.FORCE_MIGRATE:
        force_migrate(volume, bundle)
    elif decision.kind is DecisionKind.OVERRIDE_PV:
        override_volume(decision, volume, bundle, env)


def remove_dangling_plugin_links(plugins_dir: Path) -> list[Path]:
    """Remove symlinks whose image-side plugin disappeared.

    Regular files are user overrides and valid links may point at updated
    content; both are left untouched.
    """

    removed: list[Path] = []
    if not plugins_dir.is_dir():
        return removed
    for entry in sorted(plugins_dir.iterdir()):
        if PathState.probe(entry).dangling:
            entry.unlink()
            removed.append(entry)
    if removed:
        _log("removed dangling plugin links: " + ", ".join(p.name for p in removed))
    return removed


def write_image_version(home: Path, version: str) -> None:
    (home / IMAGE_VERSION_MARKER).write_text(version + "\n", encoding="utf-8")


def reconcile(home: Path, bundle: ImageBundle, env: EntrypointEnv | None = None) -> Decision:
    """Run one full reconciliation pass against the volume at *home*."""

    env = gather_env(env)
    volume = VolumeState.load(home)
    decision = decide(volume, bundle, env)
    _log(f"reconciliation: {decision.kind.value} ({decision.reason})")

    apply(decision, volume, bundle, env)
    remove_dangling_plugin_links(volume.plugins_dir)

    home.mkdir(parents=True, exist_ok=True)
    write_image_version(home, bundle.version)
    return decision
