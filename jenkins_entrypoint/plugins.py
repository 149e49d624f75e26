"""Plugin delivery onto the Jenkins volume.

Two delivery strategies co-exist depending on how the image was built:

* **linked** - the plugin is installed by an RPM under
  :data:`RPM_PLUGINS_DIR`; the volume only receives a symbolic link so a new
  image transparently updates the plugin.
* **copied** - the plugin ships in :data:`IMAGE_PLUGINS_DIR`; the volume
  receives its own copy which later images do not touch unless forced.
"""

from __future__ import annotations

import enum
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Iterable

__all__ = [
    "PluginDelivery",
    "IMAGE_PLUGINS_DIR",
    "RPM_PLUGINS_DIR",
    "INSTALL_PLUGINS_SCRIPT",
    "PLUGIN_SUFFIXES",
    "plugin_delivery",
    "plugin_source",
    "metadata_dir",
    "deliver_plugin",
    "relink_plugin",
    "parse_plugin_list",
    "install_additional_plugins",
]

IMAGE_PLUGINS_DIR = Path("/opt/openshift/plugins")
RPM_PLUGINS_DIR = Path("/usr/lib64/jenkins")
INSTALL_PLUGINS_SCRIPT = Path("/usr/local/bin/install-plugins.sh")

PLUGIN_SUFFIXES = (".jpi", ".hpi")


class PluginDelivery(enum.Enum):
    LINKED = "linked"
    COPIED = "copied"


def plugin_delivery(name: str, rpm_dir: Path = RPM_PLUGINS_DIR) -> PluginDelivery:
    """Return how the bundled plugin *name* reaches the volume."""

    if (rpm_dir / name).is_file():
        return PluginDelivery.LINKED
    return PluginDelivery.COPIED


def plugin_source(name: str, plugins_dir: Path = IMAGE_PLUGINS_DIR, rpm_dir: Path = RPM_PLUGINS_DIR) -> Path:
    """Return the image-owned file backing the bundled plugin *name*."""

    if plugin_delivery(name, rpm_dir) is PluginDelivery.LINKED:
        return rpm_dir / name
    return plugins_dir / name


def metadata_dir(plugin_file: Path) -> Path:
    """Return the directory Jenkins explodes *plugin_file* into (``git.jpi`` -> ``git/``)."""

    return plugin_file.with_suffix("")


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


def deliver_plugin(source: Path, target: Path, mode: PluginDelivery) -> bool:
    """Put *source* at *target* unless something already lives there.

    Returns *True* when the volume was modified.  A dangling symlink at
    *target* counts as absent.
    """

    if target.exists():
        return False
    if target.is_symlink():
        target.unlink()

    target.parent.mkdir(parents=True, exist_ok=True)
    if mode is PluginDelivery.LINKED:
        target.symlink_to(source)
    else:
        shutil.copy2(source, target)
    return True


def relink_plugin(source: Path, target: Path) -> None:
    """Replace whatever lives at *target* by a symlink to *source*.

    The exploded metadata directory is removed first so that Jenkins unpacks
    the new archive on its next start instead of running stale classes.
    """

    meta = metadata_dir(target)
    if meta.is_dir() and not meta.is_symlink():
        shutil.rmtree(meta)

    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)

    target.parent.mkdir(parents=True, exist_ok=True)
    target.symlink_to(source)


def parse_plugin_list(value: str | None) -> list[str]:
    """Split ``$INSTALL_PLUGINS`` (``id:version,id:version``) into entries.

    Entries are passed through verbatim apart from whitespace trimming; the
    installer owns version resolution and validation.
    """

    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def install_additional_plugins(entries: Iterable[str], plugins_dir: Path) -> None:
    """Install *entries* into *plugins_dir* through the image's installer script."""

    entries = list(entries)
    if not entries:
        return

    _log(f"installing additional plugins: {' '.join(entries)}")
    plugins_dir.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        [str(INSTALL_PLUGINS_SCRIPT), *entries],
        check=True,
        env={**os.environ, "REF": str(plugins_dir)},
    )
