#!/usr/bin/env python3
"""Jenkins container image - **Python entry-point**
======================================================================

Prepares ``$JENKINS_HOME`` on the persistent volume and then replaces itself
with the Jenkins JVM so that Jenkins runs as PID 1 and receives the
container's signals directly.

The start-up sequence is split into small helpers living in sibling
modules; the table below maps each concern to the helper implementing it.

```
Concern                                  | Python helper                       | Module
-----------------------------------------+-------------------------------------+---------------
Gather & normalise env vars              | gather_env                          | environment
Detect custom user commands              | is_custom_command                   | entrypoint
Cgroup memory limit                      | container_memory_limit              | jvm
Heap / GC / core-limit JVM flags         | build_java_options                  | jvm
Proxy JVM flags & proxy.xml variables    | proxy_java_options                  | proxy
CA bundle validation & trust store       | import_ca_certificates              | certs
Volume vs image decision                 | decide                              | reconcile
Fresh init / migrate / override actions  | apply                               | reconcile
Dangling plugin link cleanup             | remove_dangling_plugin_links        | reconcile
Template materialization (*.tpl)         | materialize_templates               | templates
Kubernetes cloud & credential fragments  | kubernetes_config / _credentials    | kube
Public URL from routes                   | resolve_public_url                  | kube
Admin password hash                      | initialise/sync_admin_password      | password
Security realm toggle                    | configure_security_realm            | entrypoint
Setup wizard markers                     | mark_setup_wizard_complete          | entrypoint
Final java command assembly              | build_jenkins_command               | entrypoint
Overall container flow                   | main                                | entrypoint
```

Every helper prints its diagnostics on *stderr* prefixed with
``[entrypoint]`` so they end up in the pod log next to Jenkins' own output.
"""

from __future__ import annotations

import os
import shlex
import shutil
import sys
from pathlib import Path
from typing import Sequence

from jenkins_entrypoint import jenkins_config
from jenkins_entrypoint.certs import import_ca_certificates
from jenkins_entrypoint.environment import EntrypointEnv, gather_env, is_truthy
from jenkins_entrypoint.jvm import JavaOptions, build_java_options, container_memory_limit
from jenkins_entrypoint.kube import resolve_public_url, write_location_config
from jenkins_entrypoint.password import initialise_admin_password, sync_admin_password
from jenkins_entrypoint.proxy import parse_proxy_url, proxy_java_options
from jenkins_entrypoint.reconcile import (
    Decision,
    DecisionKind,
    ImageBundle,
    PathKind,
    PathState,
    VolumeState,
    decide,
    reconcile,
    remove_dangling_plugin_links,
)
from jenkins_entrypoint.templates import envsubst, materialize_templates

__all__ = [
    "EntrypointEnv",
    "gather_env",
    "is_truthy",
    "option_in_args",
    "is_custom_command",
    "JavaOptions",
    "build_java_options",
    "container_memory_limit",
    "proxy_java_options",
    "parse_proxy_url",
    "import_ca_certificates",
    "envsubst",
    "materialize_templates",
    "PathKind",
    "PathState",
    "VolumeState",
    "ImageBundle",
    "Decision",
    "DecisionKind",
    "decide",
    "remove_dangling_plugin_links",
    "initialise_admin_password",
    "sync_admin_password",
    "resolve_public_url",
    "configure_public_url",
    "configure_security_realm",
    "mark_setup_wizard_complete",
    "build_jenkins_command",
    "main",
    "JENKINS_WAR",
]

JENKINS_WAR = Path("/usr/lib/jenkins/jenkins.war")

UPGRADE_WIZARD_STATE = "jenkins.install.UpgradeWizard.state"
LAST_EXEC_VERSION = "jenkins.install.InstallUtil.lastExecVersion"

DEFAULT_HTTP_PORT = "8080"


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


def option_in_args(option: str, *args: str) -> bool:
    """Return *True* when *option* is present in *args*.

    Both the stand-alone form (``--httpPort 8080``) and the inline assignment
    (``--httpPort=8080``) are recognised.
    """

    if not option.startswith("--"):
        raise ValueError("expected a long option starting with '--'")

    return any(arg == option or arg.startswith(option + "=") for arg in args)


def is_custom_command(argv: Sequence[str] | None = None) -> bool:
    """Return *True* when *argv* asks for something other than Jenkins.

    No arguments, or a first argument that is a Jenkins launcher flag
    (``--httpPort=...``), start Jenkins; anything else is executed verbatim
    instead, which gives shell access to the image.
    """

    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        return False
    return not argv[0].startswith("--")


def configure_security_realm(home: Path, env: EntrypointEnv | None = None) -> bool:
    """Apply ``$OPENSHIFT_ENABLE_OAUTH`` to ``config.xml``.

    Left untouched when the variable is unset or the file does not exist yet.
    """

    env = gather_env(env)
    toggle = env["OPENSHIFT_ENABLE_OAUTH"].strip()
    config = home / "config.xml"
    if not toggle or not config.is_file():
        return False
    return jenkins_config.set_security_realm(config, is_truthy(toggle))


def configure_public_url(home: Path, env: EntrypointEnv | None = None) -> bool:
    """Record the route-derived public URL as Jenkins' location, if one is known."""

    url = resolve_public_url(env)
    if not url:
        return False
    changed = write_location_config(home, url)
    if changed:
        _log(f"public URL set to {url}")
    return changed


def mark_setup_wizard_complete(home: Path, env: EntrypointEnv | None = None) -> None:
    """Tell Jenkins its setup wizard already ran for ``$JENKINS_VERSION``."""

    env = gather_env(env)
    version = env["JENKINS_VERSION"].strip()
    if not version:
        return
    for name in (UPGRADE_WIZARD_STATE, LAST_EXEC_VERSION):
        marker = home / name
        try:
            if marker.read_text(encoding="utf-8").strip() == version:
                continue
        except FileNotFoundError:
            pass
        marker.write_text(version + "\n", encoding="utf-8")


def _java_binary() -> str:
    java_home = os.environ.get("JAVA_HOME")
    if java_home and (Path(java_home) / "bin" / "java").is_file():
        return str(Path(java_home) / "bin" / "java")
    return shutil.which("java") or "/usr/bin/java"


def build_jenkins_command(
    argv: Sequence[str] | None = None,
    *,
    env: EntrypointEnv | None = None,
    java_opts: Sequence[str] | None = None,
) -> list[str]:
    """Return the ``java ... -jar jenkins.war ...`` command that will be exec'd.

    ``$JAVA_OPTS`` follows the computed JVM flags and ``$JENKINS_OPTS``
    precedes the container arguments, so user supplied values win.  The HTTP
    port defaults to 8080 unless one of them sets ``--httpPort``.
    """

    env = gather_env(env)
    argv = list(argv or [])

    jenkins_args = [*shlex.split(env["JENKINS_OPTS"]), *argv]
    if not option_in_args("--httpPort", *jenkins_args):
        jenkins_args.insert(0, f"--httpPort={DEFAULT_HTTP_PORT}")

    return [
        _java_binary(),
        *(java_opts or []),
        *shlex.split(env["JAVA_OPTS"]),
        "-jar",
        str(JENKINS_WAR),
        *jenkins_args,
    ]


def main(argv: Sequence[str] | None = None) -> None:  # pragma: no cover
    """Run the container start-up sequence then exec Jenkins.

    The function never returns in production: it ``exec``s either the custom
    user command or the assembled Java command.  Unexpected exceptions are
    turned into a ``FATAL`` line and exit status 1 so the orchestrator
    restarts the pod.
    """

    args = list(sys.argv[1:] if argv is None else argv)

    if is_custom_command(args):
        os.execvp(args[0], args)

    env = gather_env()

    try:
        home = Path(env["JENKINS_HOME"])

        java = build_java_options(env)
        java.extra.extend(proxy_java_options(env))
        java.extra.extend(import_ca_certificates(env))

        decision = reconcile(home, ImageBundle.load(env), env)

        configure_security_realm(home, env)
        if decision.kind is not DecisionKind.FRESH_INIT:
            sync_admin_password(home, env)
        configure_public_url(home, env)
        mark_setup_wizard_complete(home, env)

        cmd = build_jenkins_command(args, env=env, java_opts=java.args)

        if not Path(cmd[0]).is_file():
            _log(f"dev-mode - would exec: {' '.join(cmd)}")
            return

        os.execv(cmd[0], cmd)

    except SystemExit:
        raise
    except Exception as exc:
        _log(f"FATAL: {exc}")
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    main()
