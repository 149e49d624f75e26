"""Template materialization for the bundled ``*.tpl`` configuration files."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Callable, Iterator, Mapping

from jenkins_entrypoint import kube, proxy
from jenkins_entrypoint.environment import EntrypointEnv, gather_env

__all__ = [
    "TEMPLATE_SUFFIX",
    "envsubst",
    "is_template",
    "template_target",
    "iter_templates",
    "template_variables",
    "render_template",
    "materialize_templates",
]

TEMPLATE_SUFFIX = ".tpl"

_VAR_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def envsubst(text: str, variables: Mapping[str, str]) -> str:
    """Replace ``$NAME`` and ``${NAME}`` references like gettext's *envsubst*.

    Unknown variables expand to the empty string.  Substituted values are not
    scanned again.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return str(variables.get(name, ""))

    return _VAR_RE.sub(_sub, text)


def is_template(path: Path) -> bool:
    return path.name.endswith(TEMPLATE_SUFFIX) and len(path.name) > len(TEMPLATE_SUFFIX)


def template_target(path: Path) -> Path:
    """Return the file a template produces (``config.xml.tpl`` -> ``config.xml``)."""

    return path.with_name(path.name[: -len(TEMPLATE_SUFFIX)])


def iter_templates(config_dir: Path) -> Iterator[Path]:
    """Yield every template under *config_dir*, sorted for determinism."""

    if not config_dir.is_dir():
        return
    for path in sorted(config_dir.rglob("*" + TEMPLATE_SUFFIX)):
        if path.is_file() and is_template(path):
            yield path


# ---------------------------------------------------------------------------
#  Variables for the three special-cased templates
# ---------------------------------------------------------------------------


def _main_config_variables(env: EntrypointEnv) -> dict[str, str]:
    return {"KUBERNETES_CONFIG": kube.kubernetes_config(env, sa=kube.service_account())}


def _credentials_variables(env: EntrypointEnv) -> dict[str, str]:
    return {"KUBERNETES_CREDENTIALS": kube.kubernetes_credentials(env, sa=kube.service_account())}


def _proxy_variables(env: EntrypointEnv) -> dict[str, str]:
    return proxy.proxy_template_variables(env)


SPECIAL_TEMPLATES: dict[str, Callable[[EntrypointEnv], dict[str, str]]] = {
    "config.xml.tpl": _main_config_variables,
    "credentials.xml.tpl": _credentials_variables,
    "proxy.xml.tpl": _proxy_variables,
}


def template_variables(
    template: Path,
    env: EntrypointEnv | None = None,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the substitution mapping for *template*.

    Every template sees the raw process environment (*source*, defaulting to
    ``os.environ``); the three special ones additionally receive values from
    their dedicated generator which take precedence.
    """

    env = gather_env(env)
    variables = dict(os.environ if source is None else source)
    generator = SPECIAL_TEMPLATES.get(template.name)
    if generator is not None:
        variables.update(generator(env))
    return variables


def render_template(template: Path, env: EntrypointEnv | None = None, source: Mapping[str, str] | None = None) -> str:
    text = template.read_text(encoding="utf-8")
    return envsubst(text, template_variables(template, env, source))


def materialize_templates(
    config_dir: Path,
    target_dir: Path,
    env: EntrypointEnv | None = None,
    source: Mapping[str, str] | None = None,
) -> list[Path]:
    """Render every template under *config_dir* into *target_dir*.

    The relative layout is preserved.  A template whose target already exists
    on the volume is skipped, which keeps edits made through the UI.
    Returns the files written.
    """

    env = gather_env(env)
    written: list[Path] = []

    for template in iter_templates(config_dir):
        target = target_dir / template_target(template.relative_to(config_dir))
        if target.exists():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_template(template, env, source), encoding="utf-8")
        written.append(target)

    return written
