"""Cluster integration - agent cloud definition, credentials and public URL.

The helpers in this module read the pod's service account (token, namespace
and CA bundle mounted under :data:`SERVICE_ACCOUNT_DIR`) and talk to the
cluster API through :mod:`requests`.  Outside a cluster every helper degrades
to an empty result so that the image keeps working under plain docker.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping
from xml.sax.saxutils import escape

import requests

from jenkins_entrypoint import jenkins_config
from jenkins_entrypoint.environment import EntrypointEnv, gather_env, is_truthy

__all__ = [
    "SERVICE_ACCOUNT_DIR",
    "CREDENTIALS_ID",
    "LOCATION_CONFIG",
    "ServiceAccount",
    "service_account",
    "in_cluster",
    "service_env_prefix",
    "kubernetes_config",
    "kubernetes_credentials",
    "list_routes",
    "select_route",
    "route_url",
    "resolve_public_url",
    "write_location_config",
]

SERVICE_ACCOUNT_DIR = Path("/run/secrets/kubernetes.io/serviceaccount")

# Identifier shared between the cloud definition and the token credential.
CREDENTIALS_ID = "1a12dfa4-7fc5-47a7-aa17-cc56572a41c7"

LOCATION_CONFIG = "jenkins.model.JenkinsLocationConfiguration.xml"

ROUTES_API = "/apis/route.openshift.io/v1/namespaces/{namespace}/routes"

API_TIMEOUT = 10


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


@dataclass(frozen=True, slots=True)
class ServiceAccount:
    token: str
    namespace: str
    ca_file: Path | None


def service_account(directory: Path | None = None) -> ServiceAccount | None:
    """Return the mounted service account or *None* outside a pod."""

    directory = SERVICE_ACCOUNT_DIR if directory is None else directory
    token_file = directory / "token"
    if not token_file.is_file():
        return None

    ns_file = directory / "namespace"
    ca_file = directory / "ca.crt"
    return ServiceAccount(
        token=token_file.read_text(encoding="utf-8").strip(),
        namespace=ns_file.read_text(encoding="utf-8").strip() if ns_file.is_file() else "",
        ca_file=ca_file if ca_file.is_file() else None,
    )


def in_cluster(env: EntrypointEnv | None = None, sa: ServiceAccount | None = None) -> bool:
    env = gather_env(env)
    return bool(env["KUBERNETES_SERVICE_HOST"]) and sa is not None


def service_env_prefix(service_name: str) -> str:
    """Return the docker-links style prefix for *service_name* (``jenkins-jnlp`` -> ``JENKINS_JNLP``)."""

    return service_name.upper().replace("-", "_")


def _service_address(name: str, source: Mapping[str, str], default_port: str = "") -> tuple[str, str]:
    prefix = service_env_prefix(name)
    return source.get(f"{prefix}_SERVICE_HOST", ""), source.get(f"{prefix}_SERVICE_PORT", default_port)


# ---------------------------------------------------------------------------
#  Template fragments
# ---------------------------------------------------------------------------


def _pod_templates(env: EntrypointEnv) -> list[tuple[str, str]]:
    templates = [("base", env["JENKINS_AGENT_BASE_IMAGE"])]
    if env["JENKINS_AGENT_MAVEN_IMAGE"]:
        templates.append(("maven", env["JENKINS_AGENT_MAVEN_IMAGE"]))
    if env["JENKINS_AGENT_NODEJS_IMAGE"]:
        templates.append(("nodejs", env["JENKINS_AGENT_NODEJS_IMAGE"]))
    return [(label, image) for label, image in templates if image]


def _pod_template_xml(label: str, image: str) -> str:
    return (
        "<org.csanchez.jenkins.plugins.kubernetes.PodTemplate>"
        "<inheritFrom></inheritFrom>"
        f"<name>{escape(label)}</name>"
        "<instanceCap>2147483647</instanceCap>"
        "<idleMinutes>0</idleMinutes>"
        f"<label>{escape(label)}</label>"
        "<serviceAccount>jenkins</serviceAccount>"
        "<nodeSelector></nodeSelector>"
        "<volumes/>"
        "<containers>"
        "<org.csanchez.jenkins.plugins.kubernetes.ContainerTemplate>"
        "<name>jnlp</name>"
        f"<image>{escape(image)}</image>"
        "<privileged>false</privileged>"
        "<alwaysPullImage>true</alwaysPullImage>"
        "<workingDir>/tmp</workingDir>"
        "<command></command>"
        "<args>${computer.jnlpmac} ${computer.name}</args>"
        "<ttyEnabled>false</ttyEnabled>"
        "</org.csanchez.jenkins.plugins.kubernetes.ContainerTemplate>"
        "</containers>"
        "<envVars/>"
        "<annotations/>"
        "<imagePullSecrets/>"
        "</org.csanchez.jenkins.plugins.kubernetes.PodTemplate>"
    )


def kubernetes_config(
    env: EntrypointEnv | None = None,
    *,
    sa: ServiceAccount | None = None,
    source: Mapping[str, str] | None = None,
) -> str:
    """Return the ``KUBERNETES_CONFIG`` fragment injected into ``config.xml``.

    *source* holds the raw environment used to look up the docker-links
    style ``<SERVICE>_SERVICE_HOST`` variables; it defaults to ``os.environ``.
    The fragment is empty when not running inside a cluster.
    """

    env = gather_env(env)
    if sa is None or not in_cluster(env, sa):
        return ""

    source = os.environ if source is None else source
    jenkins_host, jenkins_port = _service_address(env["JENKINS_SERVICE_NAME"], source, "80")
    jnlp_host, _ = _service_address(env["JNLP_SERVICE_NAME"], source)

    jenkins_url = f"http://{jenkins_host}:{jenkins_port}" if jenkins_host else ""
    tunnel = f"{jnlp_host}:{env['JNLP_PORT']}" if jnlp_host else ""
    skip_tls = "true" if is_truthy(env["KUBERNETES_TRUST_CERTIFICATES"]) else "false"

    templates = "".join(_pod_template_xml(label, image) for label, image in _pod_templates(env))

    return (
        "<org.csanchez.jenkins.plugins.kubernetes.KubernetesCloud>"
        "<name>openshift</name>"
        f"<templates>{templates}</templates>"
        f"<serverUrl>https://{escape(env['KUBERNETES_SERVICE_HOST'])}:{escape(env['KUBERNETES_SERVICE_PORT'])}</serverUrl>"
        f"<skipTlsVerify>{skip_tls}</skipTlsVerify>"
        f"<namespace>{escape(sa.namespace)}</namespace>"
        f"<jenkinsUrl>{escape(jenkins_url)}</jenkinsUrl>"
        f"<jenkinsTunnel>{escape(tunnel)}</jenkinsTunnel>"
        f"<credentialsId>{CREDENTIALS_ID}</credentialsId>"
        "<containerCap>100</containerCap>"
        "<retentionTimeout>5</retentionTimeout>"
        "</org.csanchez.jenkins.plugins.kubernetes.KubernetesCloud>"
    )


def kubernetes_credentials(env: EntrypointEnv | None = None, *, sa: ServiceAccount | None = None) -> str:
    """Return the ``KUBERNETES_CREDENTIALS`` fragment injected into ``credentials.xml``."""

    if not in_cluster(env, sa):
        return ""
    return (
        "<entry>"
        "<com.cloudbees.plugins.credentials.domains.Domain>"
        "<specifications/>"
        "</com.cloudbees.plugins.credentials.domains.Domain>"
        "<java.util.concurrent.CopyOnWriteArrayList>"
        "<org.jenkinsci.plugins.kubernetes.credentials.OpenShiftTokenCredentialImpl>"
        "<scope>GLOBAL</scope>"
        f"<id>{CREDENTIALS_ID}</id>"
        f"<description>{CREDENTIALS_ID}</description>"
        "</org.jenkinsci.plugins.kubernetes.credentials.OpenShiftTokenCredentialImpl>"
        "</java.util.concurrent.CopyOnWriteArrayList>"
        "</entry>"
    )


# ---------------------------------------------------------------------------
#  Routes / public URL
# ---------------------------------------------------------------------------


def list_routes(env: EntrypointEnv, sa: ServiceAccount) -> list[dict[str, Any]]:
    """Return the route objects of the pod's namespace.

    :class:`requests.RequestException` propagates; callers decide whether a
    failed lookup matters.
    """

    url = "https://{host}:{port}{path}".format(
        host=env["KUBERNETES_SERVICE_HOST"],
        port=env["KUBERNETES_SERVICE_PORT"],
        path=ROUTES_API.format(namespace=sa.namespace),
    )
    verify: bool | str = str(sa.ca_file) if sa.ca_file else True
    if is_truthy(env["KUBERNETES_TRUST_CERTIFICATES"]):
        verify = False

    response = requests.get(
        url,
        headers={"Authorization": f"Bearer {sa.token}", "Accept": "application/json"},
        verify=verify,
        timeout=API_TIMEOUT,
    )
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected route list payload: {type(payload).__name__}")
    return [item for item in payload.get("items") or [] if isinstance(item, dict)]


def select_route(routes: Iterable[Mapping[str, Any]], service_name: str) -> Mapping[str, Any] | None:
    """Return the first route targeting *service_name*, TLS-enabled ones first."""

    matching = []
    for route in routes:
        spec = route.get("spec") or {}
        if (spec.get("to") or {}).get("name") == service_name and spec.get("host"):
            matching.append(route)
    for route in matching:
        if route["spec"].get("tls"):
            return route
    return matching[0] if matching else None


def route_url(route: Mapping[str, Any]) -> str:
    spec = route["spec"]
    scheme = "https" if spec.get("tls") else "http"
    path = spec.get("path") or "/"
    if not path.endswith("/"):
        path += "/"
    return f"{scheme}://{spec['host']}{path}"


def resolve_public_url(env: EntrypointEnv | None = None, *, sa: ServiceAccount | None = None) -> str | None:
    """Return the externally visible Jenkins URL or *None* when unknown."""

    env = gather_env(env)
    if sa is None:
        sa = service_account()
    if sa is None or not in_cluster(env, sa):
        return None

    try:
        routes = list_routes(env, sa)
    except (requests.RequestException, ValueError) as exc:
        _log(f"WARNING: could not list routes in namespace {sa.namespace!r}: {exc}")
        return None

    route = select_route(routes, env["JENKINS_SERVICE_NAME"])
    if route is None:
        return None
    return route_url(route)


def write_location_config(home: Path, url: str) -> bool:
    """Record *url* as Jenkins' self-reported location.

    An existing file is edited in place so the administrator e-mail address
    stored alongside survives.  Returns *True* when the volume changed.
    """

    config = home / LOCATION_CONFIG
    if not config.is_file():
        config.parent.mkdir(parents=True, exist_ok=True)
        config.write_text(
            "<?xml version='1.1' encoding='UTF-8'?>\n"
            "<jenkins.model.JenkinsLocationConfiguration>\n"
            f"  <jenkinsUrl>{escape(url)}</jenkinsUrl>\n"
            "</jenkins.model.JenkinsLocationConfiguration>\n",
            encoding="utf-8",
        )
        return True
    return jenkins_config.set_value(config, "/jenkins.model.JenkinsLocationConfiguration/jenkinsUrl", url)