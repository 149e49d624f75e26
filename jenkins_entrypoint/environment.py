"""Environment handling shared by every entry-point helper."""

from __future__ import annotations

from os import environ
from typing import Mapping, TypedDict

__all__ = ["EntrypointEnv", "gather_env", "is_truthy", "TRUTHY"]

TRUTHY = frozenset({"1", "true", "yes", "on"})


class EntrypointEnv(TypedDict):
    """Strongly-typed view of the environment consumed by the entry-point.

    All keys are *required* because :pyfunc:`gather_env` always provides
    every one of them, falling back to the documented default (often the
    empty string) when the variable is absent.  Call-sites can therefore use
    plain subscription (``env["JENKINS_HOME"]``) without guarding.
    """

    # Volume / image
    JENKINS_HOME: str
    OPENSHIFT_JENKINS_IMAGE_VERSION: str
    JENKINS_VERSION: str

    # Reconciliation toggles
    OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG: str
    OVERRIDE_PV_PLUGINS_WITH_IMAGE_PLUGINS: str
    DISABLE_PLUGIN_MIGRATION: str
    INSTALL_PLUGINS: str

    # Security
    JENKINS_PASSWORD: str
    OPENSHIFT_ENABLE_OAUTH: str
    CUSTOM_CA_BUNDLE: str

    # Proxy - lower-case names are the canonical ones, the upper-case
    # spelling is honoured as a fallback by gather_env().
    http_proxy: str
    https_proxy: str
    no_proxy: str

    # Cluster / services
    JENKINS_SERVICE_NAME: str
    JNLP_SERVICE_NAME: str
    JNLP_PORT: str
    KUBERNETES_SERVICE_HOST: str
    KUBERNETES_SERVICE_PORT: str
    KUBERNETES_TRUST_CERTIFICATES: str
    JENKINS_AGENT_BASE_IMAGE: str
    JENKINS_AGENT_MAVEN_IMAGE: str
    JENKINS_AGENT_NODEJS_IMAGE: str

    # JVM sizing
    JAVA_OPTS: str
    JAVA_GC_OPTS: str
    JAVA_MAX_HEAP_PARAM: str
    JAVA_INITIAL_HEAP_PARAM: str
    CONTAINER_HEAP_PERCENT: str
    CONTAINER_INITIAL_PERCENT: str
    CONTAINER_CORE_LIMIT: str
    USE_JAVA_DIAGNOSTICS: str
    ENABLE_FATAL_ERROR_LOG_FILE: str

    # Jenkins (winstone) arguments appended after -jar jenkins.war
    JENKINS_OPTS: str


DEFAULT_AGENT_BASE_IMAGE = "image-registry.openshift-image-registry.svc:5000/openshift/jenkins-agent-base:latest"


def is_truthy(value: str | None) -> bool:
    """Return *True* for the usual spellings of an enabled toggle."""

    return bool(value) and value.strip().lower() in TRUTHY


def gather_env(env: Mapping[str, str] | EntrypointEnv | None = None) -> EntrypointEnv:
    """Return a mapping holding *all* entry-point variables with defaults.

    Unknown keys are ignored, meaning callers may safely pass ``os.environ``
    directly.  Passing the result of a previous call is a no-op.
    """

    src = environ if env is None else env

    def _get(key: str, default: str = "") -> str:
        return str(src.get(key, default))

    def _proxy(key: str) -> str:
        # curl and friends accept both spellings, lower-case wins.
        return _get(key) or _get(key.upper())

    return EntrypointEnv(
        JENKINS_HOME=_get("JENKINS_HOME", "/var/lib/jenkins"),
        OPENSHIFT_JENKINS_IMAGE_VERSION=_get("OPENSHIFT_JENKINS_IMAGE_VERSION"),
        JENKINS_VERSION=_get("JENKINS_VERSION"),
        OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG=_get("OVERRIDE_PV_CONFIG_WITH_IMAGE_CONFIG"),
        OVERRIDE_PV_PLUGINS_WITH_IMAGE_PLUGINS=_get("OVERRIDE_PV_PLUGINS_WITH_IMAGE_PLUGINS"),
        DISABLE_PLUGIN_MIGRATION=_get("DISABLE_PLUGIN_MIGRATION"),
        INSTALL_PLUGINS=_get("INSTALL_PLUGINS"),
        JENKINS_PASSWORD=_get("JENKINS_PASSWORD"),
        OPENSHIFT_ENABLE_OAUTH=_get("OPENSHIFT_ENABLE_OAUTH"),
        CUSTOM_CA_BUNDLE=_get("CUSTOM_CA_BUNDLE"),
        http_proxy=_proxy("http_proxy"),
        https_proxy=_proxy("https_proxy"),
        no_proxy=_proxy("no_proxy"),
        JENKINS_SERVICE_NAME=_get("JENKINS_SERVICE_NAME", "jenkins"),
        JNLP_SERVICE_NAME=_get("JNLP_SERVICE_NAME", "jenkins-jnlp"),
        JNLP_PORT=_get("JNLP_PORT", "50000"),
        KUBERNETES_SERVICE_HOST=_get("KUBERNETES_SERVICE_HOST"),
        KUBERNETES_SERVICE_PORT=_get("KUBERNETES_SERVICE_PORT", "443"),
        KUBERNETES_TRUST_CERTIFICATES=_get("KUBERNETES_TRUST_CERTIFICATES"),
        JENKINS_AGENT_BASE_IMAGE=_get("JENKINS_AGENT_BASE_IMAGE", DEFAULT_AGENT_BASE_IMAGE),
        JENKINS_AGENT_MAVEN_IMAGE=_get("JENKINS_AGENT_MAVEN_IMAGE"),
        JENKINS_AGENT_NODEJS_IMAGE=_get("JENKINS_AGENT_NODEJS_IMAGE"),
        JAVA_OPTS=_get("JAVA_OPTS"),
        JAVA_GC_OPTS=_get("JAVA_GC_OPTS"),
        JAVA_MAX_HEAP_PARAM=_get("JAVA_MAX_HEAP_PARAM"),
        JAVA_INITIAL_HEAP_PARAM=_get("JAVA_INITIAL_HEAP_PARAM"),
        CONTAINER_HEAP_PERCENT=_get("CONTAINER_HEAP_PERCENT", "0.5"),
        CONTAINER_INITIAL_PERCENT=_get("CONTAINER_INITIAL_PERCENT"),
        CONTAINER_CORE_LIMIT=_get("CONTAINER_CORE_LIMIT"),
        USE_JAVA_DIAGNOSTICS=_get("USE_JAVA_DIAGNOSTICS"),
        ENABLE_FATAL_ERROR_LOG_FILE=_get("ENABLE_FATAL_ERROR_LOG_FILE"),
        JENKINS_OPTS=_get("JENKINS_OPTS"),
    )
