"""JVM option assembly driven by the container's cgroup limits."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path

from jenkins_entrypoint.environment import EntrypointEnv, gather_env, is_truthy

__all__ = [
    "CGROUP_V1_MEMORY_LIMIT",
    "CGROUP_V2_MEMORY_MAX",
    "MEMORY_CEILING",
    "DEFAULT_GC_OPTS",
    "JavaOptions",
    "container_memory_limit",
    "heap_options",
    "core_limit_options",
    "build_java_options",
]

CGROUP_V1_MEMORY_LIMIT = Path("/sys/fs/cgroup/memory/memory.limit_in_bytes")
CGROUP_V2_MEMORY_MAX = Path("/sys/fs/cgroup/memory.max")

# Anything at or above 2^40-1 bytes is the kernel's way of saying "unlimited".
MEMORY_CEILING = 2 ** 40 - 1

DEFAULT_GC_OPTS = (
    "-XX:+UseParallelGC -XX:MinHeapFreeRatio=5 -XX:MaxHeapFreeRatio=10 "
    "-XX:GCTimeRatio=4 -XX:AdaptiveSizePolicyWeight=90"
)

DIAGNOSTIC_OPTS = ("-XX:NativeMemoryTracking=summary", "-XX:+UnlockDiagnosticVMOptions", "-Xlog:gc")


@dataclass
class JavaOptions:
    """Ordered groups of JVM flags; :pyattr:`args` flattens them."""

    gc: list[str] = field(default_factory=list)
    heap: list[str] = field(default_factory=list)
    core: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)

    @property
    def args(self) -> list[str]:
        return [*self.gc, *self.heap, *self.core, *self.diagnostics, *self.extra]


def container_memory_limit(
    v1: Path | None = None,
    v2: Path | None = None,
) -> int | None:
    """Return the cgroup memory limit in bytes, *None* when unlimited or unknown."""

    v1 = CGROUP_V1_MEMORY_LIMIT if v1 is None else v1
    v2 = CGROUP_V2_MEMORY_MAX if v2 is None else v2

    for candidate in (v2, v1):
        try:
            raw = candidate.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if raw == "max":
            return None
        try:
            value = int(raw)
        except ValueError:
            continue
        return value if 0 < value < MEMORY_CEILING else None
    return None


def _percent(value: str, default: float | None) -> float | None:
    try:
        return float(value) if value else default
    except ValueError:
        return default


def heap_options(env: EntrypointEnv | None = None, memory_limit: int | None = None) -> list[str]:
    """Return ``-Xms``/``-Xmx`` flags.

    Explicit ``JAVA_MAX_HEAP_PARAM`` / ``JAVA_INITIAL_HEAP_PARAM`` always win.
    Otherwise the maximum heap is ``CONTAINER_HEAP_PERCENT`` of the memory
    limit and the initial heap ``CONTAINER_INITIAL_PERCENT`` of that maximum.
    Without a limit the JVM's own ergonomics apply.
    """

    env = gather_env(env)
    opts: list[str] = []

    max_param = env["JAVA_MAX_HEAP_PARAM"]
    initial_param = env["JAVA_INITIAL_HEAP_PARAM"]

    heap_max_mb: int | None = None
    if not max_param and memory_limit:
        share = _percent(env["CONTAINER_HEAP_PERCENT"], 0.5) or 0.5
        heap_max_mb = int((memory_limit // 2 ** 20) * share)
        if heap_max_mb > 0:
            max_param = f"-Xmx{heap_max_mb}m"

    if not initial_param and heap_max_mb:
        initial_share = _percent(env["CONTAINER_INITIAL_PERCENT"], None)
        if initial_share:
            initial_param = f"-Xms{int(heap_max_mb * initial_share)}m"

    if initial_param:
        opts.append(initial_param)
    if max_param:
        opts.append(max_param)
    return opts


def core_limit_options(env: EntrypointEnv | None = None) -> list[str]:
    env = gather_env(env)
    limit = env["CONTAINER_CORE_LIMIT"].strip()
    if not limit.isdigit() or int(limit) < 1:
        return []
    return [
        f"-XX:ActiveProcessorCount={limit}",
        f"-XX:ParallelGCThreads={limit}",
        f"-Djava.util.concurrent.ForkJoinPool.common.parallelism={limit}",
        "-XX:CICompilerCount=2",
    ]


def build_java_options(env: EntrypointEnv | None = None, memory_limit: int | None = None) -> JavaOptions:
    """Assemble every JVM flag derived from the environment and cgroups.

    *memory_limit* defaults to :pyfunc:`container_memory_limit`.  Proxy and
    trust store properties are appended to :pyattr:`JavaOptions.extra` by
    the caller.
    """

    env = gather_env(env)
    if memory_limit is None:
        memory_limit = container_memory_limit()

    opts = JavaOptions()
    opts.gc = shlex.split(env["JAVA_GC_OPTS"] or DEFAULT_GC_OPTS)
    opts.heap = heap_options(env, memory_limit)
    opts.core = core_limit_options(env)

    if is_truthy(env["USE_JAVA_DIAGNOSTICS"]):
        opts.diagnostics = list(DIAGNOSTIC_OPTS)

    home = Path(env["JENKINS_HOME"])
    if is_truthy(env["ENABLE_FATAL_ERROR_LOG_FILE"]):
        (home / "logs").mkdir(parents=True, exist_ok=True)
        opts.extra.append(f"-XX:ErrorFile={home / 'logs' / 'hs_err_pid%p.log'}")

    opts.extra.extend([
        f"-Duser.home={home}",
        "-Djenkins.install.runSetupWizard=false",
        "-Dfile.encoding=UTF8",
        f"-Djavamelody.application-name={env['JENKINS_SERVICE_NAME']}",
    ])
    return opts
