"""Package marker for the *jenkins_entrypoint* namespace."""

from importlib import import_module as _imp

# Re-export the public API of *entrypoint.py* at package level so that tests
# can simply ``import jenkins_entrypoint``.

_mod = _imp("jenkins_entrypoint.entrypoint")

for _name in getattr(_mod, "__all__", ()):  # pragma: no cover - dev helper
    globals()[_name] = getattr(_mod, _name)

del _imp, _mod, _name
