"""Administrative password management.

Jenkins' own user database accepts the legacy ``salt:hash`` format where
*hash* is the hex SHA-256 digest of ``password{salt}``.  The current hash is
kept in ``$JENKINS_HOME/password`` so later starts can tell whether
``$JENKINS_PASSWORD`` changed without having to parse the user record.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import sys
from pathlib import Path

from jenkins_entrypoint import jenkins_config
from jenkins_entrypoint.environment import EntrypointEnv, gather_env

__all__ = [
    "DEFAULT_PASSWORD",
    "PASSWORD_FILE",
    "ADMIN_USER_CONFIG",
    "hash_password",
    "verify_password",
    "initialise_admin_password",
    "restore_admin_password",
    "sync_admin_password",
]

DEFAULT_PASSWORD = "password"
PASSWORD_FILE = "password"
ADMIN_USER_CONFIG = Path("users") / "admin" / "config.xml"

_SALT_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def hash_password(password: str, salt: str | None = None) -> str:
    """Return ``salt:sha256(password{salt})`` for *password*."""

    if salt is None:
        salt = "".join(secrets.choice(_SALT_ALPHABET) for _ in range(6))
    digest = hashlib.sha256(f"{password}{{{salt}}}".encode("utf-8")).hexdigest()
    return f"{salt}:{digest}"


def verify_password(password: str, stored: str) -> bool:
    """Return *True* when *password* produces *stored* with the same salt."""

    salt, sep, _ = stored.strip().partition(":")
    if not sep:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored.strip())


def _store(home: Path, password_hash: str) -> None:
    (home / PASSWORD_FILE).write_text(password_hash + "\n", encoding="utf-8")
    user_config = home / ADMIN_USER_CONFIG
    if user_config.is_file():
        jenkins_config.set_password_hash(user_config, password_hash)


def initialise_admin_password(home: Path, env: EntrypointEnv | None = None) -> str:
    """Generate and persist the admin password hash of a fresh volume."""

    env = gather_env(env)
    password_hash = hash_password(env["JENKINS_PASSWORD"] or DEFAULT_PASSWORD)
    _store(home, password_hash)
    print("[entrypoint] admin password hash generated", file=sys.stderr)
    return password_hash


def restore_admin_password(home: Path, env: EntrypointEnv | None = None) -> str:
    """Write the hash recorded in ``password`` back into the admin user record.

    Used after the user record was replaced by the image's copy.  A volume
    without a recorded hash gets a new one as on first start.
    """

    try:
        stored = (home / PASSWORD_FILE).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        stored = ""

    if not stored:
        return initialise_admin_password(home, env)

    user_config = home / ADMIN_USER_CONFIG
    if user_config.is_file():
        jenkins_config.set_password_hash(user_config, stored)
    return stored


def sync_admin_password(home: Path, env: EntrypointEnv | None = None) -> bool:
    """Re-hash ``$JENKINS_PASSWORD`` when it no longer matches the stored hash.

    Nothing happens when the variable is unset, so a password changed from
    the Jenkins UI is never reverted.  Returns *True* when the volume changed.
    """

    env = gather_env(env)
    password = env["JENKINS_PASSWORD"]
    if not password:
        return False

    try:
        stored = (home / PASSWORD_FILE).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        stored = ""

    if stored and verify_password(password, stored):
        return False

    _store(home, hash_password(password))
    print("[entrypoint] admin password changed, hash updated", file=sys.stderr)
    return True
