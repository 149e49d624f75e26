#!/usr/bin/env python3
"""Read and edit single values inside Jenkins XML configuration files.

Jenkins persists its global settings as XML documents (``config.xml``,
``users/<id>/config.xml`` ...).  The entry-point only ever needs to touch a
handful of well-known fields - the security realm and the admin password
hash - so this module offers a small API: address an
element by its slash separated path from the document root, optionally an
attribute of that element, and read or replace its value.

Writes are atomic (temporary file + ``os.replace``) and serialised through an
advisory lock on the parent directory so that the command line flavour can safely be used
from ``oc rsh`` while the entry-point runs.
"""

from __future__ import annotations

import argparse
import fcntl
import os
import re
import signal
import sys
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from types import FrameType
from typing import List, Optional, Tuple

OAUTH_SECURITY_REALM: str = "org.openshift.jenkins.plugins.openshiftlogin.OpenShiftOAuth2SecurityRealm"
PRIVATE_SECURITY_REALM: str = "hudson.security.HudsonPrivateSecurityRealm"
PASSWORD_HASH_PATH: str = "/user/properties/hudson.security.HudsonPrivateSecurityRealm_-Details/passwordHash"

_DECLARATION_RE = re.compile(r"^\s*<\?xml[^>]*\?>\s*")


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _log(message: str) -> None:
    """Print *message* to stderr."""

    print(message, file=sys.stderr)


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle termination signals."""

    _log(f"Received signal {signum}, terminating gracefully.")
    sys.exit(1)


def _split_path(path: str) -> List[str]:
    parts = [p for p in path.strip().split("/") if p]
    if not parts:
        raise ValueError(f"empty element path: {path!r}")
    return parts


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def read_document(config_file: Path) -> Tuple[str, ET.Element]:
    """Return the XML declaration (possibly empty) and the parsed root element.

    The declaration is kept aside because Jenkins writes ``version='1.1'``
    which the bundled expat parser refuses.
    """

    text = Path(config_file).read_text(encoding="utf-8")
    match = _DECLARATION_RE.match(text)
    declaration = match.group(0).strip() if match else ""
    body = text[match.end():] if match else text
    return declaration, ET.fromstring(body)


def write_document(config_file: Path, declaration: str, root: ET.Element) -> None:
    """Atomically replace *config_file* with the serialised *root*."""

    config_file = Path(config_file)
    directory = config_file.parent
    directory.mkdir(parents=True, exist_ok=True)

    payload = ET.tostring(root, encoding="unicode")
    if declaration:
        payload = declaration + "\n" + payload
    if not payload.endswith("\n"):
        payload += "\n"

    fd, tmp_path = tempfile.mkstemp(dir=str(directory))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        # Lock the parent directory itself so no stray lock file ends up in
        # the Jenkins home.
        dir_fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            fcntl.flock(dir_fd, fcntl.LOCK_EX)
            os.replace(tmp_path, config_file)
            os.chmod(config_file, 0o644)
            os.fsync(dir_fd)
        finally:
            try:
                fcntl.flock(dir_fd, fcntl.LOCK_UN)
            finally:
                os.close(dir_fd)
    finally:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass


def _find(root: ET.Element, parts: List[str]) -> Optional[ET.Element]:
    if root.tag != parts[0]:
        return None
    node: Optional[ET.Element] = root
    for tag in parts[1:]:
        node = next((child for child in node if child.tag == tag), None)  # type: ignore[union-attr]
        if node is None:
            return None
    return node


def _find_or_create(root: ET.Element, parts: List[str]) -> ET.Element:
    if root.tag != parts[0]:
        raise ValueError(f"document root is <{root.tag}>, path starts at <{parts[0]}>")
    node = root
    for tag in parts[1:]:
        child = next((c for c in node if c.tag == tag), None)
        if child is None:
            child = ET.SubElement(node, tag)
        node = child
    return node


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------

def get_value(config_file: Path, path: str, attribute: Optional[str] = None) -> Optional[str]:
    """Return the text (or *attribute*) of the element at *path*.

    *None* is returned when the element or attribute does not exist.
    """

    _, root = read_document(config_file)
    node = _find(root, _split_path(path))
    if node is None:
        return None
    if attribute:
        return node.get(attribute)
    return node.text or ""


def set_value(config_file: Path, path: str, value: str, attribute: Optional[str] = None) -> bool:
    """Set the text (or *attribute*) of the element at *path* to *value*.

    Missing elements along *path* are created.  The file is only rewritten
    when the value actually changes; the return value tells whether it did.
    """

    declaration, root = read_document(config_file)
    node = _find_or_create(root, _split_path(path))

    current = node.get(attribute) if attribute else node.text
    if current == value:
        return False

    if attribute:
        node.set(attribute, value)
    else:
        node.text = value
    write_document(config_file, declaration, root)
    return True


def set_security_realm(config_file: Path, enable_oauth: bool) -> bool:
    """Switch ``/hudson/securityRealm`` between OpenShift OAuth and the local user database."""

    realm = OAUTH_SECURITY_REALM if enable_oauth else PRIVATE_SECURITY_REALM
    changed = set_value(config_file, "/hudson/securityRealm", realm, attribute="class")
    if changed:
        _log(f"[entrypoint] security realm set to {realm}")
    return changed


def set_password_hash(user_config: Path, password_hash: str) -> bool:
    """Store *password_hash* in a ``users/<id>/config.xml`` file."""

    return set_value(user_config, PASSWORD_HASH_PATH, password_hash)


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""

    parser = argparse.ArgumentParser(description="Read or edit a Jenkins XML configuration file")
    parser.add_argument("--file", type=Path, default=Path(os.getenv("JENKINS_HOME", "/var/lib/jenkins")) / "config.xml",
                        help="Configuration file to operate on (default: $JENKINS_HOME/config.xml)")
    parser.add_argument("--attribute", type=str, default=None,
                        help="Operate on this attribute of the element instead of its text")

    subparsers = parser.add_subparsers(dest="command", required=True)

    get_parser = subparsers.add_parser("get", help="Print a configuration value")
    get_parser.add_argument("path", type=str)

    set_parser = subparsers.add_parser("set", help="Set a configuration value")
    set_parser.add_argument("path", type=str)
    set_parser.add_argument("value", type=str)

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the command line tool."""

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = parse_args(argv)

    try:
        if args.command == "get":
            value = get_value(args.file, args.path, args.attribute)
            if value is None:
                _log(f"Error: '{args.path}' not found in {args.file}")
                sys.exit(1)
            print(value)
        else:
            if set_value(args.file, args.path, args.value, args.attribute):
                _log(f"{args.path} has been written to {args.file}.")
            else:
                _log(f"{args.path} already up to date.")
    except (OSError, ET.ParseError, ValueError) as exc:
        _log(f"Error accessing config file {args.file}: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
