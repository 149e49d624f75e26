"""Trust cluster and custom CA certificates in the JVM.

A bundle may hold several PEM certificates.  Each one is validated with
``openssl`` first; an invalid one is reported and skipped and start-up
carries on.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Iterable

from jenkins_entrypoint.environment import EntrypointEnv, gather_env

__all__ = [
    "JDK_CACERTS",
    "TRUSTSTORE",
    "TRUSTSTORE_PASSWORD",
    "candidate_bundles",
    "validate_certificate",
    "split_bundle",
    "import_ca_certificates",
]

JDK_CACERTS = Path("/etc/pki/java/cacerts")

# Rebuilt on every start outside the volume so rotated CAs are picked up.
TRUSTSTORE = Path("/tmp/jenkins-truststore/cacerts")
TRUSTSTORE_PASSWORD = "changeit"

SERVICE_ACCOUNT_BUNDLES = (
    Path("/run/secrets/kubernetes.io/serviceaccount/ca.crt"),
    Path("/run/secrets/kubernetes.io/serviceaccount/service-ca.crt"),
)

_PEM_CERT_RE = re.compile(r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL)


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


def candidate_bundles(env: EntrypointEnv | None = None) -> list[Path]:
    """Return the CA bundles that exist on disk, in import order."""

    env = gather_env(env)
    paths = list(SERVICE_ACCOUNT_BUNDLES)
    if env["CUSTOM_CA_BUNDLE"]:
        paths.append(Path(env["CUSTOM_CA_BUNDLE"]))
    return [p for p in paths if p.is_file()]


def validate_certificate(bundle: Path, label: str | None = None) -> bool:
    """Return *True* when ``openssl`` can parse *bundle* as an X.509 certificate.

    Only the first certificate of a file is checked; see :func:`split_bundle`.
    *label* names the certificate in warnings and defaults to the path.
    """

    label = str(bundle) if label is None else label
    try:
        result = subprocess.run(
            ["openssl", "x509", "-noout", "-in", str(bundle)],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        _log(f"WARNING: openssl not available, cannot validate {label}")
        return False
    if result.returncode != 0:
        _log(f"WARNING: {label} is not a valid certificate: {result.stderr.strip()}")
        return False
    return True


def split_bundle(bundle: Path) -> list[str]:
    """Return the PEM certificate blocks of *bundle*, in file order.

    An empty list means the file holds no PEM block (a DER file for instance)
    and is handled as a single certificate.
    """

    text = bundle.read_text(encoding="utf-8", errors="replace")
    return [m.group(0) + "\n" for m in _PEM_CERT_RE.finditer(text)]


def _alias(index: int, bundle: Path) -> str:
    return f"jenkins-{index}-" + bundle.name.replace(".", "-")


def _certificates(index: int, bundle: Path, workdir: Path) -> list[tuple[str, Path, str]]:
    """Return ``(alias, file, label)`` for every certificate in *bundle*."""

    alias = _alias(index, bundle)
    blocks = split_bundle(bundle)
    if not blocks:
        return [(alias, bundle, str(bundle))]

    certificates = []
    for n, block in enumerate(blocks, start=1):
        cert_file = workdir / f"{alias}-{n}.pem"
        cert_file.write_text(block, encoding="utf-8")
        certificates.append((f"{alias}-{n}", cert_file, f"{bundle} (certificate {n})"))
    return certificates


def import_ca_certificates(
    env: EntrypointEnv | None = None,
    bundles: Iterable[Path] | None = None,
    truststore: Path | None = None,
) -> list[str]:
    """Import every valid certificate of every bundle into a private trust store.

    Each PEM block is validated and imported on its own, under an alias
    unique to its bundle and position.  Returns the JVM system properties
    pointing at that store, or an empty list when nothing was imported (the
    JDK default store then applies).
    """

    bundles = candidate_bundles(env) if bundles is None else list(bundles)
    truststore = TRUSTSTORE if truststore is None else truststore

    with tempfile.TemporaryDirectory(prefix="jenkins-ca-") as tmp:
        workdir = Path(tmp)
        valid = [
            (alias, cert_file, label)
            for index, bundle in enumerate(bundles)
            for alias, cert_file, label in _certificates(index, bundle, workdir)
            if validate_certificate(cert_file, label)
        ]
        if not valid:
            return []

        truststore.parent.mkdir(parents=True, exist_ok=True)
        if truststore.exists():
            truststore.unlink()
        if JDK_CACERTS.is_file():
            shutil.copyfile(JDK_CACERTS, truststore)

        for alias, cert_file, label in valid:
            subprocess.run(
                [
                    "keytool", "-importcert", "-noprompt", "-trustcacerts",
                    "-alias", alias,
                    "-file", str(cert_file),
                    "-keystore", str(truststore),
                    "-storepass", TRUSTSTORE_PASSWORD,
                ],
                check=True,
                capture_output=True,
            )
            _log(f"trusted CA {label}")

    return [
        f"-Djavax.net.ssl.trustStore={truststore}",
        f"-Djavax.net.ssl.trustStorePassword={TRUSTSTORE_PASSWORD}",
    ]
