#!/usr/bin/env python3
#
# This package writes the files that the CIS Kubernetes benchmark requires on
# master nodes: the API server audit policy and the encryption configuration
# for Secrets at rest.

import jinja2
import os
import pathlib
import trustboot.configuration.defaults
import trustboot.logging
import typing
import yaml

logger = trustboot.logging.get_logger(__name__)

PathLike = typing.Union[str, pathlib.Path]

AUDIT_POLICY_PATH = trustboot.configuration.defaults.AUDIT_POLICY_PATH
ENCRYPTION_CONFIG_PATH = trustboot.configuration.defaults.ENCRYPTION_CONFIG_PATH

# Owner read-only
ARTIFACT_MODE = 0o400

AUDIT_POLICY = {
    "apiVersion": "audit.k8s.io/v1beta1",
    "kind": "Policy",
    "rules": [{"level": "Metadata"}],
}

ENCRYPTION_CONFIG_TEMPLATE = """kind: EncryptionConfig
apiVersion: v1
resources:
- resources:
  - secrets
  providers:
  - aescbc:
      keys:
      - name: key1
        secret: {{ aescbc_encryption_secret }}
  - identity: {}
"""


def render_audit_policy() -> str:
    return yaml.safe_dump(AUDIT_POLICY, sort_keys=False)


def render_encryption_config(aescbc_encryption_secret: str) -> str:
    return jinja2.Template(ENCRYPTION_CONFIG_TEMPLATE).render(
        aescbc_encryption_secret=aescbc_encryption_secret
    )


def _write_once(path: PathLike, contents: str) -> bool:
    """
    Write the file with owner-only permissions unless it already exists.
    Returns True if the file was written. The first bootstrap wins, so
    secrets already on disk are never replaced.
    """
    path = pathlib.Path(path)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, ARTIFACT_MODE)
    except FileExistsError:
        logger.info(f"{path} already exists, skipping")
        return False
    logger.info(f"Writing {path}...")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(contents)
        # Ignore the umask
        path.chmod(ARTIFACT_MODE)
    except Exception:
        # A partial file would be skipped by every later bootstrap
        logger.error(f"Failed to write {path}, removing it")
        path.unlink()
        raise
    return True


def write_audit_policy(path: PathLike = AUDIT_POLICY_PATH) -> bool:
    return _write_once(path, render_audit_policy())


def write_encryption_config(
    aescbc_encryption_secret: str, path: PathLike = ENCRYPTION_CONFIG_PATH
) -> bool:
    return _write_once(path, render_encryption_config(aescbc_encryption_secret))


def enforce_common_master_requirements(
    aescbc_encryption_secret: str,
    *,
    audit_policy_path: PathLike = AUDIT_POLICY_PATH,
    encryption_config_path: PathLike = ENCRYPTION_CONFIG_PATH,
) -> None:
    "Write the audit policy and the encryption configuration"
    write_audit_policy(audit_policy_path)
    write_encryption_config(aescbc_encryption_secret, encryption_config_path)
