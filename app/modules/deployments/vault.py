"""Secret Vault Adapter: per-deployment credentials stored as cluster secrets."""

import logging
import secrets
import string
from typing import Dict, Optional

from app.config import settings
from app.modules.recipes.schemas import SecretField

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
DEFAULT_PASSWORD_LENGTH = 24


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def secret_ref_for(deployment_name: str) -> str:
    return f"{deployment_name}-credentials"


def resolve_secrets(
    schema: Dict[str, SecretField],
    supplied: Optional[Dict[str, str]] = None,
    existing: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Values for every declared secret key.

    Precedence: caller-supplied, then previously stored (so upgrades never
    rotate), then freshly generated for keys marked generate.
    """
    supplied = supplied or {}
    existing = existing or {}
    resolved: Dict[str, str] = {}
    for key, field in schema.items():
        if supplied.get(key):
            resolved[key] = supplied[key]
        elif existing.get(key):
            resolved[key] = existing[key]
        elif field.generate:
            resolved[key] = generate_password(field.length or DEFAULT_PASSWORD_LENGTH)
    return resolved


class SecretVault:
    def __init__(self, cluster):
        self.cluster = cluster

    def write(self, namespace: str, secret_ref: str, values: Dict[str, str]):
        labels = {f"{settings.label_prefix}/managed-by": "appyard"}
        self.cluster.write_secret(namespace, secret_ref, values, labels=labels)
        logger.info(f"Stored {len(values)} secret value(s) in {namespace}/{secret_ref}")

    def read(self, namespace: str, secret_ref: Optional[str]) -> Dict[str, str]:
        if not secret_ref:
            return {}
        return self.cluster.read_secret(namespace, secret_ref)

    def delete(self, namespace: str, secret_ref: Optional[str]):
        if not secret_ref:
            return
        if self.cluster.delete_secret(namespace, secret_ref):
            logger.info(f"Deleted secret {namespace}/{secret_ref}")
