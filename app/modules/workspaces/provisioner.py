"""
Namespace Provisioner: namespace, resource quota and default-deny network
policy for a workspace.

Every step is idempotent and logs its own failure without raising, so
provisioning can run detached from the request that created the workspace.
"""
import logging
import threading
from typing import Dict, Optional

from app.config import settings
from app.modules.workspaces.quota import build_quota_hard

logger = logging.getLogger(__name__)

QUOTA_NAME = "appyard-quota"
NETWORK_POLICY_NAME = "appyard-default-deny"


def namespace_labels(tenant_slug: str, workspace_slug: str) -> Dict[str, str]:
    prefix = settings.label_prefix
    return {
        f"{prefix}/tenant": tenant_slug,
        f"{prefix}/workspace": workspace_slug,
        f"{prefix}/managed-by": "appyard",
    }


class NamespaceProvisioner:
    def __init__(self, cluster):
        self.cluster = cluster

    def provision(self, namespace: str, labels: Dict[str, str], quota: Optional[Dict[str, str]] = None) -> Dict[str, bool]:
        """Run every step; returns which steps succeeded."""
        results = {"namespace": False, "quota": False, "network_policy": False}
        try:
            self.cluster.create_namespace(namespace, labels)
            results["namespace"] = True
        except Exception as e:
            logger.error(f"Failed to create namespace {namespace}: {e}")

        hard = build_quota_hard(quota or settings.default_workspace_quota())
        try:
            self.cluster.apply_resource_quota(namespace, QUOTA_NAME, hard, labels={
                f"{settings.label_prefix}/managed-by": "appyard",
            })
            results["quota"] = True
        except Exception as e:
            logger.error(f"Failed to apply resource quota in {namespace}: {e}")

        try:
            self.cluster.apply_network_policy(namespace, NETWORK_POLICY_NAME, settings.ingress_namespace, labels={
                f"{settings.label_prefix}/managed-by": "appyard",
            })
            results["network_policy"] = True
        except Exception as e:
            logger.error(f"Failed to apply network policy in {namespace}: {e}")

        if all(results.values()):
            logger.info(f"Provisioned namespace {namespace}")
        else:
            failed = [step for step, ok in results.items() if not ok]
            logger.warning(f"Provisioning of {namespace} incomplete; failed steps: {', '.join(failed)}")
        return results

    def provision_in_background(self, namespace: str, labels: Dict[str, str], quota: Optional[Dict[str, str]] = None) -> threading.Thread:
        thread = threading.Thread(
            target=self.provision,
            args=(namespace, labels, quota),
            name=f"provision-{namespace}",
            daemon=True,
        )
        thread.start()
        return thread

    def deprovision(self, namespace: str) -> bool:
        try:
            self.cluster.delete_namespace(namespace)
            return True
        except Exception as e:
            logger.error(f"Failed to delete namespace {namespace}: {e}")
            return False
