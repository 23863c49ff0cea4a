"""Provider ID assignment for tenant nodes.

A node's ``spec.providerID`` ties it to the infra-cluster VM instance that
backs it; autoscaling and machine/node linking depend on it. The ID is
``kubevirt://<infra-namespace>/<instance-name>`` and is written once: a node
that already carries one is never touched again.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from kubevirt_actuator.clients.http import NotFoundError, RequestFailure
from kubevirt_actuator.clients.infra_cluster import InfraClusterClient
from kubevirt_actuator.clients.tenant_cluster import TenantClusterClient
from kubevirt_actuator.errors import ConfigurationNotReady
from kubevirt_actuator.machine_scope import format_provider_id


logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    requeue_after: timedelta | None = None
    assigned_provider_id: str | None = None


class ProviderIDReconciler:
    def __init__(
        self,
        tenant_client: TenantClusterClient,
        infra_client: InfraClusterClient,
        *,
        config_retry: timedelta = timedelta(seconds=30),
    ):
        self.tenant_client = tenant_client
        self.infra_client = infra_client
        self.config_retry = config_retry

    def reconcile(self, node_name: str) -> ReconcileResult:
        logger.debug("reconciling node %s", node_name)
        try:
            node = self.tenant_client.get_node(node_name)
        except NotFoundError:
            return ReconcileResult()

        if node.spec.provider_id:
            return ReconcileResult()

        try:
            infra_namespace = self.tenant_client.get_namespace()
        except (RequestFailure, ConfigurationNotReady) as exc:
            logger.warning(
                "node %s: infra namespace not available, retrying in %s: %s",
                node_name,
                self.config_retry,
                exc,
            )
            return ReconcileResult(requeue_after=self.config_retry)

        logger.info(
            "node %s: spec.providerID is empty, fetching from the infra cluster",
            node_name,
        )
        try:
            instance = self.infra_client.get_virtual_machine_instance(
                infra_namespace, node.metadata.name
            )
        except NotFoundError:
            logger.info(
                "node %s: no VM instance in %s yet", node_name, infra_namespace
            )
            return ReconcileResult()

        original = node.model_copy(deep=True)
        provider_id = format_provider_id(infra_namespace, instance.metadata.name)
        node.spec.provider_id = provider_id
        self.tenant_client.patch_node(node, original)
        logger.info("node %s: set providerID %s", node_name, provider_id)
        return ReconcileResult(assigned_provider_id=provider_id)
