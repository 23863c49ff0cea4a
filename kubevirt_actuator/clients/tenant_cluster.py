from kubevirt_actuator.clients.kube import KubeClient, create_merge_patch, resource_path
from kubevirt_actuator.errors import ConfigurationNotReady
from kubevirt_actuator.schemas import MACHINE_API_VERSION, Machine, Node, Secret


class TenantClusterClient:
    def __init__(
        self,
        kube: KubeClient,
        *,
        config_map_namespace: str = "openshift-config",
        config_map_name: str = "cloud-provider-config",
        config_map_key: str = "namespace",
    ):
        self.kube = kube
        self.config_map_namespace = config_map_namespace
        self.config_map_name = config_map_name
        self.config_map_key = config_map_key

    def get_namespace(self) -> str:
        """Return the infra-cluster namespace the VMs of this cluster live in."""
        config_map = self.kube.get(
            resource_path(
                "v1", "configmaps", self.config_map_namespace, self.config_map_name
            )
        )
        value = (config_map.get("data") or {}).get(self.config_map_key)
        if not value:
            raise ConfigurationNotReady(
                "tenant-cluster configMap %s/%s doesn't contain the key %s",
                self.config_map_namespace,
                self.config_map_name,
                self.config_map_key,
            )
        return value

    def get_secret(self, name: str, namespace: str) -> Secret:
        return Secret.model_validate(
            self.kube.get(resource_path("v1", "secrets", namespace, name))
        )

    @staticmethod
    def _machine_path(namespace: str | None, name: str | None = None) -> str:
        return resource_path(MACHINE_API_VERSION, "machines", namespace, name)

    def list_machines(self, namespace: str | None = None) -> list[Machine]:
        return [
            Machine.model_validate(item)
            for item in self.kube.list(self._machine_path(namespace or None))
        ]

    def patch_machine(self, machine: Machine, original: Machine) -> Machine | None:
        modified = machine.to_dict()
        current = original.to_dict()
        modified.pop("status", None)
        current.pop("status", None)
        patch = create_merge_patch(current, modified)
        if not patch:
            return None
        body = self.kube.merge_patch(
            self._machine_path(machine.namespace, machine.name), patch
        )
        return Machine.model_validate(body)

    def patch_machine_status(self, machine: Machine, original: Machine) -> Machine | None:
        patch = create_merge_patch(
            {"status": original.to_dict().get("status", {})},
            {"status": machine.to_dict().get("status", {})},
        )
        if not patch:
            return None
        path = resource_path(
            MACHINE_API_VERSION, "machines", machine.namespace, machine.name, "status"
        )
        return Machine.model_validate(self.kube.merge_patch(path, patch))

    def get_node(self, name: str) -> Node:
        return Node.model_validate(self.kube.get(resource_path("v1", "nodes", name=name)))

    def list_nodes(self) -> list[Node]:
        return [
            Node.model_validate(item)
            for item in self.kube.list(resource_path("v1", "nodes"))
        ]

    def patch_node(self, node: Node, original: Node) -> Node | None:
        patch = create_merge_patch(original.to_dict(), node.to_dict())
        if not patch:
            return None
        body = self.kube.merge_patch(resource_path("v1", "nodes", name=node.metadata.name), patch)
        return Node.model_validate(body)
