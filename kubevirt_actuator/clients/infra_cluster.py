from kubevirt_actuator.clients.kube import KubeClient, resource_path
from kubevirt_actuator.schemas import (
    KUBEVIRT_API_VERSION,
    Secret,
    VirtualMachine,
    VirtualMachineInstance,
)


class InfraClusterClient:
    """CRUD on the virtualization cluster: VMs, VM instances and secrets.

    Missing objects surface as ``NotFoundError`` and duplicate creates as
    ``AlreadyExistsError``; callers decide what either means.
    """

    def __init__(self, kube: KubeClient):
        self.kube = kube

    @staticmethod
    def _vm_path(namespace: str, name: str | None = None) -> str:
        return resource_path(KUBEVIRT_API_VERSION, "virtualmachines", namespace, name)

    def create_virtual_machine(self, namespace: str, vm: VirtualMachine) -> VirtualMachine:
        body = self.kube.create(self._vm_path(namespace), vm.to_dict())
        return VirtualMachine.model_validate(body)

    def get_virtual_machine(self, namespace: str, name: str) -> VirtualMachine:
        body = self.kube.get(self._vm_path(namespace, name))
        return VirtualMachine.model_validate(body)

    def update_virtual_machine(self, namespace: str, vm: VirtualMachine) -> VirtualMachine:
        body = self.kube.replace(self._vm_path(namespace, vm.metadata.name), vm.to_dict())
        return VirtualMachine.model_validate(body)

    def delete_virtual_machine(
        self, namespace: str, name: str, grace_period_seconds: int | None = None
    ) -> None:
        options: dict = {"apiVersion": "v1", "kind": "DeleteOptions"}
        if grace_period_seconds is not None:
            options["gracePeriodSeconds"] = grace_period_seconds
        self.kube.delete(self._vm_path(namespace, name), options)

    def get_virtual_machine_instance(
        self, namespace: str, name: str
    ) -> VirtualMachineInstance:
        path = resource_path(
            KUBEVIRT_API_VERSION, "virtualmachineinstances", namespace, name
        )
        return VirtualMachineInstance.model_validate(self.kube.get(path))

    def create_secret(self, namespace: str, secret: Secret) -> Secret:
        body = self.kube.create(resource_path("v1", "secrets", namespace), secret.to_dict())
        return Secret.model_validate(body)
