"""Per-pass working state for one machine.

A ``MachineScope`` is built fresh for every reconcile call and thrown away
afterwards. It parses the provider payloads once, derives the desired VM and
boot-config secret, keeps the tenant-cluster lookups made during the pass, and
writes the machine back with a merge patch against the copy taken on entry.
"""

import logging
from dataclasses import dataclass
from functools import cached_property
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from kubevirt_actuator.clients.tenant_cluster import TenantClusterClient
from kubevirt_actuator.conditions import clear_failure, condition_failed, set_condition
from kubevirt_actuator.errors import (
    ConfigurationNotReady,
    InvalidMachineConfiguration,
    StatusSyncError,
)
from kubevirt_actuator.schemas import (
    Machine,
    NodeAddress,
    ObjectMeta,
    ProviderSpec,
    ProviderStatus,
    Secret,
    VirtualMachine,
    VirtualMachineInstance,
)


logger = logging.getLogger(__name__)

CLUSTER_ID_LABEL = "machine.openshift.io/cluster-api-cluster"
UPSTREAM_CLUSTER_ID_LABEL = "sigs.k8s.io/cluster-api-cluster"
INSTANCE_STATE_ANNOTATION = "machine.openshift.io/instance-state"
PROVIDER_ID_FORMAT = "kubevirt://{namespace}/{name}"

TENANT_USER_DATA_KEY = "userData"
IGNITION_USER_DATA_KEY = "userdata"
MAIN_NETWORK_NAME = "main"
DEFAULT_BUS = "virtio"
CDI_API_VERSION = "cdi.kubevirt.io/v1alpha1"


def format_provider_id(namespace: str, name: str) -> str:
    return PROVIDER_ID_FORMAT.format(namespace=namespace, name=name)


@dataclass(frozen=True)
class VMDefaults:
    requested_memory: str = "2048M"
    requested_storage: str = "35Gi"
    access_mode: str = "ReadWriteMany"


def _parse_provider_spec(machine: Machine) -> ProviderSpec:
    raw = machine.spec.provider_spec.value
    if raw is None:
        raise InvalidMachineConfiguration(
            "%s: machine has no providerSpec value", machine.name
        )
    try:
        return ProviderSpec.model_validate(raw)
    except ValidationError as exc:
        raise InvalidMachineConfiguration(
            "%s: failed to get machine config: %s", machine.name, exc
        ) from exc


def _parse_provider_status(machine: Machine) -> ProviderStatus:
    raw = machine.status.provider_status
    if not raw:
        return ProviderStatus()
    try:
        return ProviderStatus.model_validate(raw)
    except ValidationError as exc:
        raise InvalidMachineConfiguration(
            "%s: failed to get machine provider status: %s", machine.name, exc
        ) from exc


class MachineScope:
    def __init__(
        self,
        machine: Machine,
        tenant_client: TenantClusterClient,
        defaults: VMDefaults | None = None,
    ):
        self.machine = machine
        self.origin_machine = machine.model_copy(deep=True)
        self.tenant_client = tenant_client
        self.defaults = defaults or VMDefaults()
        self.provider_status = _parse_provider_status(machine)
        self._infra_namespace: str | None = None
        self._user_data: bytes | None = None

    @cached_property
    def provider_spec(self) -> ProviderSpec:
        return _parse_provider_spec(self.machine)

    @property
    def machine_name(self) -> str:
        return self.machine.name

    def infra_namespace(self) -> str:
        if self._infra_namespace is None:
            self._infra_namespace = self.tenant_client.get_namespace()
        return self._infra_namespace

    def cluster_id(self) -> str:
        labels = self.machine.metadata.labels
        cluster_id = labels.get(CLUSTER_ID_LABEL) or labels.get(UPSTREAM_CLUSTER_ID_LABEL)
        if not cluster_id:
            raise InvalidMachineConfiguration(
                "%s: missing %r label", self.machine_name, CLUSTER_ID_LABEL
            )
        return cluster_id

    def ownership_label(self) -> str:
        return f"{self.cluster_id()}-machine.openshift.io"

    def user_data(self) -> bytes:
        """Boot-config bytes from the tenant secret named in the provider spec."""
        if self._user_data is not None:
            return self._user_data
        secret_name = self.provider_spec.ignition_secret_name
        if not secret_name:
            raise InvalidMachineConfiguration(
                "%s: providerSpec.ignitionSecretName is empty", self.machine_name
            )
        secret = self.tenant_client.get_secret(secret_name, self.machine.namespace)
        value = secret.value(TENANT_USER_DATA_KEY)
        if value is None:
            raise ConfigurationNotReady(
                "%s: secret %s/%s has no %s key",
                self.machine_name,
                self.machine.namespace,
                secret_name,
                TENANT_USER_DATA_KEY,
            )
        self._user_data = value
        return value

    def ignition_secret_name(self) -> str:
        return f"{self.machine_name}-ignition"

    def ignition_secret(self, user_data: bytes) -> Secret:
        metadata = ObjectMeta(
            name=self.ignition_secret_name(),
            namespace=self.infra_namespace(),
            labels={self.ownership_label(): "owned"},
        )
        return Secret.from_bytes(metadata, {IGNITION_USER_DATA_KEY: user_data})

    def desired_virtual_machine(self) -> VirtualMachine:
        name = self.machine_name
        namespace = self.infra_namespace()
        labels = dict(self.machine.metadata.labels)
        labels[self.ownership_label()] = "owned"
        annotations = {
            key: value
            for key, value in self.machine.metadata.annotations.items()
            if key != INSTANCE_STATE_ANNOTATION
        }
        return VirtualMachine(
            metadata=ObjectMeta(
                name=name, namespace=namespace, labels=labels, annotations=annotations
            ),
            spec={
                "runStrategy": "Always",
                "dataVolumeTemplates": [self._boot_volume_template(namespace)],
                "template": self._instance_template(),
            },
        )

    def _boot_volume_name(self) -> str:
        return f"{self.machine_name}-bootvolume"

    def _data_volume_disk_name(self) -> str:
        return f"{self.machine_name}-datavolumedisk1"

    def _cloud_init_disk_name(self) -> str:
        return f"{self.machine_name}-cloudinitdisk"

    def _boot_volume_template(self, namespace: str) -> dict[str, Any]:
        spec = self.provider_spec
        pvc: dict[str, Any] = {
            "accessModes": [spec.persistent_volume_access_mode or self.defaults.access_mode],
            "resources": {
                "requests": {
                    "storage": spec.requested_storage or self.defaults.requested_storage
                }
            },
        }
        if spec.storage_class_name:
            pvc["storageClassName"] = spec.storage_class_name
        return {
            "apiVersion": CDI_API_VERSION,
            "kind": "DataVolume",
            "metadata": {"name": self._boot_volume_name(), "namespace": namespace},
            "spec": {
                "pvc": pvc,
                "source": {"pvc": {"name": spec.source_pvc_name, "namespace": namespace}},
            },
        }

    def _instance_template(self) -> dict[str, Any]:
        name = self.machine_name
        spec = self.provider_spec
        requests = {"memory": spec.requested_memory or self.defaults.requested_memory}
        if spec.requested_cpu:
            requests["cpu"] = str(spec.requested_cpu)

        if spec.network_name:
            network = {"name": MAIN_NETWORK_NAME, "multus": {"networkName": spec.network_name}}
        else:
            network = {"name": MAIN_NETWORK_NAME, "pod": {}}

        return {
            "metadata": {"labels": {"kubevirt.io/vm": name, "name": name}},
            "spec": {
                "domain": {
                    "resources": {"requests": requests},
                    "devices": {
                        "disks": [
                            {"name": self._data_volume_disk_name(), "disk": {"bus": DEFAULT_BUS}},
                            {"name": self._cloud_init_disk_name(), "disk": {"bus": DEFAULT_BUS}},
                        ],
                        "interfaces": [{"name": MAIN_NETWORK_NAME, "bridge": {}}],
                    },
                },
                "networks": [network],
                "volumes": [
                    {
                        "name": self._data_volume_disk_name(),
                        "dataVolume": {"name": self._boot_volume_name()},
                    },
                    {
                        "name": self._cloud_init_disk_name(),
                        "cloudInitConfigDrive": {
                            "userDataSecretRef": {"name": self.ignition_secret_name()}
                        },
                    },
                ],
            },
        }

    def existed_since(self) -> datetime | None:
        reference = (
            self.provider_status.vm_last_observed_at
            or self.machine.metadata.creation_timestamp
        )
        if reference is not None and reference.tzinfo is None:
            reference = reference.replace(tzinfo=UTC)
        return reference

    def within_grace_window(self, grace: timedelta, now: datetime | None = None) -> bool:
        """True while a missing VM is more likely lag than loss."""
        reference = self.existed_since()
        if reference is None:
            return True
        now = now or datetime.now(UTC)
        return now - reference < grace

    def set_failure(self, message: str, now: datetime | None = None) -> None:
        set_condition(self.provider_status.conditions, condition_failed(message), now)

    def sync_machine(
        self,
        vm: VirtualMachine,
        vmi: VirtualMachineInstance | None,
        now: datetime | None = None,
    ) -> None:
        if not vm.metadata.name:
            raise StatusSyncError(
                machine=self.machine_name, detail="virtual machine has no name"
            )
        now = now or datetime.now(UTC)
        namespace = vm.metadata.namespace or self.infra_namespace()

        if vmi is not None and vmi.status.phase:
            vm_state = vmi.status.phase
        elif vm.status.created:
            vm_state = "Created"
        else:
            vm_state = "Pending"

        status = self.provider_status
        status.vm_name = vm.metadata.name
        status.vm_state = vm_state
        status.ready = vm.status.ready
        status.vm_last_observed_at = now
        clear_failure(status.conditions, now)

        self.machine.metadata.annotations[INSTANCE_STATE_ANNOTATION] = vm_state
        if not self.machine.spec.provider_id:
            self.machine.spec.provider_id = format_provider_id(namespace, vm.metadata.name)
        self.machine.status.addresses = self._addresses(vm, vmi)

    @staticmethod
    def _addresses(
        vm: VirtualMachine, vmi: VirtualMachineInstance | None
    ) -> list[NodeAddress]:
        addresses: list[NodeAddress] = []
        seen: set[str] = set()
        if vmi is not None:
            for interface in vmi.status.interfaces:
                for ip in [interface.ip_address, *interface.ip_addresses]:
                    if ip and ip not in seen:
                        seen.add(ip)
                        addresses.append(NodeAddress(type="InternalIP", address=ip))
        addresses.append(NodeAddress(type="Hostname", address=vm.metadata.name))
        addresses.append(NodeAddress(type="InternalDNS", address=vm.metadata.name))
        return addresses

    def patch_machine(self, now: datetime | None = None) -> None:
        provider_status = self.provider_status.to_dict()
        if provider_status != (self.origin_machine.status.provider_status or {}):
            self.machine.status.last_updated = now or datetime.now(UTC)
        self.machine.status.provider_status = provider_status

        self.tenant_client.patch_machine(self.machine, self.origin_machine)
        self.tenant_client.patch_machine_status(self.machine, self.origin_machine)
        self.origin_machine = self.machine.model_copy(deep=True)
