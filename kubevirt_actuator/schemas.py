import base64
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


MACHINE_API_VERSION = "machine.openshift.io/v1beta1"
KUBEVIRT_API_VERSION = "kubevirt.io/v1alpha3"


class KubeModel(BaseModel):
    """Base for API objects: camelCase on the wire, unknown fields preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    finalizers: list[str] | None = None


class NodeAddress(KubeModel):
    type: str
    address: str


class ProviderSpecHolder(KubeModel):
    value: dict[str, Any] | None = None


class MachineSpec(KubeModel):
    provider_id: str | None = Field(default=None, alias="providerID")
    provider_spec: ProviderSpecHolder = Field(default_factory=ProviderSpecHolder)


class MachineStatus(KubeModel):
    provider_status: dict[str, Any] | None = None
    addresses: list[NodeAddress] = Field(default_factory=list)
    last_updated: datetime | None = None


class Machine(KubeModel):
    api_version: str = MACHINE_API_VERSION
    kind: str = "Machine"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: MachineSpec = Field(default_factory=MachineSpec)
    status: MachineStatus = Field(default_factory=MachineStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""


class NodeSpec(KubeModel):
    provider_id: str | None = Field(default=None, alias="providerID")


class Node(KubeModel):
    api_version: str = "v1"
    kind: str = "Node"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: NodeSpec = Field(default_factory=NodeSpec)


class Condition(KubeModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_probe_time: datetime | None = None
    last_transition_time: datetime | None = None


class ProviderSpec(KubeModel):
    """The provider-specific payload carried in ``spec.providerSpec.value``."""

    source_pvc_name: str = Field(min_length=1)
    ignition_secret_name: str = ""
    credentials_secret_name: str = ""
    network_name: str = ""
    requested_memory: str = ""
    requested_cpu: int = Field(default=0, ge=0, alias="requestedCPU")
    requested_storage: str = ""
    storage_class_name: str = ""
    persistent_volume_access_mode: str = ""


class ProviderStatus(KubeModel):
    vm_name: str | None = None
    vm_state: str | None = None
    ready: bool = False
    vm_last_observed_at: datetime | None = None
    conditions: list[Condition] = Field(default_factory=list)


class VirtualMachineStatus(KubeModel):
    created: bool = False
    ready: bool = False


class VirtualMachine(KubeModel):
    api_version: str = KUBEVIRT_API_VERSION
    kind: str = "VirtualMachine"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: dict[str, Any] = Field(default_factory=dict)
    status: VirtualMachineStatus = Field(default_factory=VirtualMachineStatus)


class InstanceInterface(KubeModel):
    name: str | None = None
    ip_address: str | None = None
    ip_addresses: list[str] = Field(default_factory=list)
    mac: str | None = None


class InstanceStatus(KubeModel):
    phase: str | None = None
    interfaces: list[InstanceInterface] = Field(default_factory=list)


class VirtualMachineInstance(KubeModel):
    api_version: str = KUBEVIRT_API_VERSION
    kind: str = "VirtualMachineInstance"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: dict[str, Any] = Field(default_factory=dict)
    status: InstanceStatus = Field(default_factory=InstanceStatus)


class Secret(KubeModel):
    api_version: str = "v1"
    kind: str = "Secret"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    type: str = "Opaque"
    data: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_bytes(cls, metadata: ObjectMeta, values: dict[str, bytes]) -> "Secret":
        return cls(
            metadata=metadata,
            data={
                key: base64.b64encode(value).decode("ascii")
                for key, value in values.items()
            },
        )

    def value(self, key: str) -> bytes | None:
        encoded = self.data.get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded)


class EventRead(BaseModel):
    id: int
    timestamp: datetime
    machine: str | None
    event_type: str
    payload: dict
