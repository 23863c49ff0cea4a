import json

import httpx
import pytest

from kubevirt_actuator.clients.http import RetryPolicy
from kubevirt_actuator.clients.infra_cluster import InfraClusterClient
from kubevirt_actuator.clients.kube import KubeClient, create_merge_patch, resource_path
from kubevirt_actuator.clients.tenant_cluster import TenantClusterClient
from kubevirt_actuator.errors import ConfigurationNotReady

from fakes import make_machine


class Recorder:
    def __init__(self, responses: dict[tuple[str, str], dict] | None = None):
        self.requests: list[httpx.Request] = []
        self.responses = responses or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = self.responses.get((request.method, request.url.path))
        if body is None:
            return httpx.Response(status_code=404, request=request)
        return httpx.Response(status_code=200, json=body, request=request)


def _kube(recorder: Recorder, token: str | None = None) -> KubeClient:
    return KubeClient(
        "https://cluster.test/",
        RetryPolicy(attempts=1, sleep_sec=0),
        token=token,
        transport=httpx.MockTransport(recorder),
    )


def test_resource_path():
    assert resource_path("v1", "secrets", "ns") == "/api/v1/namespaces/ns/secrets"
    assert resource_path("v1", "nodes", name="n1") == "/api/v1/nodes/n1"
    assert (
        resource_path("kubevirt.io/v1alpha3", "virtualmachines", "ns", "vm")
        == "/apis/kubevirt.io/v1alpha3/namespaces/ns/virtualmachines/vm"
    )
    assert (
        resource_path("machine.openshift.io/v1beta1", "machines", "ns", "m", "status")
        == "/apis/machine.openshift.io/v1beta1/namespaces/ns/machines/m/status"
    )


def test_create_merge_patch():
    original = {"a": 1, "b": {"c": 2, "d": 3}, "e": [1], "gone": True}
    modified = {"a": 1, "b": {"c": 5, "d": 3}, "e": [1, 2], "new": "x"}
    assert create_merge_patch(original, modified) == {
        "b": {"c": 5},
        "e": [1, 2],
        "new": "x",
        "gone": None,
    }
    assert create_merge_patch(modified, modified) == {}


def test_tenant_namespace_comes_from_config_map():
    recorder = Recorder(
        {
            ("GET", "/api/v1/namespaces/openshift-config/configmaps/cloud-provider-config"): {
                "data": {"namespace": "infra-ns"}
            }
        }
    )
    client = TenantClusterClient(_kube(recorder, token="secret-token"))
    assert client.get_namespace() == "infra-ns"
    assert recorder.requests[0].headers["Authorization"] == "Bearer secret-token"


def test_tenant_namespace_missing_key_is_not_ready():
    recorder = Recorder(
        {
            ("GET", "/api/v1/namespaces/openshift-config/configmaps/cloud-provider-config"): {
                "data": {}
            }
        }
    )
    with pytest.raises(ConfigurationNotReady):
        TenantClusterClient(_kube(recorder)).get_namespace()


def test_patch_machine_status_targets_status_subresource():
    path = "/apis/machine.openshift.io/v1beta1/namespaces/default/machines/machine-test/status"
    original = make_machine()
    recorder = Recorder({("PATCH", path): original.to_dict()})
    client = TenantClusterClient(_kube(recorder))

    machine = original.model_copy(deep=True)
    machine.status.provider_status = {"vmName": "machine-test"}
    client.patch_machine_status(machine, original)

    (request,) = recorder.requests
    assert request.url.path == path
    assert request.headers["Content-Type"] == "application/merge-patch+json"
    assert json.loads(request.content) == {
        "status": {"providerStatus": {"vmName": "machine-test"}}
    }


def test_patch_machine_without_changes_sends_nothing():
    recorder = Recorder()
    client = TenantClusterClient(_kube(recorder))
    machine = make_machine()
    assert client.patch_machine(machine, machine.model_copy(deep=True)) is None
    assert recorder.requests == []


def test_delete_virtual_machine_sends_grace_period():
    path = "/apis/kubevirt.io/v1alpha3/namespaces/infra-ns/virtualmachines/vm-1"
    recorder = Recorder({("DELETE", path): {}})
    InfraClusterClient(_kube(recorder)).delete_virtual_machine(
        "infra-ns", "vm-1", grace_period_seconds=10
    )
    (request,) = recorder.requests
    assert json.loads(request.content) == {
        "apiVersion": "v1",
        "kind": "DeleteOptions",
        "gracePeriodSeconds": 10,
    }


def test_get_virtual_machine_parses_status():
    path = "/apis/kubevirt.io/v1alpha3/namespaces/infra-ns/virtualmachines/vm-1"
    recorder = Recorder(
        {
            ("GET", path): {
                "apiVersion": "kubevirt.io/v1alpha3",
                "kind": "VirtualMachine",
                "metadata": {"name": "vm-1", "namespace": "infra-ns", "resourceVersion": "7"},
                "spec": {"runStrategy": "Always"},
                "status": {"created": True, "ready": True},
            }
        }
    )
    vm = InfraClusterClient(_kube(recorder)).get_virtual_machine("infra-ns", "vm-1")
    assert vm.metadata.resource_version == "7"
    assert vm.status.created is True
    assert vm.spec == {"runStrategy": "Always"}
