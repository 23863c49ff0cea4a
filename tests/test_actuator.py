from datetime import timedelta
from typing import Any, cast

import pytest

from kubevirt_actuator.actuator import Actuator
from kubevirt_actuator.clients.http import RequestFailure
from kubevirt_actuator.db import Base, SessionLocal, engine
from kubevirt_actuator.errors import (
    InvalidMachineConfiguration,
    MachineOperationError,
    RequeueAfterError,
)
from kubevirt_actuator.machine_scope import INSTANCE_STATE_ANNOTATION
from kubevirt_actuator.repositories import list_events
from kubevirt_actuator.services.lifecycle import LifecycleManager

from fakes import (
    INFRA_NAMESPACE,
    NOW,
    FakeInfraClient,
    FakeTenantClient,
    failure,
    make_machine,
)


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _actuator(infra: FakeInfraClient, tenant: FakeTenantClient) -> Actuator:
    lifecycle = LifecycleManager(cast(Any, infra), clock=lambda: NOW)
    return Actuator(lifecycle, cast(Any, tenant))


def _event_types(machine: str = "default/machine-test") -> list[str]:
    db = SessionLocal()
    try:
        return [event.event_type for event in list_events(db, machine=machine)]
    finally:
        db.close()


def test_create_persists_machine_and_records_event():
    infra = FakeInfraClient()
    tenant = FakeTenantClient()
    machine = make_machine()

    _actuator(infra, tenant).create(machine)

    assert (INFRA_NAMESPACE, "machine-test") in infra.vms
    assert tenant.machine_patches[0]["spec"] == {
        "providerID": "kubevirt://infra-ns/machine-test"
    }
    (status_patch,) = tenant.status_patches
    assert status_patch["status"]["providerStatus"]["vmState"] == "Created"
    assert _event_types() == ["machine.created"]


def test_create_with_missing_user_data_secret_records_failure():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(secrets=[])
    with pytest.raises(RequestFailure):
        _actuator(infra, tenant).create(make_machine())
    assert infra.calls == []
    assert _event_types() == ["machine.create_failed"]


def test_create_with_invalid_spec_reports_failure_condition():
    infra = FakeInfraClient()
    tenant = FakeTenantClient()
    machine = make_machine(provider_spec={"sourcePvcName": "rhcos"})

    with pytest.raises(InvalidMachineConfiguration):
        _actuator(infra, tenant).create(machine)

    assert infra.calls == []
    (status_patch,) = tenant.status_patches
    (condition,) = status_patch["status"]["providerStatus"]["conditions"]
    assert condition["type"] == "Failure"
    assert condition["status"] == "True"
    assert condition["reason"] == "MachineCreationFailed"
    assert _event_types() == ["machine.create_failed"]


def test_create_failure_still_persists_condition():
    infra = FakeInfraClient()
    infra.fail["create_vm"] = failure(RequestFailure, "POST", 500)
    tenant = FakeTenantClient()

    with pytest.raises(MachineOperationError):
        _actuator(infra, tenant).create(make_machine())

    assert tenant.machine_patches == []
    (status_patch,) = tenant.status_patches
    assert status_patch["status"]["providerStatus"]["conditions"][0]["status"] == "True"


def test_update_records_event_only_when_vm_changed():
    infra = FakeInfraClient()
    tenant = FakeTenantClient()
    actuator = _actuator(infra, tenant)
    actuator.create(make_machine())

    stored = tenant.machines[("default", "machine-test")]
    assert actuator.update(stored) is False
    assert _event_types() == ["machine.created"]

    changed = tenant.machines[("default", "machine-test")]
    changed.metadata.labels["role"] = "worker"
    assert actuator.update(changed) is True
    assert _event_types() == ["machine.updated", "machine.created"]


def test_update_keeps_instance_state_annotation_out_of_vm():
    infra = FakeInfraClient()
    tenant = FakeTenantClient()
    actuator = _actuator(infra, tenant)
    actuator.create(make_machine())

    stored = tenant.machines[("default", "machine-test")]
    assert stored.metadata.annotations[INSTANCE_STATE_ANNOTATION] == "Created"
    vm = infra.vms[(INFRA_NAMESPACE, "machine-test")]
    assert INSTANCE_STATE_ANNOTATION not in vm.metadata.annotations


def test_update_of_missing_vm_requeues_without_event():
    tenant = FakeTenantClient()
    machine = make_machine(
        provider_id="kubevirt://infra-ns/machine-test",
        creation_timestamp=NOW - timedelta(hours=1),
    )
    with pytest.raises(RequeueAfterError) as exc_info:
        _actuator(FakeInfraClient(), tenant).update(machine)
    assert exc_info.value.requeue_after == timedelta(seconds=180)
    assert _event_types() == []


def test_delete_and_exists():
    infra = FakeInfraClient()
    tenant = FakeTenantClient()
    actuator = _actuator(infra, tenant)
    machine = make_machine()
    actuator.create(machine)
    assert actuator.exists(machine) is True

    actuator.delete(machine)
    assert actuator.exists(machine) is False
    assert _event_types() == ["machine.deleted", "machine.created"]


def test_delete_failure_records_event():
    infra = FakeInfraClient()
    infra.add_vm(INFRA_NAMESPACE, "machine-test")
    infra.fail["delete_vm"] = failure(RequestFailure, "DELETE", 500)
    with pytest.raises(MachineOperationError):
        _actuator(infra, FakeTenantClient()).delete(make_machine())
    assert _event_types() == ["machine.delete_failed"]
