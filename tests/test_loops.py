from datetime import UTC, datetime, timedelta
from typing import Any, cast

from kubevirt_actuator import loops
from kubevirt_actuator.actuator import Actuator
from kubevirt_actuator.db import Base, SessionLocal, engine
from kubevirt_actuator.repositories import list_events
from kubevirt_actuator.services.lifecycle import LifecycleManager
from kubevirt_actuator.services.provider_id import ProviderIDReconciler

from fakes import (
    INFRA_NAMESPACE,
    NOW,
    FakeInfraClient,
    FakeTenantClient,
    make_machine,
    make_node,
    user_data_secret,
)


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    loops._machine_requeue_at.clear()
    loops._node_requeue_at.clear()
    loops._invalid_specs.clear()


def _actuator(infra: FakeInfraClient, tenant: FakeTenantClient) -> Actuator:
    return Actuator(LifecycleManager(cast(Any, infra), clock=lambda: NOW), cast(Any, tenant))


def _events(event_type: str | None = None) -> list[str]:
    db = SessionLocal()
    try:
        return [e.event_type for e in list_events(db, event_type=event_type)]
    finally:
        db.close()


def test_new_machine_is_created_then_updated():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(machines=[make_machine()])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert infra.count("create_vm") == 1
    stored = tenant.machines[("default", "machine-test")]
    assert stored.spec.provider_id == "kubevirt://infra-ns/machine-test"

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=10))
    assert infra.count("create_vm") == 1
    assert _events() == ["machine.created"]


def test_deleted_machine_removes_vm_then_releases_finalizer():
    infra = FakeInfraClient()
    infra.add_vm(INFRA_NAMESPACE, "machine-test")
    machine = make_machine()
    machine.metadata.deletion_timestamp = NOW
    machine.metadata.finalizers = [loops.MACHINE_FINALIZER, "other"]
    tenant = FakeTenantClient(machines=[machine])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert infra.vms == {}
    assert loops._machine_requeue_at["default/machine-test"] == NOW + loops.DELETE_REQUEUE_AFTER
    assert tenant.machine_patches == []

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=1))
    assert tenant.machine_patches == []

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=11))
    assert tenant.machine_patches == [{"metadata": {"finalizers": ["other"]}}]


def test_missing_vm_requeue_delay_is_honoured():
    infra = FakeInfraClient()
    machine = make_machine(
        provider_id="kubevirt://infra-ns/machine-test",
        creation_timestamp=NOW - timedelta(hours=1),
    )
    tenant = FakeTenantClient(machines=[machine])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert infra.count("get_vm") == 1
    assert infra.count("create_vm") == 0

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=60))
    assert infra.count("get_vm") == 1

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=181))
    assert infra.count("get_vm") == 2


def test_invalid_machine_is_not_retried_until_spec_changes():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(machines=[make_machine(labels={})])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=10))
    assert _events("machine.create_failed") == ["machine.create_failed"]

    stored = tenant.machines[("default", "machine-test")]
    stored.metadata.labels["machine.openshift.io/cluster-api-cluster"] = "fixed"
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=20))
    assert infra.count("create_vm") == 1
    assert "default/machine-test" not in loops._invalid_specs


def test_reconcile_errors_do_not_stop_other_machines():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(
        machines=[make_machine("broken", provider_spec={}), make_machine("healthy")]
    )
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)

    assert (INFRA_NAMESPACE, "healthy") in infra.vms
    assert (INFRA_NAMESPACE, "broken") not in infra.vms


def test_sync_nodes_assigns_missing_provider_ids():
    infra = FakeInfraClient()
    infra.add_instance(INFRA_NAMESPACE, "worker-0")
    tenant = FakeTenantClient(
        nodes=[make_node("worker-0"), make_node("worker-1", "kubevirt://infra-ns/worker-1")]
    )
    reconciler = ProviderIDReconciler(cast(Any, tenant), cast(Any, infra))

    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=datetime.now(UTC))

    assert tenant.nodes["worker-0"].spec.provider_id == "kubevirt://infra-ns/worker-0"
    assert len(tenant.node_patches) == 1
    assert _events() == ["node.provider_id_assigned"]


def test_sync_nodes_defers_when_config_is_missing():
    tenant = FakeTenantClient(namespace=None, nodes=[make_node("worker-0")])
    reconciler = ProviderIDReconciler(cast(Any, tenant), cast(Any, FakeInfraClient()))

    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=NOW)
    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=NOW + timedelta(seconds=5))
    assert tenant.namespace_calls == 1

    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=NOW + timedelta(seconds=31))
    assert tenant.namespace_calls == 2


def test_machine_is_retried_once_cluster_config_appears():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(namespace=None, machines=[make_machine()])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert infra.count("create_vm") == 0
    assert loops._invalid_specs == {}
    assert loops._machine_requeue_at == {}

    tenant.namespace = INFRA_NAMESPACE
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=10))
    assert infra.count("create_vm") == 1
    stored = tenant.machines[("default", "machine-test")]
    assert stored.spec.provider_id == "kubevirt://infra-ns/machine-test"


def test_machine_is_retried_once_user_data_secret_is_filled():
    secret = user_data_secret()
    payload = secret.data["userData"]
    secret.data = {}
    infra = FakeInfraClient()
    tenant = FakeTenantClient(secrets=[secret], machines=[make_machine()])
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert infra.count("create_vm") == 0
    assert loops._invalid_specs == {}

    secret.data = {"userData": payload}
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=10))
    assert infra.count("create_vm") == 1


def test_terminating_vm_is_not_deleted_again_on_later_ticks():
    infra = FakeInfraClient(graceful_delete=True)
    infra.add_vm(INFRA_NAMESPACE, "machine-test")
    machine = make_machine()
    machine.metadata.deletion_timestamp = NOW
    machine.metadata.finalizers = [loops.MACHINE_FINALIZER, "other"]
    tenant = FakeTenantClient(machines=[machine])
    actuator = _actuator(infra, tenant)

    for seconds in (0, 11, 22, 33):
        now = NOW + timedelta(seconds=seconds)
        loops.sync_machines_once(actuator, cast(Any, tenant), now=now)

    assert infra.count("delete_vm") == 1
    assert tenant.machine_patches == []

    del infra.vms[(INFRA_NAMESPACE, "machine-test")]
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=44))
    assert tenant.machine_patches == [{"metadata": {"finalizers": ["other"]}}]


def test_state_of_removed_machines_is_dropped():
    infra = FakeInfraClient()
    tenant = FakeTenantClient(
        machines=[
            make_machine("broken", labels={}),
            make_machine("gone", provider_id="kubevirt://infra-ns/gone"),
        ]
    )
    actuator = _actuator(infra, tenant)

    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW)
    assert set(loops._invalid_specs) == {"default/broken"}
    assert set(loops._machine_requeue_at) == {"default/gone"}

    tenant.machines.clear()
    loops.sync_machines_once(actuator, cast(Any, tenant), now=NOW + timedelta(seconds=1))
    assert loops._invalid_specs == {}
    assert loops._machine_requeue_at == {}


def test_state_of_removed_or_assigned_nodes_is_dropped():
    tenant = FakeTenantClient(
        namespace=None, nodes=[make_node("worker-0"), make_node("worker-1")]
    )
    reconciler = ProviderIDReconciler(cast(Any, tenant), cast(Any, FakeInfraClient()))

    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=NOW)
    assert set(loops._node_requeue_at) == {"worker-0", "worker-1"}

    del tenant.nodes["worker-0"]
    tenant.nodes["worker-1"].spec.provider_id = "kubevirt://infra-ns/worker-1"
    loops.sync_nodes_once(reconciler, cast(Any, tenant), now=NOW + timedelta(seconds=1))
    assert loops._node_requeue_at == {}
