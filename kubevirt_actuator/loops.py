import hashlib
import json
import logging
import threading
import time
from datetime import UTC, datetime, timedelta

from kubevirt_actuator.actuator import Actuator, machine_key
from kubevirt_actuator.clients.http import RetryPolicy
from kubevirt_actuator.clients.infra_cluster import InfraClusterClient
from kubevirt_actuator.clients.kube import KubeClient
from kubevirt_actuator.clients.tenant_cluster import TenantClusterClient
from kubevirt_actuator.config import Settings, get_settings
from kubevirt_actuator.db import session_scope
from kubevirt_actuator.errors import (
    ConfigurationNotReady,
    InvalidMachineConfiguration,
    RequeueAfterError,
)
from kubevirt_actuator.machine_scope import VMDefaults
from kubevirt_actuator.metrics import metrics
from kubevirt_actuator.repositories import write_event
from kubevirt_actuator.schemas import Machine
from kubevirt_actuator.services.lifecycle import LifecycleManager
from kubevirt_actuator.services.provider_id import ProviderIDReconciler


logger = logging.getLogger(__name__)

MACHINE_FINALIZER = "machine.machine.openshift.io"
DELETE_REQUEUE_AFTER = timedelta(seconds=10)

# key -> earliest time the object may be reconciled again
_machine_requeue_at: dict[str, datetime] = {}
_node_requeue_at: dict[str, datetime] = {}
# key -> fingerprint of the machine spec that failed validation
_invalid_specs: dict[str, str] = {}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _spec_fingerprint(machine: Machine) -> str:
    payload = json.dumps(
        {"labels": machine.metadata.labels, "spec": machine.spec.to_dict()},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _deferred(requeue_at: dict[str, datetime], key: str, now: datetime) -> bool:
    not_before = requeue_at.get(key)
    if not_before is None:
        return False
    if now >= not_before:
        requeue_at.pop(key, None)
        return False
    return True


def _prune(state: dict, live: set[str]) -> None:
    for key in [key for key in state if key not in live]:
        del state[key]


def _release_finalizer(tenant_client: TenantClusterClient, machine: Machine) -> None:
    finalizers = machine.metadata.finalizers or []
    if MACHINE_FINALIZER not in finalizers:
        return
    original = machine.model_copy(deep=True)
    machine.metadata.finalizers = [f for f in finalizers if f != MACHINE_FINALIZER]
    tenant_client.patch_machine(machine, original)
    logger.info("%s: removed finalizer", machine.name)


def reconcile_machine(
    actuator: Actuator, tenant_client: TenantClusterClient, machine: Machine
) -> timedelta | None:
    """Drive one machine a single step; returns a requeue delay if one is needed."""
    if machine.metadata.deletion_timestamp is not None:
        if actuator.exists(machine):
            actuator.delete(machine)
            return DELETE_REQUEUE_AFTER
        _release_finalizer(tenant_client, machine)
        return None

    # A machine that already carries a providerID was provisioned before, so a
    # missing VM goes through update's grace-window handling instead of being
    # recreated.
    if machine.spec.provider_id or actuator.exists(machine):
        actuator.update(machine)
    else:
        actuator.create(machine)
    return None


def sync_machines_once(
    actuator: Actuator,
    tenant_client: TenantClusterClient,
    namespace: str | None = None,
    now: datetime | None = None,
) -> None:
    now = now or _utcnow()
    machines = tenant_client.list_machines(namespace)
    live = {machine_key(machine) for machine in machines}
    _prune(_machine_requeue_at, live)
    _prune(_invalid_specs, live)

    for machine in machines:
        key = machine_key(machine)
        if _deferred(_machine_requeue_at, key, now):
            continue
        fingerprint = _spec_fingerprint(machine)
        if _invalid_specs.get(key) == fingerprint:
            continue
        _invalid_specs.pop(key, None)

        try:
            requeue_after = reconcile_machine(actuator, tenant_client, machine)
        except RequeueAfterError as exc:
            logger.info("%s: requeue after %s (%s)", key, exc.requeue_after, exc.reason)
            _machine_requeue_at[key] = now + exc.requeue_after
            continue
        except ConfigurationNotReady as exc:
            logger.warning("%s: configuration not ready, retrying: %s", key, exc)
            continue
        except InvalidMachineConfiguration as exc:
            logger.error("%s: invalid machine configuration, not retrying: %s", key, exc)
            _invalid_specs[key] = fingerprint
            metrics.inc("machine_invalid_configuration_total")
            continue
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s: reconcile failed: %s", key, exc)
            metrics.inc("machine_reconcile_errors_total")
            continue

        if requeue_after is not None:
            _machine_requeue_at[key] = now + requeue_after


def sync_nodes_once(
    reconciler: ProviderIDReconciler,
    tenant_client: TenantClusterClient,
    now: datetime | None = None,
) -> None:
    now = now or _utcnow()
    nodes = [node for node in tenant_client.list_nodes() if not node.spec.provider_id]
    _prune(_node_requeue_at, {node.metadata.name for node in nodes})

    for node in nodes:
        key = node.metadata.name
        if _deferred(_node_requeue_at, key, now):
            continue
        try:
            result = reconciler.reconcile(node.metadata.name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("node %s: reconcile failed: %s", node.metadata.name, exc)
            continue
        if result.requeue_after is not None:
            _node_requeue_at[key] = now + result.requeue_after
        if result.assigned_provider_id:
            with session_scope() as session:
                write_event(
                    session,
                    "node.provider_id_assigned",
                    {
                        "node": node.metadata.name,
                        "provider_id": result.assigned_provider_id,
                    },
                )
            metrics.inc("node_provider_ids_assigned_total")


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec)


def build_infra_client(settings: Settings) -> InfraClusterClient:
    return InfraClusterClient(
        KubeClient(
            settings.infra_api_url,
            _retry_policy(settings),
            token=settings.infra_api_token,
            verify=settings.infra_verify_tls,
            timeout=settings.request_timeout_sec,
        )
    )


def build_tenant_client(settings: Settings) -> TenantClusterClient:
    return TenantClusterClient(
        KubeClient(
            settings.tenant_api_url,
            _retry_policy(settings),
            token=settings.tenant_api_token,
            verify=settings.tenant_verify_tls,
            timeout=settings.request_timeout_sec,
        ),
        config_map_namespace=settings.config_map_namespace,
        config_map_name=settings.config_map_name,
        config_map_key=settings.config_map_namespace_key,
    )


def build_actuator(
    settings: Settings,
    infra_client: InfraClusterClient,
    tenant_client: TenantClusterClient,
) -> Actuator:
    lifecycle = LifecycleManager(
        infra_client,
        requeue_after=timedelta(seconds=settings.requeue_after_sec),
        requeue_after_fatal=timedelta(seconds=settings.requeue_after_fatal_sec),
        grace_window=timedelta(seconds=settings.vm_grace_window_sec),
        delete_grace_period_sec=settings.delete_grace_period_sec,
    )
    defaults = VMDefaults(
        requested_memory=settings.default_requested_memory,
        requested_storage=settings.default_requested_storage,
        access_mode=settings.default_access_mode,
    )
    return Actuator(lifecycle, tenant_client, defaults)


def start_loops(stop_event: threading.Event) -> list[threading.Thread]:
    settings = get_settings()
    infra_client = build_infra_client(settings)
    tenant_client = build_tenant_client(settings)
    actuator = build_actuator(settings, infra_client, tenant_client)
    provider_ids = ProviderIDReconciler(
        tenant_client,
        infra_client,
        config_retry=timedelta(seconds=settings.provider_id_config_retry_sec),
    )

    def machine_worker() -> None:
        while not stop_event.is_set():
            try:
                sync_machines_once(actuator, tenant_client, settings.watch_namespace)
            except Exception as exc:  # noqa: BLE001
                logger.exception("machine sync tick failed: %s", exc)
            stop_event.wait(settings.loop_interval_sec)

    def node_worker() -> None:
        while not stop_event.is_set():
            try:
                sync_nodes_once(provider_ids, tenant_client)
            except Exception as exc:  # noqa: BLE001
                logger.exception("node sync tick failed: %s", exc)
            stop_event.wait(settings.node_loop_interval_sec)

    t1 = threading.Thread(target=machine_worker, name="machine-worker", daemon=True)
    t2 = threading.Thread(target=node_worker, name="node-worker", daemon=True)
    t1.start()
    t2.start()
    time.sleep(0.01)
    return [t1, t2]
