import logging

from kubevirt_actuator.clients.http import RequestFailure
from kubevirt_actuator.clients.tenant_cluster import TenantClusterClient
from kubevirt_actuator.db import session_scope
from kubevirt_actuator.errors import (
    ConfigurationNotReady,
    InvalidMachineConfiguration,
    StatusSyncError,
)
from kubevirt_actuator.machine_scope import MachineScope, VMDefaults
from kubevirt_actuator.metrics import metrics
from kubevirt_actuator.repositories import write_event
from kubevirt_actuator.schemas import Machine
from kubevirt_actuator.services.lifecycle import LifecycleManager


logger = logging.getLogger(__name__)


def machine_key(machine: Machine) -> str:
    return f"{machine.namespace}/{machine.name}"


class Actuator:
    """Entry point the machine controller calls for each machine event.

    Builds a fresh scope, runs one lifecycle operation, writes the machine
    back to the tenant cluster and records what happened.
    """

    def __init__(
        self,
        lifecycle: LifecycleManager,
        tenant_client: TenantClusterClient,
        defaults: VMDefaults | None = None,
    ):
        self.lifecycle = lifecycle
        self.tenant_client = tenant_client
        self.defaults = defaults or VMDefaults()

    def _scope(self, machine: Machine) -> MachineScope:
        return MachineScope(machine, self.tenant_client, self.defaults)

    def create(self, machine: Machine) -> None:
        key = machine_key(machine)
        scope = self._scope(machine)
        try:
            try:
                user_data = scope.user_data()
            except (InvalidMachineConfiguration, ConfigurationNotReady) as exc:
                scope.set_failure(str(exc))
                raise
            self.lifecycle.create(scope, user_data)
        except StatusSyncError as exc:
            self._record(key, "machine.status_sync_failed", {"error": str(exc)})
            metrics.inc("machine_status_sync_failures_total")
            self._persist(scope, reraise=False)
            raise
        except Exception as exc:
            self._record(key, "machine.create_failed", {"error": str(exc)})
            metrics.inc("machine_create_failures_total")
            self._persist(scope, reraise=False)
            raise

        self._persist(scope)
        self._record(key, "machine.created", {"provider_id": machine.spec.provider_id})
        metrics.inc("machines_created_total")

    def update(self, machine: Machine) -> bool:
        key = machine_key(machine)
        scope = self._scope(machine)
        try:
            was_updated = self.lifecycle.update(scope)
        except StatusSyncError as exc:
            self._record(key, "machine.status_sync_failed", {"error": str(exc)})
            metrics.inc("machine_status_sync_failures_total")
            self._persist(scope, reraise=False)
            raise
        except Exception:
            self._persist(scope, reraise=False)
            raise

        self._persist(scope)
        if was_updated:
            self._record(key, "machine.updated", {})
            metrics.inc("machines_updated_total")
        return was_updated

    def delete(self, machine: Machine) -> None:
        key = machine_key(machine)
        try:
            self.lifecycle.delete(self._scope(machine))
        except Exception as exc:
            self._record(key, "machine.delete_failed", {"error": str(exc)})
            metrics.inc("machine_delete_failures_total")
            raise
        self._record(key, "machine.deleted", {})
        metrics.inc("machines_deleted_total")

    def exists(self, machine: Machine) -> bool:
        return self.lifecycle.exists(self._scope(machine))

    def _persist(self, scope: MachineScope, reraise: bool = True) -> None:
        try:
            scope.patch_machine()
        except RequestFailure as exc:
            logger.error("%s: failed to patch machine: %s", scope.machine_name, exc)
            if reraise:
                raise

    @staticmethod
    def _record(key: str, event_type: str, payload: dict) -> None:
        with session_scope() as session:
            write_event(session, event_type, payload, key)
