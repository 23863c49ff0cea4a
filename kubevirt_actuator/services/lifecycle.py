"""Create / update / delete / exists decisions for one machine's VM.

Secret creation, VM creation and status sync are independent steps with no
transaction around them. A pass may stop after any of them; the next pass
picks up from whatever the infra cluster shows, so every step must tolerate
finding its work already done.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from kubevirt_actuator.boot_config import add_hostname_to_user_data
from kubevirt_actuator.clients.http import AlreadyExistsError, NotFoundError, RequestFailure
from kubevirt_actuator.clients.infra_cluster import InfraClusterClient
from kubevirt_actuator.errors import (
    ConfigurationNotReady,
    InvalidMachineConfiguration,
    MachineOperationError,
    RequeueAfterError,
    StatusSyncError,
)
from kubevirt_actuator.machine_scope import MachineScope
from kubevirt_actuator.schemas import (
    VirtualMachine,
    VirtualMachineInstance,
    VirtualMachineStatus,
)


logger = logging.getLogger(__name__)

REQUEUE_AFTER = timedelta(seconds=20)
REQUEUE_AFTER_FATAL = timedelta(seconds=180)
GRACE_WINDOW = timedelta(seconds=40)
DELETE_GRACE_PERIOD_SEC = 10


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _up_to_date(desired: VirtualMachine, existing: VirtualMachine) -> bool:
    return (
        desired.spec == existing.spec
        and desired.metadata.labels == existing.metadata.labels
        and desired.metadata.annotations == existing.metadata.annotations
    )


class LifecycleManager:
    def __init__(
        self,
        infra_client: InfraClusterClient,
        *,
        requeue_after: timedelta = REQUEUE_AFTER,
        requeue_after_fatal: timedelta = REQUEUE_AFTER_FATAL,
        grace_window: timedelta = GRACE_WINDOW,
        delete_grace_period_sec: int = DELETE_GRACE_PERIOD_SEC,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.infra_client = infra_client
        self.requeue_after = requeue_after
        self.requeue_after_fatal = requeue_after_fatal
        self.grace_window = grace_window
        self.delete_grace_period_sec = delete_grace_period_sec
        self.clock = clock

    def create(self, scope: MachineScope, user_data: bytes) -> None:
        name = scope.machine_name
        try:
            full_user_data = add_hostname_to_user_data(user_data, name)
            secret = scope.ignition_secret(full_user_data)
            desired = scope.desired_virtual_machine()
        except InvalidMachineConfiguration as exc:
            logger.error("%s: invalid machine configuration: %s", name, exc)
            scope.set_failure(str(exc), self.clock())
            raise
        except ConfigurationNotReady as exc:
            logger.warning("%s: cluster configuration not ready: %s", name, exc)
            scope.set_failure(str(exc), self.clock())
            raise

        namespace = desired.metadata.namespace or scope.infra_namespace()
        try:
            self.infra_client.create_secret(namespace, secret)
        except AlreadyExistsError:
            logger.info("%s: ignition secret %s already exists", name, secret.metadata.name)
        except RequestFailure as exc:
            logger.error("%s: error creating ignition secret: %s", name, exc)
            scope.set_failure(str(exc), self.clock())
            raise MachineOperationError(
                machine=name, stage="create_secret", detail=str(exc)
            ) from exc

        logger.info("%s: create machine", name)
        try:
            created = self._create_or_adopt_vm(namespace, desired)
        except RequestFailure as exc:
            logger.error("%s: error creating machine: %s", name, exc)
            scope.set_failure(str(exc), self.clock())
            raise MachineOperationError(
                machine=name, stage="create_vm", detail=str(exc)
            ) from exc

        logger.info("%s: created VM %s/%s", name, namespace, created.metadata.name)
        self._sync_machine(scope, created)

    def _create_or_adopt_vm(self, namespace: str, desired: VirtualMachine) -> VirtualMachine:
        try:
            return self.infra_client.create_virtual_machine(namespace, desired)
        except AlreadyExistsError:
            logger.info(
                "%s: VM already exists, adopting it", desired.metadata.name
            )
            return self.infra_client.get_virtual_machine(namespace, desired.metadata.name)

    def update(self, scope: MachineScope) -> bool:
        name = scope.machine_name
        desired = scope.desired_virtual_machine()
        namespace = desired.metadata.namespace or scope.infra_namespace()

        logger.info("%s: update machine", name)
        try:
            existing = self.infra_client.get_virtual_machine(namespace, name)
        except NotFoundError:
            if scope.within_grace_window(self.grace_window, self.clock()):
                logger.info(
                    "%s: possible eventual-consistency discrepancy; requeueing in %s",
                    name,
                    self.requeue_after,
                )
                raise RequeueAfterError(self.requeue_after, "vm not visible yet") from None
            # Most likely deleted out of band. Back off hard instead of hot-looping.
            logger.warning("%s: attempted to update machine but the VM was not found", name)
            raise RequeueAfterError(self.requeue_after_fatal, "vm not found") from None
        except RequestFailure as exc:
            logger.error("%s: error getting existing VM: %s", name, exc)
            raise

        previous_version = existing.metadata.resource_version
        desired.metadata.resource_version = previous_version
        desired.status = VirtualMachineStatus(
            created=existing.status.created, ready=existing.status.ready
        )

        if _up_to_date(desired, existing):
            logger.debug("%s: VM already matches the machine spec", name)
            updated = existing
        else:
            try:
                updated = self.infra_client.update_virtual_machine(namespace, desired)
            except RequestFailure as exc:
                logger.error("%s: error updating VM: %s", name, exc)
                raise MachineOperationError(
                    machine=name, stage="update_vm", detail=str(exc)
                ) from exc

        was_updated = previous_version != updated.metadata.resource_version
        if was_updated:
            logger.info("%s: updated VM", name)
        self._sync_machine(scope, updated)
        return was_updated

    def delete(self, scope: MachineScope) -> None:
        name = scope.machine_name
        namespace = scope.infra_namespace()

        logger.info("%s: delete machine", name)
        try:
            existing = self.infra_client.get_virtual_machine(namespace, name)
        except NotFoundError:
            logger.info("%s: VM does not exist", name)
            return
        except RequestFailure as exc:
            logger.error("%s: error getting existing VM: %s", name, exc)
            raise

        if existing.metadata.deletion_timestamp is not None:
            logger.info("%s: VM is already being deleted", name)
            return

        try:
            self.infra_client.delete_virtual_machine(
                existing.metadata.namespace or namespace,
                existing.metadata.name,
                grace_period_seconds=self.delete_grace_period_sec,
            )
        except NotFoundError:
            logger.info("%s: VM disappeared before delete", name)
            return
        except RequestFailure as exc:
            raise MachineOperationError(
                machine=name, stage="delete_vm", detail=str(exc)
            ) from exc

        logger.info("%s: deleted VM", name)

    def exists(self, scope: MachineScope) -> bool:
        name = scope.machine_name
        logger.debug("%s: check if machine exists", name)
        try:
            self.infra_client.get_virtual_machine(scope.infra_namespace(), name)
        except NotFoundError:
            logger.info("%s: VM does not exist", name)
            return False
        except RequestFailure as exc:
            logger.error("%s: error getting existing VM: %s", name, exc)
            raise
        return True

    def _get_instance(
        self, scope: MachineScope, vm: VirtualMachine
    ) -> VirtualMachineInstance | None:
        namespace = vm.metadata.namespace or scope.infra_namespace()
        try:
            return self.infra_client.get_virtual_machine_instance(
                namespace, vm.metadata.name
            )
        except NotFoundError:
            logger.info("%s: VM instance not found yet", scope.machine_name)
        except RequestFailure as exc:
            logger.warning(
                "%s: error getting VM instance, syncing VM fields only: %s",
                scope.machine_name,
                exc,
            )
        return None

    def _sync_machine(self, scope: MachineScope, vm: VirtualMachine) -> None:
        vmi = self._get_instance(scope, vm)
        try:
            scope.sync_machine(vm, vmi, self.clock())
        except StatusSyncError as exc:
            logger.error("%s", exc)
            raise
        except (InvalidMachineConfiguration, ConfigurationNotReady, RequestFailure) as exc:
            logger.error("%s: fail syncing machine from vm: %s", scope.machine_name, exc)
            raise StatusSyncError(machine=scope.machine_name, detail=str(exc)) from exc
