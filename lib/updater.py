"""
Apply Azure Hybrid Benefit licensing to discovered VMs.

Each VM is processed independently inside a bounded worker pool. Within a
VM the OS and SQL branches are isolated from each other: a failed OS write
marks the VM "Partial Error" and the SQL branch still runs. Only a failure
to establish the subscription context fails the VM outright.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .constants import (
    APPLIED_ERROR,
    APPLIED_NONE,
    APPLIED_OS,
    APPLIED_SQL,
    DEFAULT_MODE,
    DEFAULT_THROTTLE_LIMIT,
    MESSAGE_SEPARATOR,
    MODE_BOTH,
    MODE_OS,
    MODE_SQL,
    OS_LICENSE_AHUB,
    RESULT_TIMESTAMP_FORMAT,
    SQL_LICENSE_AHUB,
    SQL_LICENSE_DR,
    STATUS_ERROR,
    STATUS_PARTIAL_ERROR,
    STATUS_SUCCESS,
)
from .gateway import LicenseGateway, SubscriptionContext
from .models import UpdateResult, VMRecord
from .utils import bounded_map

logger = logging.getLogger(__name__)

NO_VMS_TO_PROCESS = "No VMs to process"


def _now() -> str:
    return datetime.now().strftime(RESULT_TIMESTAMP_FORMAT)


def _result(vm: VMRecord, applied: str, status: str, messages: List[str]) -> UpdateResult:
    return UpdateResult(
        timestamp=_now(),
        vm_name=vm.name,
        resource_group=vm.resource_group,
        subscription_name=vm.subscription_name,
        subscription_id=vm.subscription_id,
        applied=applied,
        status=status,
        message=MESSAGE_SEPARATOR.join(messages),
    )


class _VMUpdate:
    """Mutable accumulator for one VM while its branches run."""

    def __init__(self):
        self.applied: List[str] = []
        self.messages: List[str] = []
        self.status = STATUS_SUCCESS

    def fail(self, message: str) -> None:
        # Partial Error never overrides a harder Error
        if self.status != STATUS_ERROR:
            self.status = STATUS_PARTIAL_ERROR
        self.messages.append(message)

    @property
    def applied_label(self) -> str:
        return "+".join(self.applied) if self.applied else APPLIED_NONE


def _update_os(
    gateway: LicenseGateway,
    context: SubscriptionContext,
    vm: VMRecord,
    state: _VMUpdate,
    dry_run: bool,
) -> None:
    try:
        current = gateway.get_os_license(context, vm)
    except Exception as e:
        logger.warning(f"Failed to read OS license for {vm.name}: {e}")
        state.fail(f"Failed to read OS license: {e}")
        return

    if current == OS_LICENSE_AHUB:
        state.messages.append(f"OS license already set to '{current}'")
        return

    if dry_run:
        state.applied.append(APPLIED_OS)
        state.messages.append(f"Would update OS license from '{current}' to '{OS_LICENSE_AHUB}' (dry run)")
        return

    try:
        gateway.set_os_license(context, vm, OS_LICENSE_AHUB)
    except Exception as e:
        logger.warning(f"Failed to update OS license for {vm.name}: {e}")
        state.fail(f"Failed to update OS license: {e}")
        return

    state.applied.append(APPLIED_OS)
    state.messages.append(f"OS license updated from '{current}' to '{OS_LICENSE_AHUB}'")


def _update_sql(
    gateway: LicenseGateway,
    context: SubscriptionContext,
    vm: VMRecord,
    state: _VMUpdate,
    dry_run: bool,
) -> None:
    try:
        info = gateway.get_sql_license_info(context, vm)
    except Exception as e:
        # Missing extension and unreadable powered-off VM raise alike;
        # power state is the only way to tell them apart
        logger.debug(f"SQL license lookup failed for {vm.name}: {e}")
        if vm.powered_off:
            state.messages.append(
                f"VM is powered off ({vm.power_state}), SQL Server VM extension state unknown"
            )
        else:
            state.messages.append("No SQL Server VM extension found")
        return

    current = info.license_type
    if current in (SQL_LICENSE_AHUB, SQL_LICENSE_DR):
        state.messages.append(f"SQL license already set to '{current}'")
        return

    if dry_run:
        state.applied.append(APPLIED_SQL)
        state.messages.append(f"Would update SQL license from '{current}' to '{SQL_LICENSE_AHUB}' (dry run)")
        return

    try:
        gateway.set_sql_license(context, vm, SQL_LICENSE_AHUB)
    except Exception as e:
        logger.warning(f"Failed to update SQL license for {vm.name}: {e}")
        state.fail(f"Failed to update SQL license: {e}")
        return

    state.applied.append(APPLIED_SQL)
    state.messages.append(f"SQL license updated from '{current}' to '{SQL_LICENSE_AHUB}'")


def general_error(vm: VMRecord, error: Exception) -> UpdateResult:
    """Result for a VM that could not be processed at all."""
    logger.error(f"General error processing VM {vm.name}: {error}")
    return _result(vm, APPLIED_ERROR, STATUS_ERROR, [f"General error processing VM: {error}"])


def update_vm(
    gateway: LicenseGateway,
    vm: VMRecord,
    mode: str = DEFAULT_MODE,
    dry_run: bool = False,
) -> UpdateResult:
    """
    Evaluate and apply OS and/or SQL Hybrid Benefit for one VM.

    Never raises: every outcome is expressed as an UpdateResult.
    """
    try:
        context = gateway.set_context(vm.subscription_id)
        if not context.matches(vm.subscription_id):
            raise RuntimeError(
                f"context is subscription {context.subscription_id}, expected {vm.subscription_id}"
            )
    except Exception as e:
        return general_error(vm, e)

    state = _VMUpdate()
    if mode in (MODE_OS, MODE_BOTH):
        _update_os(gateway, context, vm, state, dry_run)
    if mode in (MODE_SQL, MODE_BOTH):
        _update_sql(gateway, context, vm, state, dry_run)

    return _result(vm, state.applied_label, state.status, state.messages)


def update_licenses(
    gateway: LicenseGateway,
    vms: List[VMRecord],
    mode: str = DEFAULT_MODE,
    concurrency: int = DEFAULT_THROTTLE_LIMIT,
    dry_run: bool = False,
    on_result: Optional[Callable[[UpdateResult], None]] = None,
) -> List[UpdateResult]:
    """
    Process every VM in a bounded worker pool.

    Args:
        gateway: Remote resource gateway
        vms: Inventory from the collector
        mode: "OS", "SQL" or "Both"
        concurrency: Worker pool size
        dry_run: Evaluate only; skip every write call
        on_result: Called on the controlling thread as each VM finishes

    Returns:
        One UpdateResult per VM, in completion order
    """
    if mode not in (MODE_OS, MODE_SQL, MODE_BOTH):
        raise ValueError(f"Invalid mode {mode!r}; expected OS, SQL or Both")

    if not vms:
        logger.warning(NO_VMS_TO_PROCESS)
        return []

    logger.info(f"Processing {len(vms)} VM(s) with mode={mode}, throttle limit={concurrency}"
                f"{' (dry run)' if dry_run else ''}")

    return bounded_map(
        lambda vm: update_vm(gateway, vm, mode, dry_run),
        vms,
        max_workers=concurrency,
        on_error=general_error,
        on_result=on_result,
    )
