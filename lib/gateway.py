"""
Remote resource gateway.

The core stages talk to Azure only through LicenseGateway. Every VM-level
call takes an explicit SubscriptionContext handle obtained from
set_context(); nothing relies on an ambient "current subscription".

AzureGateway is the Azure SDK implementation used by the CLI. Tests use an
in-memory implementation of the same interface.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import VirtualMachineUpdate
from azure.mgmt.sqlvirtualmachine import SqlVirtualMachineManagementClient
from azure.mgmt.subscription import SubscriptionClient

from .constants import OS_TYPE_WINDOWS
from .models import SqlLicenseInfo, Subscription, VMRecord
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)

# =============================================================================
# Exceptions
# =============================================================================

class GatewayError(Exception):
    """Base class for gateway failures."""


class SubscriptionNotFoundError(GatewayError):
    """Raised when a subscription id is unknown or not visible."""


class SubscriptionListingError(GatewayError):
    """Raised when the subscriptions to process cannot be retrieved."""


class ContextError(GatewayError):
    """Raised when a subscription context cannot be established."""


class SqlExtensionNotFoundError(GatewayError):
    """Raised when a VM has no SQL Server IaaS extension registered."""


@dataclass
class SubscriptionContext:
    """
    Handle scoped to one subscription.

    clients holds whatever per-subscription SDK clients the gateway needs;
    callers only look at subscription_id.
    """
    subscription_id: str
    clients: Dict[str, Any] = field(default_factory=dict, repr=False)

    def matches(self, subscription_id: str) -> bool:
        return self.subscription_id.lower() == (subscription_id or "").lower()


class LicenseGateway:
    """Interface to subscription, VM and SQL licensing operations."""

    def list_subscriptions(self) -> List[Subscription]:
        raise NotImplementedError

    def get_subscription(self, subscription_id: str) -> Subscription:
        raise NotImplementedError

    def set_context(self, subscription_id: str) -> SubscriptionContext:
        raise NotImplementedError

    def list_windows_vms(self, context: SubscriptionContext) -> List[VMRecord]:
        raise NotImplementedError

    def get_os_license(self, context: SubscriptionContext, vm: VMRecord) -> Optional[str]:
        raise NotImplementedError

    def set_os_license(self, context: SubscriptionContext, vm: VMRecord, value: str) -> None:
        raise NotImplementedError

    def get_sql_license_info(self, context: SubscriptionContext, vm: VMRecord) -> SqlLicenseInfo:
        raise NotImplementedError

    def set_sql_license(self, context: SubscriptionContext, vm: VMRecord, value: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release any SDK clients held by the gateway."""


# =============================================================================
# Azure implementation
# =============================================================================

def _enum_value(value: Any) -> Optional[str]:
    """SDK enums are str subclasses; return the plain wire value."""
    if value is None:
        return None
    return str(getattr(value, 'value', value))


def _extract_resource_group(resource_id: str) -> str:
    """Extract resource group from Azure resource ID."""
    try:
        parts = resource_id.split('/')
        rg_index = [p.lower() for p in parts].index('resourcegroups') + 1
        return parts[rg_index]
    except (ValueError, IndexError):
        return 'unknown'


def _power_state(instance_view: Any) -> Optional[str]:
    """Return the PowerState/<state> suffix from a VM instance view."""
    if not instance_view or not instance_view.statuses:
        return None
    for status in instance_view.statuses:
        if status.code and status.code.startswith('PowerState/'):
            return status.code.split('/', 1)[1]
    return None


def _is_windows(vm: Any) -> bool:
    """Check if VM runs Windows based on its OS disk."""
    if vm.storage_profile and vm.storage_profile.os_disk:
        os_type = _enum_value(vm.storage_profile.os_disk.os_type)
        return (os_type or '').lower() == OS_TYPE_WINDOWS
    return False


class AzureGateway(LicenseGateway):
    """LicenseGateway backed by the Azure management SDKs."""

    def __init__(self, credential):
        self.credential = credential
        self._subscription_client = SubscriptionClient(credential)
        self._contexts: Dict[str, SubscriptionContext] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _to_subscription(sub) -> Subscription:
        return Subscription(
            id=sub.subscription_id,
            name=sub.display_name,
            state=_enum_value(sub.state) or 'Unknown',
        )

    @retry_with_backoff(max_attempts=3, exceptions=(ServiceRequestError,))
    def list_subscriptions(self) -> List[Subscription]:
        return [self._to_subscription(sub) for sub in self._subscription_client.subscriptions.list()]

    def get_subscription(self, subscription_id: str) -> Subscription:
        try:
            sub = self._subscription_client.subscriptions.get(subscription_id)
        except ResourceNotFoundError as e:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found") from e
        except HttpResponseError as e:
            if e.status_code == 404:
                raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found") from e
            raise
        return self._to_subscription(sub)

    def set_context(self, subscription_id: str) -> SubscriptionContext:
        key = (subscription_id or "").lower()
        with self._lock:
            context = self._contexts.get(key)
        if context is not None:
            return context

        logger.debug(f"Setting context to subscription {subscription_id}")
        try:
            # Fails fast on auth problems or unknown subscriptions
            sub = self._subscription_client.subscriptions.get(subscription_id)
            compute = ComputeManagementClient(self.credential, sub.subscription_id)
            sql = SqlVirtualMachineManagementClient(self.credential, sub.subscription_id)
        except Exception as e:
            raise ContextError(f"Unable to set context to subscription {subscription_id}: {e}") from e

        context = SubscriptionContext(
            subscription_id=sub.subscription_id,
            clients={'compute': compute, 'sql': sql},
        )
        with self._lock:
            cached = self._contexts.setdefault(key, context)
        if cached is not context:
            # Another worker built the same context first
            self._close_clients(context)
        return cached

    @staticmethod
    def _close_clients(context: SubscriptionContext) -> None:
        for client in context.clients.values():
            client.close()

    def close(self) -> None:
        with self._lock:
            contexts = list(self._contexts.values())
            self._contexts.clear()
        for context in contexts:
            self._close_clients(context)
        self._subscription_client.close()

    def _power_states(self, compute: ComputeManagementClient) -> Dict[str, str]:
        """Map of lower-cased VM resource id to power state for one subscription."""
        states = {}
        try:
            for vm in compute.virtual_machines.list_all(status_only="true"):
                state = _power_state(vm.instance_view)
                if vm.id and state:
                    states[vm.id.lower()] = state
        except HttpResponseError as e:
            # Power state only refines a message; inventory proceeds without it
            logger.debug(f"Power state lookup failed: {e}")
        return states

    @retry_with_backoff(max_attempts=3, exceptions=(ServiceRequestError,))
    def list_windows_vms(self, context: SubscriptionContext) -> List[VMRecord]:
        compute: ComputeManagementClient = context.clients['compute']
        power_states = self._power_states(compute)

        vms = []
        for vm in compute.virtual_machines.list_all():
            if not vm.id or not _is_windows(vm):
                continue
            vms.append(VMRecord(
                name=vm.name,
                resource_group=_extract_resource_group(vm.id),
                subscription_id=context.subscription_id,
                subscription_name='',
                os_license=vm.license_type,
                power_state=power_states.get(vm.id.lower()),
            ))

        logger.debug(f"Found {len(vms)} Windows VMs in subscription {context.subscription_id}")
        return vms

    def get_os_license(self, context: SubscriptionContext, vm: VMRecord) -> Optional[str]:
        compute: ComputeManagementClient = context.clients['compute']
        return compute.virtual_machines.get(vm.resource_group, vm.name).license_type

    def set_os_license(self, context: SubscriptionContext, vm: VMRecord, value: str) -> None:
        compute: ComputeManagementClient = context.clients['compute']
        poller = compute.virtual_machines.begin_update(
            vm.resource_group, vm.name, VirtualMachineUpdate(license_type=value)
        )
        poller.result()

    def _get_sql_vm(self, context: SubscriptionContext, vm: VMRecord):
        sql: SqlVirtualMachineManagementClient = context.clients['sql']
        try:
            return sql.sql_virtual_machines.get(vm.resource_group, vm.name)
        except ResourceNotFoundError as e:
            raise SqlExtensionNotFoundError(f"No SQL virtual machine resource for {vm.name}") from e

    def get_sql_license_info(self, context: SubscriptionContext, vm: VMRecord) -> SqlLicenseInfo:
        sql_vm = self._get_sql_vm(context, vm)
        return SqlLicenseInfo(license_type=_enum_value(sql_vm.sql_server_license_type))

    def set_sql_license(self, context: SubscriptionContext, vm: VMRecord, value: str) -> None:
        sql: SqlVirtualMachineManagementClient = context.clients['sql']
        sql_vm = self._get_sql_vm(context, vm)
        sql_vm.sql_server_license_type = value
        poller = sql.sql_virtual_machines.begin_create_or_update(vm.resource_group, vm.name, sql_vm)
        poller.result()
