"""
Tests for the Azure gateway using unittest.mock.

Covers:
- Subscription listing and lookup
- Context creation, reuse, release and failure mapping
- Windows VM enumeration with power state
- OS license read/write
- SQL Server license read/write and missing extension mapping
"""
import os
import sys
from unittest.mock import Mock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError
from azure.mgmt.sqlvirtualmachine.models import SqlServerLicenseType

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.gateway import (
    AzureGateway,
    ContextError,
    SqlExtensionNotFoundError,
    SubscriptionContext,
    SubscriptionNotFoundError,
    _extract_resource_group,
    _power_state,
)
from lib.models import VMRecord

SUB_ID = "12345678-1234-1234-1234-123456789012"

# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def subscription_client():
    with patch('lib.gateway.SubscriptionClient') as mock_cls:
        yield mock_cls.return_value


@pytest.fixture
def gateway(subscription_client):
    return AzureGateway(Mock())


@pytest.fixture
def compute():
    return Mock()


@pytest.fixture
def sql():
    return Mock()


@pytest.fixture
def context(compute, sql):
    return SubscriptionContext(subscription_id=SUB_ID, clients={'compute': compute, 'sql': sql})


@pytest.fixture
def vm_record():
    return VMRecord("vm-app-01", "rg-app", SUB_ID, "prod")


# =============================================================================
# Helper Functions
# =============================================================================

def create_mock_subscription(sub_id=SUB_ID, name="prod", state="Enabled"):
    sub = Mock()
    sub.subscription_id = sub_id
    sub.display_name = name
    sub.state = state
    return sub


def create_mock_vm(name, os_type="Windows", license_type=None, resource_group="rg-app"):
    """Create a mock Azure VM object."""
    vm = Mock()
    vm.id = f"/subscriptions/{SUB_ID}/resourceGroups/{resource_group}/providers/Microsoft.Compute/virtualMachines/{name}"
    vm.name = name
    vm.license_type = license_type
    vm.storage_profile = Mock()
    vm.storage_profile.os_disk = Mock()
    vm.storage_profile.os_disk.os_type = os_type
    return vm


def create_status_vm(name, power_state, resource_group="rg-app"):
    """VM as returned by list_all(status_only="true")."""
    vm = Mock()
    vm.id = f"/subscriptions/{SUB_ID}/resourceGroups/{resource_group}/providers/Microsoft.Compute/virtualMachines/{name}"
    provisioning = Mock()
    provisioning.code = "ProvisioningState/succeeded"
    power = Mock()
    power.code = f"PowerState/{power_state}"
    vm.instance_view = Mock()
    vm.instance_view.statuses = [provisioning, power]
    return vm


def list_all_returning(vms, status_vms=()):
    def list_all(status_only=None):
        return list(status_vms) if status_only else list(vms)
    return list_all


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:
    """Tests for resource id and instance view parsing."""

    def test_extract_resource_group(self):
        rid = f"/subscriptions/{SUB_ID}/resourceGroups/rg-Prod/providers/Microsoft.Compute/virtualMachines/vm1"
        assert _extract_resource_group(rid) == "rg-Prod"

    def test_extract_resource_group_invalid(self):
        assert _extract_resource_group("not-a-resource-id") == "unknown"

    def test_power_state(self):
        vm = create_status_vm("vm1", "deallocated")
        assert _power_state(vm.instance_view) == "deallocated"

    def test_power_state_missing(self):
        assert _power_state(None) is None
        view = Mock()
        view.statuses = []
        assert _power_state(view) is None


# =============================================================================
# Subscriptions
# =============================================================================

class TestSubscriptions:
    """Tests for subscription listing and lookup."""

    def test_list_subscriptions(self, gateway, subscription_client):
        subscription_client.subscriptions.list.return_value = [
            create_mock_subscription(),
            create_mock_subscription("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee", "old", "Disabled"),
        ]

        subs = gateway.list_subscriptions()

        assert [(s.name, s.state) for s in subs] == [("prod", "Enabled"), ("old", "Disabled")]
        assert subs[0].enabled
        assert not subs[1].enabled

    def test_list_subscriptions_retries_transport_errors(self, gateway, subscription_client):
        subscription_client.subscriptions.list.side_effect = [
            ServiceRequestError("connection reset"),
            [create_mock_subscription()],
        ]

        with patch("time.sleep"):
            subs = gateway.list_subscriptions()

        assert len(subs) == 1
        assert subscription_client.subscriptions.list.call_count == 2

    def test_get_subscription(self, gateway, subscription_client):
        subscription_client.subscriptions.get.return_value = create_mock_subscription()

        sub = gateway.get_subscription(SUB_ID)

        assert sub.id == SUB_ID
        subscription_client.subscriptions.get.assert_called_once_with(SUB_ID)

    def test_get_subscription_not_found(self, gateway, subscription_client):
        subscription_client.subscriptions.get.side_effect = ResourceNotFoundError("not found")

        with pytest.raises(SubscriptionNotFoundError):
            gateway.get_subscription(SUB_ID)

    def test_get_subscription_http_404(self, gateway, subscription_client):
        error = HttpResponseError("SubscriptionNotFound")
        error.status_code = 404
        subscription_client.subscriptions.get.side_effect = error

        with pytest.raises(SubscriptionNotFoundError):
            gateway.get_subscription(SUB_ID)

    def test_get_subscription_other_errors_propagate(self, gateway, subscription_client):
        error = HttpResponseError("Forbidden")
        error.status_code = 403
        subscription_client.subscriptions.get.side_effect = error

        with pytest.raises(HttpResponseError):
            gateway.get_subscription(SUB_ID)


# =============================================================================
# Context
# =============================================================================

class TestSetContext:
    """Tests for set_context."""

    def test_builds_scoped_clients(self, gateway, subscription_client):
        subscription_client.subscriptions.get.return_value = create_mock_subscription()

        with patch('lib.gateway.ComputeManagementClient') as mock_compute, \
                patch('lib.gateway.SqlVirtualMachineManagementClient') as mock_sql:
            context = gateway.set_context(SUB_ID)

        assert context.matches(SUB_ID.upper())
        mock_compute.assert_called_once_with(gateway.credential, SUB_ID)
        mock_sql.assert_called_once_with(gateway.credential, SUB_ID)
        assert context.clients['compute'] is mock_compute.return_value
        assert context.clients['sql'] is mock_sql.return_value

    def test_failure_is_context_error(self, gateway, subscription_client):
        subscription_client.subscriptions.get.side_effect = HttpResponseError("AuthorizationFailed")

        with pytest.raises(ContextError) as exc_info:
            gateway.set_context(SUB_ID)

        assert isinstance(exc_info.value.__cause__, HttpResponseError)

    def test_context_reused_per_subscription(self, gateway, subscription_client):
        subscription_client.subscriptions.get.return_value = create_mock_subscription()

        with patch('lib.gateway.ComputeManagementClient') as mock_compute, \
                patch('lib.gateway.SqlVirtualMachineManagementClient') as mock_sql:
            contexts = [gateway.set_context(SUB_ID) for _ in range(100)]
            contexts.append(gateway.set_context(SUB_ID.upper()))

        assert all(c is contexts[0] for c in contexts)
        assert subscription_client.subscriptions.get.call_count == 1
        assert mock_compute.call_count == 1
        assert mock_sql.call_count == 1

    def test_failed_context_not_cached(self, gateway, subscription_client):
        subscription_client.subscriptions.get.side_effect = [
            HttpResponseError("ServiceUnavailable"),
            create_mock_subscription(),
        ]

        with patch('lib.gateway.ComputeManagementClient'), \
                patch('lib.gateway.SqlVirtualMachineManagementClient'):
            with pytest.raises(ContextError):
                gateway.set_context(SUB_ID)
            context = gateway.set_context(SUB_ID)

        assert context.matches(SUB_ID)
        assert subscription_client.subscriptions.get.call_count == 2

    def test_close_releases_clients(self, gateway, subscription_client):
        subscription_client.subscriptions.get.return_value = create_mock_subscription()

        with patch('lib.gateway.ComputeManagementClient') as mock_compute, \
                patch('lib.gateway.SqlVirtualMachineManagementClient') as mock_sql:
            for _ in range(10):
                gateway.set_context(SUB_ID)
            gateway.close()

        mock_compute.return_value.close.assert_called_once()
        mock_sql.return_value.close.assert_called_once()
        subscription_client.close.assert_called_once()

    def test_matches_rejects_other_subscription(self):
        context = SubscriptionContext(subscription_id=SUB_ID)
        assert not context.matches("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee")
        assert not context.matches(None)


# =============================================================================
# VM enumeration
# =============================================================================

class TestListWindowsVms:
    """Tests for list_windows_vms."""

    def test_filters_windows(self, gateway, context, compute):
        compute.virtual_machines.list_all.side_effect = list_all_returning([
            create_mock_vm("win-01", license_type="Windows_Server"),
            create_mock_vm("linux-01", os_type="Linux"),
            create_mock_vm("win-02", resource_group="rg-sql"),
        ])

        vms = gateway.list_windows_vms(context)

        assert [vm.name for vm in vms] == ["win-01", "win-02"]
        assert vms[0].os_license == "Windows_Server"
        assert vms[1].resource_group == "rg-sql"
        assert all(vm.subscription_id == SUB_ID for vm in vms)

    def test_vm_without_storage_profile_skipped(self, gateway, context, compute):
        vm = create_mock_vm("odd-01")
        vm.storage_profile = None
        compute.virtual_machines.list_all.side_effect = list_all_returning([vm])

        assert gateway.list_windows_vms(context) == []

    def test_power_state_attached(self, gateway, context, compute):
        compute.virtual_machines.list_all.side_effect = list_all_returning(
            [create_mock_vm("win-01"), create_mock_vm("win-02")],
            [create_status_vm("WIN-01", "deallocated"), create_status_vm("win-02", "running")],
        )

        vms = {vm.name: vm for vm in gateway.list_windows_vms(context)}

        assert vms["win-01"].power_state == "deallocated"
        assert vms["win-01"].powered_off
        assert vms["win-02"].power_state == "running"

    def test_power_state_failure_tolerated(self, gateway, context, compute):
        def list_all(status_only=None):
            if status_only:
                raise HttpResponseError("status not available")
            return [create_mock_vm("win-01")]

        compute.virtual_machines.list_all.side_effect = list_all

        vms = gateway.list_windows_vms(context)

        assert len(vms) == 1
        assert vms[0].power_state is None


# =============================================================================
# OS license
# =============================================================================

class TestOsLicense:
    """Tests for OS license read and write."""

    def test_get_os_license(self, gateway, context, compute, vm_record):
        compute.virtual_machines.get.return_value = create_mock_vm("vm-app-01", license_type="Windows_Server")

        assert gateway.get_os_license(context, vm_record) == "Windows_Server"
        compute.virtual_machines.get.assert_called_once_with("rg-app", "vm-app-01")

    def test_set_os_license_waits_for_completion(self, gateway, context, compute, vm_record):
        gateway.set_os_license(context, vm_record, "Windows_Server")

        args = compute.virtual_machines.begin_update.call_args.args
        assert args[:2] == ("rg-app", "vm-app-01")
        assert args[2].license_type == "Windows_Server"
        compute.virtual_machines.begin_update.return_value.result.assert_called_once()

    def test_set_os_license_failure_propagates(self, gateway, context, compute, vm_record):
        compute.virtual_machines.begin_update.side_effect = HttpResponseError("OperationNotAllowed")

        with pytest.raises(HttpResponseError):
            gateway.set_os_license(context, vm_record, "Windows_Server")


# =============================================================================
# SQL license
# =============================================================================

class TestSqlLicense:
    """Tests for SQL Server license read and write."""

    def test_get_sql_license_info(self, gateway, context, sql, vm_record):
        sql_vm = Mock()
        sql_vm.sql_server_license_type = SqlServerLicenseType.DR
        sql.sql_virtual_machines.get.return_value = sql_vm

        info = gateway.get_sql_license_info(context, vm_record)

        assert info.license_type == "DR"

    def test_missing_extension(self, gateway, context, sql, vm_record):
        sql.sql_virtual_machines.get.side_effect = ResourceNotFoundError("not found")

        with pytest.raises(SqlExtensionNotFoundError):
            gateway.get_sql_license_info(context, vm_record)

    def test_set_sql_license(self, gateway, context, sql, vm_record):
        sql_vm = Mock()
        sql_vm.sql_server_license_type = "PAYG"
        sql.sql_virtual_machines.get.return_value = sql_vm

        gateway.set_sql_license(context, vm_record, "AHUB")

        assert sql_vm.sql_server_license_type == "AHUB"
        sql.sql_virtual_machines.begin_create_or_update.assert_called_once_with("rg-app", "vm-app-01", sql_vm)
        sql.sql_virtual_machines.begin_create_or_update.return_value.result.assert_called_once()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
