"""
Azure Hybrid Benefit remediation shared library.
"""
from . import constants
from .gateway import (
    AzureGateway,
    ContextError,
    GatewayError,
    LicenseGateway,
    SqlExtensionNotFoundError,
    SubscriptionContext,
    SubscriptionListingError,
    SubscriptionNotFoundError,
)
from .inventory import collect_inventory
from .models import (
    ErrorRecord,
    InventoryResult,
    RunReport,
    SqlLicenseInfo,
    Subscription,
    SubscriptionSelection,
    UpdateResult,
    VMRecord,
)
from .runner import run_remediation
from .selector import select_subscriptions
from .updater import update_licenses, update_vm
from .utils import setup_logging, write_csv

__all__ = [
    'constants',
    # Gateway
    'LicenseGateway',
    'AzureGateway',
    'SubscriptionContext',
    'GatewayError',
    'SubscriptionNotFoundError',
    'SubscriptionListingError',
    'ContextError',
    'SqlExtensionNotFoundError',
    # Models
    'Subscription',
    'VMRecord',
    'ErrorRecord',
    'UpdateResult',
    'SqlLicenseInfo',
    'SubscriptionSelection',
    'InventoryResult',
    'RunReport',
    # Stages
    'select_subscriptions',
    'collect_inventory',
    'update_licenses',
    'update_vm',
    'run_remediation',
    # Utils
    'setup_logging',
    'write_csv',
]
