"""
Data models for the Azure Hybrid Benefit remediation tool.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .constants import (
    ERROR_KIND_COLLECTION,
    POWER_STATES_OFF,
    SUBSCRIPTION_STATE_ENABLED,
)

VMKey = Tuple[str, str, str]


@dataclass(frozen=True)
class Subscription:
    """Azure subscription as returned by the gateway."""
    id: str
    name: str
    state: str

    @property
    def enabled(self) -> bool:
        return self.state == SUBSCRIPTION_STATE_ENABLED


@dataclass(frozen=True)
class VMRecord:
    """
    Windows virtual machine discovered during inventory.

    Subscription id and name are stamped on at discovery time so later
    stages never need to look the subscription up again.
    """
    name: str
    resource_group: str
    subscription_id: str
    subscription_name: str
    os_license: Optional[str] = None
    power_state: Optional[str] = None  # e.g. "running", "deallocated"

    @property
    def key(self) -> VMKey:
        """Identity of the VM within a run."""
        return (self.subscription_id.lower(), self.resource_group.lower(), self.name.lower())

    @property
    def powered_off(self) -> bool:
        return (self.power_state or "").lower() in POWER_STATES_OFF


@dataclass(frozen=True)
class ErrorRecord:
    """Diagnostic carried beside (never instead of) VM records."""
    message: str
    kind: str = ERROR_KIND_COLLECTION
    subscription_id: Optional[str] = None
    subscription_name: Optional[str] = None


@dataclass(frozen=True)
class UpdateResult:
    """Terminal outcome for one VM in one run."""
    timestamp: str
    vm_name: str
    resource_group: str
    subscription_name: str
    subscription_id: str
    applied: str
    status: str
    message: str

    def to_row(self) -> Dict[str, str]:
        """Row for the CSV report, keyed by report column."""
        return {
            "Timestamp": self.timestamp,
            "VMName": self.vm_name,
            "ResourceGroup": self.resource_group,
            "Subscription": self.subscription_name,
            "SubscriptionId": self.subscription_id,
            "Applied": self.applied,
            "Status": self.status,
            "Message": self.message,
        }


@dataclass(frozen=True)
class SqlLicenseInfo:
    """License details of a SQL Server IaaS extension."""
    license_type: Optional[str]


# =============================================================================
# Collector items (one variant per outcome, no marker fields)
# =============================================================================

@dataclass(frozen=True)
class VMFound:
    vm: VMRecord


@dataclass(frozen=True)
class CollectionError:
    error: ErrorRecord


@dataclass(frozen=True)
class Diagnostic:
    message: str
    subscription_id: Optional[str] = None


CollectorItem = Union[VMFound, CollectionError, Diagnostic]


@dataclass
class CollectionPass:
    """Outcome of one full enumeration attempt across all subscriptions."""
    attempt: int
    expected_subscriptions: int
    completed_subscriptions: int = 0
    vms: List[VMRecord] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    duplicate_claims: List[str] = field(default_factory=list)
    duplicate_vm_keys: List[VMKey] = field(default_factory=list)

    @property
    def reliable(self) -> bool:
        return (
            not self.duplicate_claims
            and not self.duplicate_vm_keys
            and self.completed_subscriptions == self.expected_subscriptions
        )

    def unreliable_reasons(self) -> List[str]:
        reasons = []
        if self.duplicate_claims:
            reasons.append(f"{len(self.duplicate_claims)} subscription(s) claimed more than once")
        if self.duplicate_vm_keys:
            reasons.append(f"{len(self.duplicate_vm_keys)} duplicate VM key(s)")
        if self.completed_subscriptions != self.expected_subscriptions:
            reasons.append(
                f"{self.completed_subscriptions}/{self.expected_subscriptions} subscriptions completed"
            )
        return reasons


@dataclass
class InventoryResult:
    """Deduplicated inventory handed to the License Updater."""
    vms: List[VMRecord] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    attempts: int = 0
    reliable: bool = True


@dataclass
class SubscriptionSelection:
    """Subscriptions to process plus the warnings raised while selecting them."""
    subscriptions: List[Subscription] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Everything the reporting boundary needs from one run."""
    subscriptions: List[Subscription] = field(default_factory=list)
    vm_count: int = 0
    results: List[UpdateResult] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dry_run: bool = False
