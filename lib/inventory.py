"""
Windows VM inventory across subscriptions.

One collection pass fans out over the subscriptions with a bounded worker
pool. Each worker claims its subscription, establishes a context handle,
verifies the handle, lists Windows VMs and stamps them with the
subscription id and name. A pass is unreliable when a subscription was
claimed twice, a VM key shows up twice, or fewer subscriptions completed
than were requested; unreliable passes are re-run from scratch with a
linear, capped backoff.
"""
import logging
import threading
from collections import Counter
from dataclasses import replace
from typing import List, NamedTuple

from .constants import (
    COLLECTION_BACKOFF_SECONDS,
    COLLECTION_MAX_ATTEMPTS,
    COLLECTION_MAX_BACKOFF_SECONDS,
    DEFAULT_THROTTLE_LIMIT,
    ERROR_KIND_COLLECTION,
)
from .gateway import LicenseGateway
from .models import (
    CollectionError,
    CollectionPass,
    CollectorItem,
    Diagnostic,
    ErrorRecord,
    InventoryResult,
    Subscription,
    VMFound,
    VMRecord,
)
from .utils import bounded_map, retry_on_result

logger = logging.getLogger(__name__)


class ClaimRegistry:
    """Per-pass record of subscriptions a worker has started on."""

    def __init__(self):
        self._claimed = set()
        self._lock = threading.Lock()

    def claim(self, subscription_id: str) -> bool:
        """Return True on the first claim for an id, False afterwards."""
        key = subscription_id.lower()
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True


class SubscriptionOutcome(NamedTuple):
    subscription: Subscription
    items: List[CollectorItem]
    completed: bool


def _collection_error(subscription: Subscription, message: str) -> CollectionError:
    return CollectionError(ErrorRecord(
        message=message,
        kind=ERROR_KIND_COLLECTION,
        subscription_id=subscription.id,
        subscription_name=subscription.name,
    ))


def collect_subscription(
    gateway: LicenseGateway,
    subscription: Subscription,
    claims: ClaimRegistry,
) -> SubscriptionOutcome:
    """Enumerate Windows VMs for one subscription. Never raises."""
    if not claims.claim(subscription.id):
        message = f"Subscription {subscription.id} already claimed in this pass; skipping"
        logger.debug(message)
        return SubscriptionOutcome(subscription, [Diagnostic(message, subscription.id)], False)

    try:
        context = gateway.set_context(subscription.id)
    except Exception as e:
        logger.warning(f"Failed to set context for subscription {subscription.id} ({subscription.name}): {e}")
        return SubscriptionOutcome(
            subscription, [_collection_error(subscription, f"Failed to set context: {e}")], False
        )

    if not context.matches(subscription.id):
        message = (
            f"Context verification failed: expected subscription {subscription.id}, "
            f"got {context.subscription_id}"
        )
        logger.warning(message)
        return SubscriptionOutcome(subscription, [_collection_error(subscription, message)], False)

    try:
        vms = gateway.list_windows_vms(context)
    except Exception as e:
        logger.warning(f"Failed to list VMs in subscription {subscription.id} ({subscription.name}): {e}")
        return SubscriptionOutcome(
            subscription, [_collection_error(subscription, f"Failed to list VMs: {e}")], False
        )

    foreign = [vm for vm in vms if vm.subscription_id and vm.subscription_id.lower() != subscription.id.lower()]
    if foreign:
        message = (
            f"Context verification failed: {len(foreign)} VM(s) returned for subscription "
            f"{foreign[0].subscription_id} while enumerating {subscription.id}"
        )
        logger.warning(message)
        return SubscriptionOutcome(subscription, [_collection_error(subscription, message)], False)

    items: List[CollectorItem] = [
        VMFound(replace(vm, subscription_id=subscription.id, subscription_name=subscription.name))
        for vm in vms
    ]
    logger.info(f"Found {len(items)} Windows VM(s) in subscription {subscription.name}")
    return SubscriptionOutcome(subscription, items, True)


def attempt_collection(
    gateway: LicenseGateway,
    subscriptions: List[Subscription],
    concurrency: int = DEFAULT_THROTTLE_LIMIT,
    attempt: int = 1,
) -> CollectionPass:
    """Run one full collection pass and flag its anomalies."""
    claims = ClaimRegistry()
    outcomes = bounded_map(
        lambda sub: collect_subscription(gateway, sub, claims),
        subscriptions,
        max_workers=concurrency,
        on_error=lambda sub, e: SubscriptionOutcome(
            sub, [_collection_error(sub, f"Unexpected collection error: {e}")], False
        ),
    )

    result = CollectionPass(
        attempt=attempt,
        expected_subscriptions=len({sub.id.lower() for sub in subscriptions}),
    )
    for outcome in outcomes:
        if outcome.completed:
            result.completed_subscriptions += 1
        for item in outcome.items:
            if isinstance(item, VMFound):
                result.vms.append(item.vm)
            elif isinstance(item, CollectionError):
                result.errors.append(item.error)
            elif isinstance(item, Diagnostic):
                result.diagnostics.append(item)
                if item.subscription_id:
                    result.duplicate_claims.append(item.subscription_id)

    key_counts = Counter(vm.key for vm in result.vms)
    result.duplicate_vm_keys = [key for key, count in key_counts.items() if count > 1]

    if not result.reliable:
        logger.warning(f"Inventory pass {attempt} unreliable: {'; '.join(result.unreliable_reasons())}")
    return result


def unique_subscriptions(subscriptions: List[Subscription]) -> List[Subscription]:
    """Drop repeated subscription ids (case-insensitive), keeping input order."""
    seen = set()
    unique = []
    for sub in subscriptions:
        key = sub.id.lower()
        if key in seen:
            logger.debug(f"Ignoring repeated subscription {sub.id} in inventory input")
            continue
        seen.add(key)
        unique.append(sub)
    return unique


def dedupe_vms(vms: List[VMRecord]) -> List[VMRecord]:
    """Drop repeated VM keys, keeping the first record seen."""
    seen = set()
    unique = []
    for vm in vms:
        if vm.key not in seen:
            seen.add(vm.key)
            unique.append(vm)
    return unique


def _merge_errors(passes: List[CollectionPass]) -> List[ErrorRecord]:
    seen = set()
    merged = []
    for collection_pass in passes:
        for error in collection_pass.errors:
            key = (error.kind, error.subscription_id, error.message)
            if key not in seen:
                seen.add(key)
                merged.append(error)
    return merged


def collect_inventory(
    gateway: LicenseGateway,
    subscriptions: List[Subscription],
    concurrency: int = DEFAULT_THROTTLE_LIMIT,
    max_attempts: int = COLLECTION_MAX_ATTEMPTS,
    backoff: float = COLLECTION_BACKOFF_SECONDS,
    max_backoff: float = COLLECTION_MAX_BACKOFF_SECONDS,
) -> InventoryResult:
    """
    Enumerate Windows VMs across subscriptions, retrying unreliable passes.

    Args:
        gateway: Remote resource gateway
        subscriptions: Enabled subscriptions to enumerate
        concurrency: Worker pool size for one pass
        max_attempts: Total passes allowed (first pass included)
        backoff: Seconds to wait after pass n, multiplied by n
        max_backoff: Upper bound for a single wait

    Returns:
        InventoryResult with VMs deduplicated by (subscription, resource
        group, name). When every pass was unreliable, the pass with the most
        completed subscriptions is used and errors from all passes are kept.
    """
    subscriptions = unique_subscriptions(subscriptions)
    if not subscriptions:
        return InventoryResult()

    passes = retry_on_result(
        lambda attempt: attempt_collection(gateway, subscriptions, concurrency, attempt),
        is_unreliable=lambda collection_pass: not collection_pass.reliable,
        max_attempts=max_attempts,
        backoff=backoff,
        max_backoff=max_backoff,
    )

    final = passes[-1]
    if final.reliable:
        return InventoryResult(
            vms=dedupe_vms(final.vms),
            errors=list(final.errors),
            attempts=len(passes),
            reliable=True,
        )

    best = max(passes, key=lambda p: (p.completed_subscriptions, -len(p.duplicate_vm_keys), p.attempt))
    errors = _merge_errors(passes)
    summary = (
        f"Inventory still unreliable after {len(passes)} attempt(s) "
        f"({'; '.join(best.unreliable_reasons())}); using best available data from pass {best.attempt}"
    )
    logger.warning(summary)
    errors.append(ErrorRecord(message=summary, kind=ERROR_KIND_COLLECTION))

    return InventoryResult(
        vms=dedupe_vms(best.vms),
        errors=errors,
        attempts=len(passes),
        reliable=False,
    )
