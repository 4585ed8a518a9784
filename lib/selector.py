"""
Subscription selection.

Resolves the subscriptions a run will touch. Per-id lookup failures and
disabled subscriptions are reported as warnings and skipped; only a failure
to list subscriptions at all propagates to the caller.
"""
import logging
from typing import List, Optional, Sequence

from .gateway import LicenseGateway
from .models import Subscription, SubscriptionSelection

logger = logging.getLogger(__name__)

NO_ENABLED_SUBSCRIPTIONS = "No enabled subscriptions found"


def _unique(ids: Sequence[str]) -> List[str]:
    """Drop repeated ids (case-insensitive), keeping first occurrence order."""
    seen = set()
    unique = []
    for sub_id in ids:
        key = sub_id.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(sub_id.strip())
    return unique


def select_subscriptions(
    gateway: LicenseGateway,
    requested_ids: Optional[Sequence[str]] = None,
) -> SubscriptionSelection:
    """
    Resolve the enabled subscriptions to process.

    Args:
        gateway: Remote resource gateway
        requested_ids: Explicit subscription ids, or None/empty for every
            subscription visible to the credential

    Returns:
        SubscriptionSelection in gateway list order (no ids) or requested
        order (ids), plus any warnings raised along the way

    Raises:
        Whatever gateway.list_subscriptions() raises when no ids are given
    """
    selection = SubscriptionSelection()

    def warn(message: str) -> None:
        logger.warning(message)
        selection.warnings.append(message)

    candidates: List[Subscription] = []
    if not requested_ids:
        candidates = gateway.list_subscriptions()
        logger.info(f"Found {len(candidates)} accessible subscription(s)")
    else:
        for sub_id in _unique(requested_ids):
            try:
                candidates.append(gateway.get_subscription(sub_id))
            except Exception as e:
                warn(f"Unable to retrieve subscription {sub_id}: {e}")

    for sub in candidates:
        if sub.enabled:
            selection.subscriptions.append(sub)
        elif requested_ids:
            warn(f"Subscription {sub.id} ({sub.name}) is {sub.state}; skipping")
        else:
            logger.debug(f"Skipping {sub.state} subscription {sub.id} ({sub.name})")

    if not selection.subscriptions:
        warn(NO_ENABLED_SUBSCRIPTIONS)

    return selection
