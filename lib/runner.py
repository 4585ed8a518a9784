"""
Run orchestration: select subscriptions, collect inventory, update licenses.

Stages run strictly in sequence. The updater starts only after the full
inventory (including collector retries) is known.
"""
import logging
from typing import Optional, Sequence

from .constants import (
    COLLECTION_BACKOFF_SECONDS,
    COLLECTION_MAX_BACKOFF_SECONDS,
    DEFAULT_MODE,
    DEFAULT_THROTTLE_LIMIT,
)
from .gateway import LicenseGateway, SubscriptionListingError
from .inventory import collect_inventory
from .models import RunReport, UpdateResult
from .report import format_progress_line
from .selector import select_subscriptions
from .updater import update_licenses
from .utils import ProgressTracker

logger = logging.getLogger(__name__)


def run_remediation(
    gateway: LicenseGateway,
    subscription_ids: Optional[Sequence[str]] = None,
    mode: str = DEFAULT_MODE,
    throttle_limit: int = DEFAULT_THROTTLE_LIMIT,
    dry_run: bool = False,
    show_progress: bool = True,
    collection_backoff: float = COLLECTION_BACKOFF_SECONDS,
    collection_max_backoff: float = COLLECTION_MAX_BACKOFF_SECONDS,
) -> RunReport:
    """
    Execute one remediation run end to end.

    Raises SubscriptionListingError when the subscription list itself cannot
    be obtained (typically a credential failure); everything later degrades
    to partial results plus error records.
    """
    report = RunReport(dry_run=dry_run)

    try:
        selection = select_subscriptions(gateway, subscription_ids)
    except Exception as e:
        raise SubscriptionListingError(f"Unable to retrieve subscriptions: {e}") from e

    report.subscriptions = selection.subscriptions
    report.warnings.extend(selection.warnings)
    print(f"Found {len(selection.subscriptions)} enabled subscription(s) to process")

    if not selection.subscriptions:
        return report

    inventory = collect_inventory(
        gateway,
        selection.subscriptions,
        concurrency=throttle_limit,
        backoff=collection_backoff,
        max_backoff=collection_max_backoff,
    )
    report.errors.extend(inventory.errors)
    report.vm_count = len(inventory.vms)
    print(f"Found {len(inventory.vms)} Windows VM(s) across {len(selection.subscriptions)} subscription(s)")

    if not inventory.vms:
        logger.warning("No Windows VMs found; nothing to update")
        return report

    with ProgressTracker("Updating licenses", total=len(inventory.vms), show_progress=show_progress) as tracker:
        def on_result(result: UpdateResult) -> None:
            tracker.advance(format_progress_line(tracker.completed + 1, len(inventory.vms), result))

        report.results = update_licenses(
            gateway,
            inventory.vms,
            mode=mode,
            concurrency=throttle_limit,
            dry_run=dry_run,
            on_result=on_result,
        )

    return report
