"""
Utility functions for the Azure Hybrid Benefit remediation tool.

Logging Level Standards:
------------------------
- ERROR: Failures that stop a whole stage or fail a VM outright
         "General error processing VM vm-01: {e}"
- WARNING: Partial failures, exclusions, retries
           "Subscription {id} is Disabled; skipping"
           "Inventory pass 1/3 unreliable (...); retrying"
- INFO: Progress messages, counts
        "Found 42 Windows VMs across 3 subscription(s)"
- DEBUG: Per-item detail that doesn't affect the overall run
         "Setting context to subscription {id}"
"""
import csv
import hashlib
import logging
import os
import re
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])
T = TypeVar('T')
R = TypeVar('R')


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(ServiceRequestError,))
        def list_things():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


def retry_on_result(
    func: Callable[[int], R],
    is_unreliable: Callable[[R], bool],
    max_attempts: int = 3,
    backoff: float = 5.0,
    max_backoff: float = 30.0,
) -> List[R]:
    """
    Call func until it returns a result that is not unreliable.

    func receives the 1-based attempt number. The wait before attempt n+1 is
    backoff * n seconds, capped at max_backoff. Exceptions raised by func
    propagate unchanged.

    Returns:
        Every result produced, in attempt order. The last element is the
        accepted result, or the final unreliable one when the budget ran out.
    """
    outcomes: List[R] = []

    def attempt_once() -> R:
        result = func(len(outcomes) + 1)
        outcomes.append(result)
        return result

    def log_retry(retry_state) -> None:
        # The result itself is never logged; it can hold a whole inventory
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{max_attempts} returned an unreliable result; "
            f"retrying in {retry_state.next_action.sleep:g}s"
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=backoff, increment=backoff, max=max_backoff),
        retry=retry_if_result(is_unreliable),
        before_sleep=log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    retrying(attempt_once)
    return outcomes


def bounded_map(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 1,
    on_error: Optional[Callable[[T, Exception], R]] = None,
    on_result: Optional[Callable[[R], None]] = None,
) -> List[R]:
    """
    Apply func to every item with at most max_workers calls in flight.

    Results are returned in completion order. An item whose call raises is
    converted through on_error when given, otherwise the exception propagates
    once the pool has drained. on_result is invoked on the calling thread for
    each result as it arrives.
    """
    results: List[R] = []
    items = list(items)

    def record(result: R) -> None:
        results.append(result)
        if on_result:
            on_result(result)

    if max_workers <= 1:
        for item in items:
            try:
                result = func(item)
            except Exception as e:
                if on_error is None:
                    raise
                result = on_error(item, e)
            record(result)
        return results

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(func, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                result = future.result()
            except Exception as e:
                if on_error is None:
                    raise
                result = on_error(item, e)
            record(result)

    return results


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress display for a fan-out stage.

    Uses a rich progress bar with lines printed above it when stdout is a
    TTY, and plain print statements otherwise (e.g., when piping output).

    Usage:
        with ProgressTracker("Updating licenses", total=len(vms)) as tracker:
            for result in results:
                tracker.advance(f"[{n}/{total}] {result.vm_name}")
    """

    def __init__(self, description: str, total: int = 0, show_progress: bool = True):
        self.description = description
        self.total = total
        self.completed = 0
        self.show_progress = show_progress and sys.stdout.isatty()

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._task = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )
            self._task = self._progress.add_task(self.description, total=self.total or 1)
            self._progress.start()
        else:
            print(f"{self.description} ({self.total})")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            self._progress.stop()
        return False

    def advance(self, line: Optional[str] = None):
        """Mark one item complete, optionally printing a line for it."""
        self.completed += 1
        if self._progress is not None:
            if line:
                self._progress.console.print(line, highlight=False)
            self._progress.update(self._task, advance=1)
        elif line:
            print(line)


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_file_timestamp() -> str:
    """Timestamp for run output file names (YYYYMMDD_HHMMSS, local time)."""
    return datetime.now().strftime('%Y%m%d_%H%M%S')


# =============================================================================
# Auth error detection
# =============================================================================

# Azure error status codes that indicate auth/permission issues
AZURE_AUTH_STATUS_CODES = {401, 403}


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an Azure authentication/authorization error.

    Matches ClientAuthenticationError, CredentialUnavailableError and
    HttpResponseError with a 401/403 status or an auth-related message.
    Exception chains are followed so wrapped SDK errors are detected too.
    """
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        exc_type_name = type(exc).__name__

        if exc_type_name in ('ClientAuthenticationError', 'CredentialUnavailableError'):
            return True

        if exc_type_name == 'HttpResponseError':
            if getattr(exc, 'status_code', None) in AZURE_AUTH_STATUS_CODES:
                return True
            error_msg = str(exc).lower()
            if 'authentication' in error_msg or 'authorization' in error_msg:
                return True

        exc = exc.__cause__ or exc.__context__
    return False


# =============================================================================
# Log redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 so the same ID always maps to the same hash
    within and across runs.
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


_LOG_REDACT_PATTERNS = [
    # Resource paths - preserve structure, hash subscription and resource group.
    # Must come before GUID pattern to match full paths first
    (re.compile(r'(/subscriptions/)([0-9a-f-]{36})(/resourceGroups/)([^/\s]+)', re.IGNORECASE),
     lambda m: f"{m.group(1)}{hash_sensitive_id(m.group(2).lower())}{m.group(3)}{hash_sensitive_id(m.group(4))}"),
    (re.compile(r'(/subscriptions/)([0-9a-f-]{36})', re.IGNORECASE),
     lambda m: f"{m.group(1)}{hash_sensitive_id(m.group(2).lower())}"),
    # Bare GUIDs (subscription IDs, tenant IDs)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
]


def redact_log_message(message: str) -> str:
    """Redact subscription IDs and resource paths from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation between log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # The Azure SDK logs every HTTP request at INFO
    logging.getLogger('azure').setLevel(max(numeric_level, logging.WARNING))

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"ahub_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs only; console output keeps full IDs
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """
    Write data to a local CSV file.

    With explicit fieldnames the header row is written even when data is
    empty; without them an empty data list writes nothing.
    """
    if not data and not fieldnames:
        return

    if not fieldnames:
        fieldnames = list(data[0].keys())

    with open(filepath, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")
