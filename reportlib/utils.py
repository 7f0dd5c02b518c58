"""
Utility functions for the M365 admin reports.

Logging Level Standards:
------------------------
- ERROR: Collection step failures that stop a whole report section
         "Failed to collect subscribed SKUs: {e}"
- WARNING: Per-record fallbacks that change report values
           "No price found for SKU {id} - counted as 0"
           "Could not resolve group {id}, using raw id"
- INFO: Progress messages, record counts
        "Found 420 member users"
- DEBUG: Per-item detail that doesn't affect the report
         "Fetched 12 threads for group {id}"
"""
import csv
import hashlib
import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import BYTES_PER_GB, M365_AUTH_ERROR_CODES

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Works for plain functions and coroutines alike.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(httpx.TransportError,))
        async def fetch_page(client, url):
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


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for per-record report processing with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when piping output or running from a scheduler).

    Usage:
        with ProgressTracker("Licenses", total=len(users)) as tracker:
            for user in users:
                tracker.update_task(user.user_principal_name)
                records.append(enrich(user))
                tracker.advance(flagged=record.is_stale)
    """

    def __init__(self, report: str, total: int = 0, show_progress: bool = True):
        self.report = report
        self.total = total
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.processed = 0
        self.flagged = 0
        self.current_task = ""

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None
        self._use_rich = self.show_progress

    def __enter__(self):
        if self._use_rich:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(f"{self.report} Report", total=self.total or 1)
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.report} Report Starting")
            print(f"{'='*60}")
            if self.total:
                print(f"Records: {self.total}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._use_rich:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def update_task(self, task_description: str):
        """Update the current task being performed."""
        self.current_task = task_description
        if self._use_rich:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(
                self._main_task,
                description=f"{self.report} {task_description}"
            )

    def advance(self, flagged: bool = False):
        """Mark one record as processed."""
        self.processed += 1
        if flagged:
            self.flagged += 1
        if self._use_rich:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        elif self.processed % 100 == 0:
            print(f"  Processed {self.processed:,}/{self.total:,} records...")

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.report} Report Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Records Processed", f"{self.processed:,}")
        table.add_row("Records Flagged", f"{self.flagged:,}")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.report} Report Complete")
        print(f"{'='*60}")
        print(f"  Records Processed: {self.processed:,}")
        print(f"  Records Flagged:   {self.flagged:,}")
        print()


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def format_bytes_to_gb(bytes_value: int) -> float:
    """Convert bytes to GB."""
    if not bytes_value:
        return 0.0
    return round(bytes_value / BYTES_PER_GB, 2)


# =============================================================================
# Authentication Errors
# =============================================================================

class AuthError(Exception):
    """Custom exception for authentication/authorization failures.

    Raised when the Graph API returns an auth error that should stop the run
    rather than being silently caught and logged.
    """
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Detects:
    - azure-identity: ClientAuthenticationError (bad secret, unknown tenant)
    - Graph: ODataError with auth-related codes or a 401/403 status

    Args:
        exc: The exception to check

    Returns:
        True if the exception is an authentication/authorization error
    """
    exc_type_name = type(exc).__name__

    if exc_type_name in ('ClientAuthenticationError', 'CredentialUnavailableError'):
        return True

    if exc_type_name == 'ODataError':
        if getattr(exc, 'response_status_code', None) in (401, 403):
            return True
        error = getattr(exc, 'error', None)
        if error:
            error_code = getattr(error, 'code', '')
            return error_code in M365_AUTH_ERROR_CODES

    return False


def check_and_raise_auth_error(exc: Exception, context: str) -> None:
    """
    Check if exception is an auth error and raise AuthError if so.

    Call this in exception handlers before logging and continuing.
    If the exception is an auth error, raises AuthError to fail early.
    Otherwise, returns normally so the caller can log and continue.

    Raises:
        AuthError: If exc is an authentication/authorization error
    """
    if is_auth_error(exc):
        raise AuthError(
            f"Authentication/authorization error while trying to {context}: {exc}",
            original_error=exc
        ) from exc


# =============================================================================
# Log Redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 for uniqueness with minimal collision risk.

    Example: 0f9e8d7c-... -> id-a3f8b2c1
             jane.doe@contoso.com -> user-b7d4e9f2@contoso.com
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


_LOG_REDACT_PATTERNS = [
    # GUIDs (tenant, user, group, SKU ids)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: hash_sensitive_id(m.group(1).lower(), 'id-')),
    # User principal names and mail addresses - keep the domain
    (re.compile(r'\b([A-Za-z0-9._%+#-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b'),
     lambda m: f"{hash_sensitive_id(m.group(1), 'user-')}@{m.group(2)}"),
]


def redact_log_message(message: str) -> str:
    """Redact identifiers and addresses from a log message using consistent hashing."""
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
                redact_log_message(str(arg)) if isinstance(arg, str) else arg
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

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"m365_report_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs never carry raw ids or addresses
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    # Azure SDK and HTTP stack are very chatty at INFO
    for noisy in ('azure', 'httpx', 'httpcore', 'msal'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(__name__)


# =============================================================================
# Output Writers
# =============================================================================

def _open_private(filepath: str, newline: Optional[str] = None):
    """
    Open a report file for writing, owner read/write only.

    Report rows carry user names, UPNs and group owners.
    """
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        return os.fdopen(fd, 'w', encoding='utf-8', newline=newline)
    except Exception:
        # fdopen did not take ownership of the descriptor
        os.close(fd)
        raise


def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    with _open_private(filepath) as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write data to CSV file. The header row is written even without rows."""
    if not fieldnames:
        if not data:
            return
        fieldnames = list(data[0].keys())

    with _open_private(filepath, newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")


def write_text(content: str, filepath: str) -> None:
    """Write a text document (HTML report) to disk."""
    with _open_private(filepath) as f:
        f.write(content)
    print(f"Wrote {filepath}")
