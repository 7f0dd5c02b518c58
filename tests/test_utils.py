"""
Tests for reportlib/utils.py utility functions.

Covers:
- get_timestamp format
- format_bytes_to_gb conversion
- write_json, write_csv and write_text (local files)
- retry_with_backoff decorator (sync and async)
- redact_log_message, hash_sensitive_id and RedactingFilter
- AuthError and is_auth_error detection
- check_and_raise_auth_error
- ProgressTracker plain output
"""
import asyncio
import csv
import json
import logging
import os
import stat
import sys
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reportlib.utils import (
    AuthError,
    ProgressTracker,
    RedactingFilter,
    check_and_raise_auth_error,
    format_bytes_to_gb,
    get_timestamp,
    hash_sensitive_id,
    is_auth_error,
    redact_log_message,
    retry_with_backoff,
    setup_logging,
    write_csv,
    write_json,
    write_text,
)


def make_odata_error(code: str = None, status: int = None) -> Exception:
    """Build an exception that looks like msgraph's ODataError."""
    ODataError = type('ODataError', (Exception,), {})
    exc = ODataError("graph error")
    exc.response_status_code = status
    exc.error = Mock(code=code) if code else None
    return exc


# =============================================================================
# Small Helpers
# =============================================================================

class TestHelpers:
    """Tests for timestamp and size helpers."""

    def test_timestamp_format(self):
        ts = get_timestamp()

        assert ts.endswith("Z")
        assert "T" in ts

    def test_bytes_to_gb(self):
        assert format_bytes_to_gb(0) == 0.0
        assert format_bytes_to_gb(None) == 0.0
        assert format_bytes_to_gb(1073741824) == 1.0
        assert format_bytes_to_gb(1610612736) == 1.5


# =============================================================================
# Writer Tests
# =============================================================================

class TestWriters:
    """Tests for output writers."""

    def test_write_json_permissions(self, tmp_path):
        path = str(tmp_path / "summary.json")

        write_json({"total": 3}, path)

        with open(path) as f:
            assert json.load(f) == {"total": 3}
        assert stat.S_IMODE(os.stat(path).st_mode) & 0o077 == 0

    def test_write_json_error_is_not_masked(self, tmp_path):
        path = str(tmp_path / "summary.json")

        # Tuple keys are not serializable; the TypeError must surface as is
        with pytest.raises(TypeError):
            write_json({("a", "b"): 1}, path)

    def test_write_csv_header_without_rows(self, tmp_path):
        path = str(tmp_path / "empty.csv")

        write_csv([], path, fieldnames=["Name", "Status"])

        with open(path, newline='', encoding='utf-8') as f:
            assert list(csv.reader(f)) == [["Name", "Status"]]

    def test_write_csv_rows(self, tmp_path):
        path = str(tmp_path / "rows.csv")

        write_csv([{"Name": "Zoë, R&D", "Status": "OK"}], path)

        with open(path, newline='', encoding='utf-8') as f:
            rows = list(csv.DictReader(f))
        assert rows == [{"Name": "Zoë, R&D", "Status": "OK"}]
        assert stat.S_IMODE(os.stat(path).st_mode) & 0o077 == 0

    def test_write_text(self, tmp_path):
        path = str(tmp_path / "page.html")

        write_text("<p>é</p>", path)

        with open(path, encoding='utf-8') as f:
            assert f.read() == "<p>é</p>"
        assert stat.S_IMODE(os.stat(path).st_mode) & 0o077 == 0


# =============================================================================
# Retry Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_retries_then_succeeds(self):
        calls = []

        @retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0, exceptions=(ConnectionError,))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_and_reraises(self):
        @retry_with_backoff(max_attempts=2, min_wait=0, max_wait=0, exceptions=(ConnectionError,))
        def broken():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            broken()

    def test_other_exceptions_not_retried(self):
        calls = []

        @retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0, exceptions=(ConnectionError,))
        def bad():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            bad()
        assert len(calls) == 1

    def test_coroutine(self):
        calls = []

        @retry_with_backoff(max_attempts=3, min_wait=0, max_wait=0, exceptions=(ConnectionError,))
        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return "ok"

        assert asyncio.run(flaky()) == "ok"
        assert len(calls) == 2


# =============================================================================
# Redaction Tests
# =============================================================================

class TestRedaction:
    """Tests for log redaction."""

    def test_hash_is_consistent(self):
        assert hash_sensitive_id("abc") == hash_sensitive_id("abc")
        assert hash_sensitive_id("abc", "id-").startswith("id-")
        assert hash_sensitive_id("") == ""

    def test_guid_redacted(self):
        guid = "0f9e8d7c-1234-5678-9abc-def012345678"

        message = redact_log_message(f"Could not resolve group {guid}, using raw id")

        assert guid not in message
        assert "id-" in message
        assert redact_log_message(guid.upper()) == redact_log_message(guid)

    def test_address_keeps_domain(self):
        message = redact_log_message("Processing jane.doe@contoso.com")

        assert "jane.doe" not in message
        assert "@contoso.com" in message
        assert "user-" in message

    def test_filter_redacts_record(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1,
                                   "User %s", ("jane.doe@contoso.com",), None)

        assert RedactingFilter().filter(record) is True
        assert "jane.doe" not in record.getMessage()

    def test_setup_logging_writes_file(self, tmp_path):
        setup_logging("INFO", str(tmp_path))
        logging.getLogger("reportlib.test").info("hello jane.doe@contoso.com")
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_files = [p for p in tmp_path.iterdir() if p.name.startswith("m365_report_log_")]
        assert len(log_files) == 1
        content = log_files[0].read_text()
        assert "hello" in content
        assert "jane.doe" not in content

        for handler in list(logging.getLogger().handlers):
            handler.close()
        logging.getLogger().handlers.clear()


# =============================================================================
# Auth Error Tests
# =============================================================================

class TestAuthErrors:
    """Tests for auth error detection."""

    def test_client_authentication_error(self):
        ClientAuthenticationError = type('ClientAuthenticationError', (Exception,), {})

        assert is_auth_error(ClientAuthenticationError("bad secret"))

    def test_odata_auth_code(self):
        assert is_auth_error(make_odata_error(code="Authorization_RequestDenied"))

    def test_odata_forbidden_status(self):
        assert is_auth_error(make_odata_error(status=403))

    def test_odata_other_error(self):
        assert not is_auth_error(make_odata_error(code="ResourceNotFound", status=404))

    def test_plain_exception(self):
        assert not is_auth_error(ValueError("nope"))

    def test_check_and_raise(self):
        exc = make_odata_error(status=401)

        with pytest.raises(AuthError) as info:
            check_and_raise_auth_error(exc, "list users")

        assert "list users" in str(info.value)
        assert info.value.original_error is exc

    def test_check_passes_through_other_errors(self):
        check_and_raise_auth_error(RuntimeError("timeout"), "list users")


# =============================================================================
# ProgressTracker Tests
# =============================================================================

class TestProgressTracker:
    """Tests for ProgressTracker in non-TTY mode."""

    def test_plain_counts(self, capsys):
        with ProgressTracker("License", total=3, show_progress=False) as tracker:
            for flagged in (False, True, True):
                tracker.update_task("user")
                tracker.advance(flagged=flagged)

        assert tracker.processed == 3
        assert tracker.flagged == 2
        out = capsys.readouterr().out
        assert "License Report Complete" in out
        assert "Records Flagged:   2" in out
