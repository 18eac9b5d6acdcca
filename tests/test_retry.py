"""Tests for the transient-error retry helper."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

import skein._retry as retry
import skein.errors as errors


def _transient() -> errors.TransientStoreError:
    return errors.TransientStoreError(
        context="Reading event", cause="database is locked", fix="Retry."
    )


class TestRetryCall:
    def test_success_first_try(self) -> None:
        """No retry when the call succeeds."""
        fn = MagicMock(return_value=42)

        assert retry.retry_call(fn, max_retries=3, backoff_seconds=0.0, description="x") == (42, 1)
        fn.assert_called_once()

    def test_retries_transient_errors(self) -> None:
        """Transient failures are retried until success."""
        fn = MagicMock(side_effect=[_transient(), _transient(), "ok"])

        result, attempts = retry.retry_call(fn, max_retries=3, backoff_seconds=0.0, description="x")

        assert result == "ok"
        assert attempts == 3

    def test_gives_up_after_max_retries(self) -> None:
        """The last transient error propagates once retries run out."""
        fn = MagicMock(side_effect=_transient())

        with pytest.raises(errors.TransientStoreError):
            retry.retry_call(fn, max_retries=2, backoff_seconds=0.0, description="x")
        assert fn.call_count == 3

    def test_other_errors_not_retried(self) -> None:
        """Only transient store errors are retried."""
        fn = MagicMock(side_effect=errors.UnknownEventError("e1"))

        with pytest.raises(errors.UnknownEventError):
            retry.retry_call(fn, max_retries=5, backoff_seconds=0.0, description="x")
        fn.assert_called_once()

    def test_backoff_doubles(self) -> None:
        """Delays grow exponentially from the base backoff."""
        fn = MagicMock(side_effect=[_transient(), _transient(), _transient(), "ok"])

        with patch("skein._retry.time.sleep") as sleep:
            retry.retry_call(fn, max_retries=3, backoff_seconds=0.1, description="x")

        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2, 0.4])
