"""Tests for keel.core.result module."""

import pytest

from keel.core.errors import FailureKind, PermanentError
from keel.core.result import Err, Ok, partition_results, try_result


class TestOk:
    """Tests for Ok."""

    def test_unwrap(self):
        assert Ok(3).unwrap() == 3
        assert Ok(3).is_ok() and not Ok(3).is_err()

    def test_map_and_flat_map(self):
        assert Ok(3).map(lambda v: v * 2) == Ok(6)
        assert Ok(3).flat_map(lambda v: Err(ValueError(str(v)))).is_err()

    def test_to_dict(self):
        assert Ok("x").to_dict() == {"ok": True, "value": "x"}


class TestErr:
    """Tests for Err."""

    def test_unwrap_raises(self):
        error = ValueError("boom")
        with pytest.raises(ValueError, match="boom"):
            Err(error).unwrap()

    def test_unwrap_or(self):
        assert Err(ValueError()).unwrap_or(0) == 0
        assert Err(ValueError("x")).unwrap_or_else(lambda e: str(e)) == "x"

    def test_kind_reads_error(self):
        assert Err(PermanentError("no")).kind is FailureKind.NON_RETRYABLE
        assert Err(RuntimeError()).kind is FailureKind.RETRYABLE

    def test_map_skips_err(self):
        err = Err(ValueError("x"))
        assert err.map(lambda v: v * 2).is_err()

    def test_to_dict_keel_error(self):
        data = Err(PermanentError("no")).to_dict()
        assert data["ok"] is False
        assert data["error"]["error_type"] == "PermanentError"

    def test_to_dict_foreign_error(self):
        data = Err(KeyError("k")).to_dict()
        assert data["error"]["error_type"] == "KeyError"
        assert data["error"]["kind"] == "retryable"


class TestHelpers:
    """Tests for try_result and partition_results."""

    def test_try_result(self):
        assert try_result(lambda: 1) == Ok(1)
        assert try_result(lambda: 1 / 0).is_err()

    def test_partition_results(self):
        boom = ValueError("boom")
        values, errors = partition_results([Ok(1), Err(boom), Ok(2)])
        assert values == [1, 2]
        assert errors == [boom]
