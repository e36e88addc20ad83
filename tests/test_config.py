"""Tests for configuration helpers."""

import os
from unittest import mock

from config import get_bool_env, get_float_env, get_int_env


class TestGetIntEnv:
    """Tests for get_int_env."""

    def test_returns_default_when_not_set(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("VSP_TEST_INT", 42) == 42

    def test_parses_valid_integer(self):
        with mock.patch.dict(os.environ, {"VSP_TEST_INT": "123"}):
            assert get_int_env("VSP_TEST_INT", 42) == 123

    def test_invalid_value_returns_default(self, caplog):
        with mock.patch.dict(os.environ, {"VSP_TEST_INT": "abc"}):
            assert get_int_env("VSP_TEST_INT", 42) == 42
        assert "Invalid VSP_TEST_INT" in caplog.text

    def test_below_minimum_returns_default(self):
        with mock.patch.dict(os.environ, {"VSP_TEST_INT": "0"}):
            assert get_int_env("VSP_TEST_INT", 3, min_val=1) == 3

    def test_above_maximum_returns_default(self):
        with mock.patch.dict(os.environ, {"VSP_TEST_INT": "70000"}):
            assert get_int_env("VSP_TEST_INT", 8080, min_val=1, max_val=65535) == 8080


class TestGetFloatEnv:
    def test_parses_valid_float(self):
        with mock.patch.dict(os.environ, {"VSP_TEST_FLOAT": "2.5"}):
            assert get_float_env("VSP_TEST_FLOAT", 1.0) == 2.5

    def test_rejects_special_values(self):
        for value in ("inf", "-inf", "nan"):
            with mock.patch.dict(os.environ, {"VSP_TEST_FLOAT": value}):
                assert get_float_env("VSP_TEST_FLOAT", 1.0) == 1.0

    def test_below_minimum_returns_default(self):
        with mock.patch.dict(os.environ, {"VSP_TEST_FLOAT": "0.01"}):
            assert get_float_env("VSP_TEST_FLOAT", 10.0, min_val=0.1) == 10.0


class TestGetBoolEnv:
    def test_default_when_not_set(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("VSP_TEST_BOOL", True) is True

    def test_truthy_values(self):
        for value in ("true", "TRUE", "1", "yes", " Yes "):
            with mock.patch.dict(os.environ, {"VSP_TEST_BOOL": value}):
                assert get_bool_env("VSP_TEST_BOOL", False) is True

    def test_other_values_are_false(self):
        for value in ("false", "0", "no", ""):
            with mock.patch.dict(os.environ, {"VSP_TEST_BOOL": value}):
                assert get_bool_env("VSP_TEST_BOOL", True) is False
