"""Tests for the fault taxonomy and its translation."""

import pytest

from calculator_server.protocol.errors import (
    GENERIC_INTERNAL_MESSAGE,
    FaultCategory,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    NotFoundError,
    ParseError,
    PayloadTooLargeError,
    RateLimitedError,
    ServerError,
    fault_to_error,
    http_status_for,
    translate,
)


EXPECTED_CODES = {
    FaultCategory.PARSE_ERROR: -32700,
    FaultCategory.INVALID_REQUEST: -32600,
    FaultCategory.METHOD_NOT_FOUND: -32601,
    FaultCategory.INVALID_PARAMS: -32602,
    FaultCategory.INTERNAL_ERROR: -32603,
    FaultCategory.SERVER_ERROR: -32000,
    FaultCategory.NOT_FOUND: -32004,
    FaultCategory.PAYLOAD_TOO_LARGE: -32013,
    FaultCategory.RATE_LIMITED: -32029,
}


class TestTranslate:

    @pytest.mark.parametrize("category", list(FaultCategory))
    def test_every_category_maps(self, category):
        """Every category has a stable code and a non-empty message."""
        error = translate(category)
        assert error.code == EXPECTED_CODES[category]
        assert error.message

    def test_detail_is_used(self):
        error = translate(FaultCategory.INVALID_PARAMS, "Division by zero is not allowed.")
        assert error.message == "Division by zero is not allowed."

    def test_internal_detail_is_hidden(self):
        error = translate(FaultCategory.INTERNAL_ERROR, "KeyError: 'secret' at engine.py:42")
        assert error.message == GENERIC_INTERNAL_MESSAGE
        assert error.data is None

    def test_http_status(self):
        assert http_status_for(FaultCategory.PARSE_ERROR) == 400
        assert http_status_for(FaultCategory.RATE_LIMITED) == 429
        assert http_status_for(FaultCategory.PAYLOAD_TOO_LARGE) == 413
        assert http_status_for(FaultCategory.INTERNAL_ERROR) == 500


class TestFaults:

    @pytest.mark.parametrize("fault_class,code", [
        (ParseError, -32700),
        (InvalidRequestError, -32600),
        (MethodNotFoundError, -32601),
        (InvalidParamsError, -32602),
        (NotFoundError, -32004),
        (RateLimitedError, -32029),
        (PayloadTooLargeError, -32013),
        (ServerError, -32000),
    ])
    def test_fault_codes(self, fault_class, code):
        fault = fault_class("boom")
        assert fault.code == code
        assert fault_to_error(fault).code == code
        assert fault_to_error(fault).message == "boom"

    def test_default_message(self):
        assert str(RateLimitedError()) == "Too many requests. Please try again later."

    def test_http_status_override(self):
        fault = ServerError("Invalid Host header: evil.com", http_status=403)
        assert fault.http_status == 403
        assert ServerError().http_status == 400

    def test_data_is_carried(self):
        fault = InvalidParamsError("bad", data={"field": "a"})
        assert fault.to_error().data == {"field": "a"}

    def test_unexpected_exception_is_generic(self):
        error = fault_to_error(RuntimeError("database password is hunter2"))
        assert error.code == -32603
        assert error.message == GENERIC_INTERNAL_MESSAGE
