"""Tests for the structured error types and secret masking."""

import pytest

from b24sdk.core.errors import (
    ApiError,
    ErrorMessage,
    SdkError,
    TransportError,
    _mask_dict_values,
    _mask_sensitive_data,
)

pytestmark = [pytest.mark.unit]


def test_webhook_secret_is_masked():
    masked = _mask_sensitive_data("POST https://portal.bitrix24.com/rest/1/abcdef123456/crm.item.list")

    assert "abcdef123456" not in masked
    assert "/rest/1/***" in masked


def test_v3_webhook_secret_is_masked():
    masked = _mask_sensitive_data("https://portal.bitrix24.com/rest/api/7/q1w2e3r4t5/crm.item.list")

    assert "q1w2e3r4t5" not in masked


def test_token_pairs_are_masked():
    assert _mask_sensitive_data("auth=abc123&x=1") == "auth=***&x=1"


def test_nested_dict_masking():
    masked = _mask_dict_values({"webhook": "https://x/rest/1/abcdef123/", "nested": {"token": 123}, "n": 1})

    assert masked["webhook"] == "https://x/rest/1/***/"
    assert masked["nested"]["token"] == "***"
    assert masked["n"] == 1


def test_to_dict_masks_context():
    error = TransportError(
        error_code="NETWORK_ERROR",
        message="Connection refused to https://portal.bitrix24.com/rest/1/abcdef123456/",
        context={"url": "https://portal.bitrix24.com/rest/1/abcdef123456/crm.item.list"},
    )

    data = error.to_dict()

    assert data["kind"] == "TransportError"
    assert "abcdef123456" not in data["message"]
    assert "abcdef123456" not in data["context"]["url"]
    assert "abcdef123456" not in str(error)


def test_empty_error_code_is_rejected():
    with pytest.raises(ValueError):
        SdkError(error_code="", message="x")


def test_api_error_from_messages():
    error = ApiError.from_messages(
        [ErrorMessage("ERROR_CORE", "first"), ErrorMessage("ERROR_ARGUMENT", "second")],
        status=400,
    )

    assert error.error_code == "ERROR_CORE"
    assert error.message == "ERROR_CORE: first; ERROR_ARGUMENT: second"
    assert len(error.errors) == 2


def test_errors_are_exceptions():
    with pytest.raises(SdkError):
        raise TransportError(error_code="NETWORK_ERROR", message="down")
