"""
Delivery Error Classification Tests (Unit)
==========================================

WHAT: Unit tests for retryable/fatal classification, backoff and job ids.
WHY: A wrong classification either drops a payable conversion (retryable
     treated as fatal) or hammers Market!N with a payload it will never accept.

REFERENCES:
- backend/orderbridge/services/conversion_queue.py
"""

from datetime import timedelta

import httpx
import pytest

from orderbridge.services.conversion_queue import (
    BACKOFF_DELAYS,
    backoff_delay,
    build_job_id,
    classify_error,
    error_code_for,
    error_message_for,
    is_retryable_error,
)
from orderbridge.services.marketin_client import MarketinAPIError


@pytest.mark.parametrize(
    "status_code, retryable, category",
    [
        (500, True, "server"),
        (503, True, "server"),
        (429, True, "rate_limited"),
        (408, True, "timeout"),
        (400, False, "client"),
        (401, False, "client"),
        (404, False, "client"),
        (422, False, "client"),
        (302, True, "unclassified"),
    ],
)
def test_classification_by_status(status_code, retryable, category) -> None:
    classification = classify_error(MarketinAPIError("x", status_code=status_code))

    assert (classification.retryable, classification.category) == (retryable, category)


def test_network_errors_are_retryable() -> None:
    request = httpx.Request("POST", "https://api.example.com/conversions")

    assert classify_error(MarketinAPIError("down", code="NETWORK_ERROR")).category == "network"
    assert classify_error(MarketinAPIError("slow", code="TIMEOUT")).category == "network"
    assert classify_error(httpx.ConnectError("refused", request=request)).category == "network"


def test_status_read_from_attached_response() -> None:
    request = httpx.Request("POST", "https://api.example.com/conversions")
    response = httpx.Response(400, request=request)
    error = httpx.HTTPStatusError("bad", request=request, response=response)

    assert is_retryable_error(error) is False


def test_unknown_exception_without_status_is_retried() -> None:
    classification = classify_error(ValueError("unexpected"))

    assert classification.retryable is True
    assert classification.category == "unclassified"


def test_backoff_schedule_is_non_decreasing_and_clamped() -> None:
    delays = [backoff_delay(attempts) for attempts in range(1, 9)]

    assert delays[:5] == [timedelta(seconds=s) for s in BACKOFF_DELAYS]
    assert delays == sorted(delays)
    assert delays[-1] == timedelta(hours=2)
    assert backoff_delay(0) == timedelta(seconds=30)


def test_error_code_and_message() -> None:
    rejected = MarketinAPIError("HTTP 422", status_code=422, response_body={"message": "Unknown campaign"})

    assert error_code_for(rejected) == "HTTP_422"
    assert error_message_for(rejected) == "Unknown campaign"
    assert error_code_for(MarketinAPIError("slow", code="TIMEOUT")) == "TIMEOUT"
    assert error_code_for(RuntimeError("boom")) == "UNKNOWN"
    assert error_message_for(RuntimeError()) == "RuntimeError"


def test_job_id_is_deterministic_per_brand_and_order() -> None:
    payload = {"brandId": "b1", "externalOrderId": "o1"}

    assert build_job_id(payload) == "conv_b1_o1"
    assert build_job_id(dict(payload)) == build_job_id(payload)
    assert build_job_id({"brandId": "b1"}) != build_job_id({"brandId": "b1"})
