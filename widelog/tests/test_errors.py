# widelog/tests/test_errors.py
import httpx
import pytest

from widelog.errors import (
    ConfigError,
    StructuredError,
    create_error,
    parse_error,
    resolve_structured_error,
    serialize_error_response,
)


def _payment_error():
    return StructuredError(
        "Payment processing failed",
        status=400,
        why="Card declined",
        fix="Try a different payment method",
        link="https://docs.example.com/payments",
    )


def test_structured_error_fields_are_read_only():
    err = _payment_error()
    assert err.status == 400
    assert err.status_code == 400
    assert err.data == {
        "why": "Card declined",
        "fix": "Try a different payment method",
        "link": "https://docs.example.com/payments",
    }
    with pytest.raises(AttributeError):
        err.status = 500


def test_structured_error_str_is_readable():
    text = str(_payment_error())
    assert text.splitlines()[0] == "Error: Payment processing failed"
    assert "Why: Card declined" in text
    assert "Fix: Try a different payment method" in text


def test_structured_error_can_be_raised_and_keeps_cause():
    cause = ValueError("card number invalid")
    with pytest.raises(StructuredError) as ei:
        raise StructuredError("bad card", status=422, cause=cause)
    assert ei.value.__cause__ is cause
    assert ei.value.to_dict()["cause"] == {"name": "ValueError", "message": "card number invalid"}


def test_create_error_from_mapping_and_string():
    err = create_error({"message": "nope", "status": 404, "why": "missing"})
    assert (err.message, err.status, err.why) == ("nope", 404, "missing")
    assert create_error("plain").status == 500


def test_resolve_structured_error_through_cause():
    inner = _payment_error()
    try:
        try:
            raise inner
        except StructuredError as e:
            raise RuntimeError("wrapped") from e
    except RuntimeError as outer:
        assert resolve_structured_error(outer) is inner


def test_serialize_error_response():
    body = serialize_error_response(_payment_error(), "/api/checkout")
    assert body["url"] == "/api/checkout"
    assert body["status"] == 400
    assert body["error"] is True
    assert body["data"]["why"] == "Card declined"

    plain = serialize_error_response(RuntimeError("x"), "/a")
    assert plain["status"] == 500
    assert "data" not in plain


def test_parse_error_from_http_status_error():
    request = httpx.Request("POST", "https://example.com/api/checkout")
    response = httpx.Response(
        402,
        json={"status": 402, "message": "Payment failed", "data": {"why": "declined", "fix": "retry"}},
        request=request,
    )
    exc = httpx.HTTPStatusError("402", request=request, response=response)
    parsed = parse_error(exc)
    assert parsed.status == 402
    assert parsed.message == "Payment failed"
    assert parsed.why == "declined"
    assert parsed.fix == "retry"


def test_parse_error_plain_values():
    assert parse_error(ValueError("boom")).status == 500
    assert parse_error("text").message == "text"
    assert parse_error(_payment_error()).why == "Card declined"


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


@pytest.mark.parametrize("status", ["not-a-number", None, "", True, [402]])
def test_parse_error_tolerates_bad_status_in_body(status):
    request = httpx.Request("GET", "https://example.com/api/orders")
    response = httpx.Response(503, json={"status": status, "message": "Upstream down"}, request=request)
    parsed = parse_error(httpx.HTTPStatusError("503", request=request, response=response))
    assert parsed.status == 503
    assert parsed.message == "Upstream down"
