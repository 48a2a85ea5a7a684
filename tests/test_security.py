import json
import logging

from starlette.requests import Request

from shared.logging_config import JSONFormatter, RequestContextFilter, mask_session, request_id_var, identity_var
from shared.security_config import sanitize_input, validate_cache_pattern, shopper_key


def make_request(user_id=None):
    request = Request({"type": "http", "method": "GET", "path": "/", "headers": [], "client": ("10.0.0.7", 4000)})
    if user_id:
        request.state.user_id = user_id
    return request


def test_sanitize_input():
    assert sanitize_input("  <b>Leave at door</b>\x00 ") == "&lt;b&gt;Leave at door&lt;/b&gt;"
    assert sanitize_input(None) is None


def test_cache_pattern_validation():
    assert validate_cache_pattern("products:*_user_cust-a")
    assert validate_cache_pattern("*")
    assert not validate_cache_pattern("")
    assert not validate_cache_pattern("cart:* ; FLUSHALL")
    assert not validate_cache_pattern("tag:sku:*")
    assert not validate_cache_pattern("x" * 201)


def test_rate_limit_key_prefers_customer():
    assert shopper_key(make_request("cust-a")) == "customer:cust-a"
    assert shopper_key(make_request()) == "10.0.0.7"


def test_mask_session():
    assert mask_session("abc") == "session:***"
    assert mask_session("guest-123456") == "session:gues***"


def test_log_lines_carry_request_context():
    record = logging.LogRecord("storefront", logging.INFO, __file__, 1, "Added item", None, None)
    record.sku = "VALVE-1"
    rid, ident = request_id_var.set("req-9"), identity_var.set("customer:cust-a")
    try:
        RequestContextFilter().filter(record)
    finally:
        request_id_var.reset(rid)
        identity_var.reset(ident)

    line = json.loads(JSONFormatter("storefront-service").format(record))

    assert line["request_id"] == "req-9"
    assert line["identity"] == "customer:cust-a"
    assert line["sku"] == "VALVE-1"
    assert line["service"] == "storefront-service"
    assert "order_id" not in line


def test_explicit_identity_is_kept():
    record = logging.LogRecord("storefront", logging.INFO, __file__, 1, "Merged", None, None)
    record.identity = "cust-b"
    RequestContextFilter().filter(record)
    assert record.identity == "cust-b"
    assert record.request_id is None
