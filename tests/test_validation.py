from datetime import datetime, timedelta, timezone

import pytest

from signalforge.errors import PayloadTooLarge, ValidationError
from signalforge.validation.events import (
    bucket_timestamp,
    check_payload_limits,
    compute_dedupe_key,
    extract_transaction_id,
    normalize_event_type,
    to_utc_naive,
)


@pytest.mark.parametrize("name,expected", [
    ("Page View", "page_view"),
    ("view_item", "product_view"),
    ("Product Added", "add_to_cart"),
    ("checkout_started", "begin_checkout"),
    ("Placed Order", "purchase"),
    ("collection_viewed", "collection_view"),
    ("product_removed", "remove_from_cart"),
    ("wishlist_add", "custom"),
])
def test_normalize_event_type(name, expected):
    assert normalize_event_type(name) == expected


def test_page_view_on_product_path_is_product_view():
    assert normalize_event_type("page_view", {}, {"page": {"path": "/products/blue-shirt"}}) == "product_view"
    assert normalize_event_type("page_view", {"path": "/collections/all"}) == "page_view"


def test_page_context_may_be_a_plain_url():
    assert normalize_event_type("page_view", {}, {"page": "https://shop/products/x"}) == "product_view"
    assert normalize_event_type("page_view", {}, {"page": "https://shop/cart"}) == "page_view"
    assert normalize_event_type("page_view", {"path": "/products/y"}, {"page": {"title": "Y"}}) == "product_view"
    assert normalize_event_type("page_view", {}, {"page": 7}) == "page_view"


def test_transaction_id_priority():
    props = {"order_id": "o-1", "cart_token": "c-1", "checkout_id": ""}
    assert extract_transaction_id(props) == "c-1"
    assert extract_transaction_id({"token": 42}) == "42"
    assert extract_transaction_id({}) is None


def test_bucket_timestamp_floors_to_five_minutes():
    assert bucket_timestamp(datetime(2024, 3, 1, 10, 7, 59)) == "2024-03-01-10-05"
    assert bucket_timestamp(datetime(2024, 3, 1, 10, 10, 0)) == "2024-03-01-10-10"


def test_to_utc_naive_variants():
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_utc_naive(aware) == datetime(2024, 1, 1, 10, 0)
    assert to_utc_naive("2024-01-01T10:00:00Z") == datetime(2024, 1, 1, 10, 0)
    assert to_utc_naive(1704103200) == datetime(2024, 1, 1, 10, 0)
    assert to_utc_naive(1704103200000) == datetime(2024, 1, 1, 10, 0)
    with pytest.raises(ValidationError):
        to_utc_naive("yesterday")


def test_dedupe_key_bucketed_for_non_transactional_events():
    t = datetime(2024, 3, 1, 10, 1)
    a = compute_dedupe_key("ws", "page_view", "page_view", {}, "anon", "s1", t)
    b = compute_dedupe_key("ws", "page_view", "page_view", {}, "anon", "s1", t + timedelta(minutes=3))
    c = compute_dedupe_key("ws", "page_view", "page_view", {}, "anon", "s1", t + timedelta(minutes=6))
    assert a == b
    assert a != c


def test_dedupe_key_for_transactions_ignores_time():
    t = datetime(2024, 3, 1, 10, 1)
    a = compute_dedupe_key("ws", "add_to_cart", "add_to_cart", {"cart_token": "ct"}, "anon", None, t)
    b = compute_dedupe_key("ws", "add_to_cart", "add_to_cart", {"cart_token": "ct"}, "other", None, t + timedelta(days=1))
    assert a == b
    assert compute_dedupe_key("ws2", "add_to_cart", "add_to_cart", {"cart_token": "ct"}, None, None, t) != a


def test_transaction_without_any_key_is_rejected():
    with pytest.raises(ValidationError) as exc:
        compute_dedupe_key("ws", "begin_checkout", "begin_checkout", {}, None, None, datetime.utcnow())
    assert exc.value.message == "missing_transaction_id"


def test_payload_limits():
    check_payload_limits("properties", {"a": {"b": 1}})
    with pytest.raises(PayloadTooLarge):
        check_payload_limits("properties", {"blob": "x" * 20000})
    nested: dict = {}
    cur = nested
    for _ in range(12):
        cur["n"] = {}
        cur = cur["n"]
    with pytest.raises(ValidationError) as exc:
        check_payload_limits("traits", nested)
    assert exc.value.message == "traits_too_deep"
