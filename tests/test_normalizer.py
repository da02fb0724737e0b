import pytest

from whatsappier.automations.errors import (
    EmptyPayload,
    IgnoredPayload,
    MissingCorrelationKey,
    UnsupportedPayload,
)
from whatsappier.automations.models import Platform, SourceHint, TriggerKind
from whatsappier.automations.normalizer import normalize
from whatsappier.channels import get_adapter
from whatsappier.channels.base import normalize_phone

from conftest import checkout_payload, order_payload, reply_payload


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+212 600-123456", "212600123456"),
        ("00212600123456", "212600123456"),
        ("212600123456@s.whatsapp.net", "212600123456"),
        ("1234567", None),
        ("", None),
        (None, None),
        (212600123456, "212600123456"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize(
    "raw, countries, expected",
    [
        ("0612345678", ("MA",), "212612345678"),
        ("0612345678", (None, "ma"), "212612345678"),
        ("06 12 34 56 78", ("FR",), "33612345678"),
        ("0612345678", ("Morocco",), None),
        ("0612345678", (), None),
        ("+212612345678", ("FR",), "212612345678"),
    ],
)
def test_normalize_phone_resolves_national_numbers(raw, countries, expected):
    assert normalize_phone(raw, *countries) == expected


def test_local_order_phone_uses_shipping_country():
    event = normalize(
        SourceHint(),
        order_payload(phone="0612345678", shipping_address={"country": "MA"}),
    )
    assert event.fields["customer_phone"] == "212612345678"


def test_local_order_phone_falls_back_to_billing_country():
    event = normalize(
        SourceHint(),
        order_payload(
            phone="0612345678",
            shipping_address={"city": "Rabat"},
            billing_address={"country_code": "MA"},
        ),
    )
    assert event.fields["customer_phone"] == "212612345678"


def test_local_checkout_phone_uses_shipping_country():
    event = normalize(
        SourceHint(),
        checkout_payload(contact_phone="0612345678", shipping_address={"country": "MA"}),
    )
    assert event.fields["customer_phone"] == "212612345678"


def test_local_otp_phone_uses_checkout_country():
    event = normalize(SourceHint(), {"phone": "0612345678", "shippingCountry": "MA"})
    assert event.correlation_key == "212612345678"


def test_order_payload_extracts_named_fields():
    event = normalize(SourceHint(), order_payload())

    assert event.kind is TriggerKind.ORDER_CONFIRMED
    assert event.source_platform is Platform.LIGHTFUNNELS
    assert event.correlation_key == "ord-1"
    assert event.partition_key == "LIGHTFUNNELS:ord-1"
    fields = event.fields
    assert fields["customer_name"] == "Ana Lopez"
    assert fields["customer_phone"] == "212600123456"
    assert fields["total_amount"] == "49.9 MAD"
    assert fields["subtotal"] == "45"
    assert fields["shipping_country"] == "MA"
    assert fields["billing_country"] == "MA"
    assert fields["item_count"] == "2"
    assert event.raw_payload == order_payload()


def test_order_without_currency_defaults_to_usd():
    payload = order_payload(currency=None, total=10)
    event = normalize(SourceHint(), payload)
    assert event.fields["total_amount"] == "10 USD"
    assert "currency" not in event.fields


def test_malformed_optional_structures_are_left_out():
    payload = order_payload(customer="not-a-dict", shipping_address=[1, 2], items="x")
    event = normalize(SourceHint(), payload)

    assert event.correlation_key == "ord-1"
    assert "customer_name" not in event.fields
    assert "shipping_city" not in event.fields
    assert "item_count" not in event.fields
    # phone still comes from the order node itself
    assert event.fields["customer_phone"] == "212600123456"


def test_fulfilled_order_detected_from_shape():
    event = normalize(SourceHint(), order_payload(fulfillment_status="fulfilled"))
    assert event.kind is TriggerKind.ORDER_FULFILLED


def test_topic_takes_precedence_over_shape():
    hint = SourceHint(platform=Platform.LIGHTFUNNELS, topic="order/fulfilled")
    event = normalize(hint, order_payload())
    assert event.kind is TriggerKind.ORDER_FULFILLED


def test_explicit_kind_takes_precedence_over_topic():
    hint = SourceHint(
        platform=Platform.LIGHTFUNNELS,
        kind=TriggerKind.ORDER_CONFIRMED,
        topic="order/fulfilled",
    )
    assert normalize(hint, order_payload()).kind is TriggerKind.ORDER_CONFIRMED


def test_checkout_payload():
    event = normalize(SourceHint(), checkout_payload())

    assert event.kind is TriggerKind.CHECKOUT_CREATED
    assert event.correlation_key == "chk-1"
    assert event.fields["recovery_url"] == "https://x/y"
    assert event.fields["customer_phone"] == "212600123456"
    assert event.fields["customer_name"] == "Ana"


def test_otp_request_keyed_by_phone():
    payload = {"phone": "+212 600 123 456", "email": "a@b.c", "isTest": True}
    event = normalize(SourceHint(), payload)

    assert event.kind is TriggerKind.CHECKOUT_OTP_REQUESTED
    assert event.correlation_key == "212600123456"
    assert event.fields["is_test"] is True
    assert event.fields["email"] == "a@b.c"


def test_whatsapp_reply_payload():
    hint = SourceHint(platform=Platform.WHATSAPP, instance_name="shop-1")
    event = normalize(hint, reply_payload("Yes please"))

    assert event.kind is TriggerKind.GENERIC_REPLY
    assert event.source_platform is Platform.WHATSAPP
    assert event.correlation_key == "212600123456"
    assert event.fields["reply_text"] == "Yes please"
    assert event.fields["instance_name"] == "shop-1"


def test_extended_text_reply_is_read():
    payload = reply_payload()
    payload["data"]["message"] = {"extendedTextMessage": {"text": "ok"}}
    assert normalize(SourceHint(), payload).fields["reply_text"] == "ok"


@pytest.mark.parametrize("payload", [{}, [], "text", None])
def test_empty_or_non_object_payload(payload):
    with pytest.raises(EmptyPayload):
        normalize(SourceHint(), payload)


def test_unknown_shape_is_unsupported():
    with pytest.raises(UnsupportedPayload):
        normalize(SourceHint(), {"hello": "world"})


def test_missing_correlation_key():
    with pytest.raises(MissingCorrelationKey):
        normalize(SourceHint(), order_payload(order_id=None))


def test_short_phone_cannot_key_an_otp_request():
    with pytest.raises(MissingCorrelationKey):
        normalize(SourceHint(), {"phone": "12345"})


@pytest.mark.parametrize(
    "payload",
    [
        reply_payload(from_me=True),
        {
            **reply_payload(),
            "data": {"key": {"remoteJid": "123-456@g.us"}, "message": {"conversation": "hi"}},
        },
        {**reply_payload(), "data": {"key": {"remoteJid": "212600123456@s.whatsapp.net"}}},
    ],
)
def test_ignored_whatsapp_messages(payload):
    with pytest.raises(IgnoredPayload):
        normalize(SourceHint(platform=Platform.WHATSAPP), payload)


def test_get_adapter_unknown_platform():
    with pytest.raises(KeyError):
        get_adapter("myspace")
    with pytest.raises(KeyError):
        get_adapter(Platform.SHOPIFY)
    assert get_adapter("lightfunnels").platform is Platform.LIGHTFUNNELS
