"""Lightfunnels webhook and checkout-script payloads."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..automations.models import Platform, TriggerKind
from .base import PayloadAdapter, as_mapping, as_text, dig, normalize_phone

TOPICS: dict[str, TriggerKind] = {
    "order/confirmed": TriggerKind.ORDER_CONFIRMED,
    "order/created": TriggerKind.ORDER_CONFIRMED,
    "order/fulfilled": TriggerKind.ORDER_FULFILLED,
    "checkout/created": TriggerKind.CHECKOUT_CREATED,
    "checkout/otp": TriggerKind.CHECKOUT_OTP_REQUESTED,
}


def _format_amount(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return as_text(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _country(address: Mapping[str, Any]) -> str | None:
    return as_text(address.get("country_code")) or as_text(address.get("country"))


def _payload_country(payload: Mapping[str, Any], name: str) -> str | None:
    return as_text(payload.get(f"{name}Country", payload.get(f"{name}_country")))


def checkout_phone(payload: Mapping[str, Any]) -> str | None:
    """Normalize the phone typed into the checkout OTP form.

    Used both when a code is requested and when it is verified, so both
    sides key the pending code identically.
    """

    return normalize_phone(
        payload.get("phone"),
        _payload_country(payload, "shipping"),
        _payload_country(payload, "billing"),
        payload.get("country"),
    )


def _prune(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class LightfunnelsAdapter(PayloadAdapter):
    platform = Platform.LIGHTFUNNELS
    kinds = frozenset(
        {
            TriggerKind.ORDER_CONFIRMED,
            TriggerKind.ORDER_FULFILLED,
            TriggerKind.CHECKOUT_CREATED,
            TriggerKind.CHECKOUT_OTP_REQUESTED,
        }
    )

    def kind_for_topic(self, topic: str) -> TriggerKind | None:
        return TOPICS.get(topic.strip().lower())

    def detect_kind(self, payload: Mapping[str, Any]) -> TriggerKind | None:
        node = payload.get("node")
        if isinstance(node, Mapping):
            if "recover_url" in node:
                return TriggerKind.CHECKOUT_CREATED
            if as_text(node.get("fulfillment_status")) == "fulfilled":
                return TriggerKind.ORDER_FULFILLED
            return TriggerKind.ORDER_CONFIRMED
        if "phone" in payload:
            return TriggerKind.CHECKOUT_OTP_REQUESTED
        return None

    def extract(
        self, kind: TriggerKind, payload: Mapping[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        if kind is TriggerKind.CHECKOUT_CREATED:
            return self._checkout(as_mapping(payload.get("node")))
        if kind is TriggerKind.CHECKOUT_OTP_REQUESTED:
            return self._otp_request(payload)
        return self._order(as_mapping(payload.get("node")))

    def _order(self, node: Mapping[str, Any]) -> tuple[str | None, dict[str, Any]]:
        customer = as_mapping(node.get("customer"))
        shipping = as_mapping(node.get("shipping_address"))
        billing = as_mapping(node.get("billing_address"))
        currency = as_text(node.get("currency"))
        total = _format_amount(node.get("total"))
        items = node.get("items")
        order_id = as_text(node.get("id"))
        countries = (_country(shipping), _country(billing))
        fields = {
            "order_id": order_id,
            "order_number": as_text(node.get("name")),
            "customer_name": as_text(customer.get("full_name"))
            or as_text(shipping.get("first_name")),
            "customer_email": as_text(node.get("email")) or as_text(customer.get("email")),
            "customer_phone": normalize_phone(node.get("phone"), *countries)
            or normalize_phone(customer.get("phone"), *countries)
            or normalize_phone(shipping.get("phone"), *countries),
            "total_amount": f"{total} {currency or 'USD'}" if total else None,
            "subtotal": _format_amount(node.get("subtotal")),
            "currency": currency,
            "funnel_id": as_text(node.get("funnel_id")),
            "store_id": as_text(node.get("store_id")),
            "financial_status": as_text(node.get("financial_status")),
            "fulfillment_status": as_text(node.get("fulfillment_status")),
            "shipping_country": countries[0],
            "shipping_city": as_text(shipping.get("city")),
            "billing_country": countries[1],
            "item_count": str(len(items)) if isinstance(items, list) else None,
            "created_at": as_text(node.get("created_at")),
            "is_test": node.get("test") if isinstance(node.get("test"), bool) else None,
        }
        return order_id, _prune(fields)

    def _checkout(self, node: Mapping[str, Any]) -> tuple[str | None, dict[str, Any]]:
        checkout_id = as_text(node.get("id"))
        shipping = as_mapping(node.get("shipping_address"))
        countries = (_country(shipping), _country(as_mapping(node.get("billing_address"))))
        fields = {
            "checkout_id": checkout_id,
            "customer_name": as_text(dig(node, "customer", "full_name"))
            or as_text(shipping.get("first_name")),
            "customer_email": as_text(node.get("contact_email")),
            "customer_phone": normalize_phone(node.get("contact_phone"), *countries)
            or normalize_phone(shipping.get("phone"), *countries),
            "recovery_url": as_text(node.get("recover_url")),
            "funnel_id": as_text(node.get("funnel_id")),
            "shipping_country": countries[0],
            "billing_country": countries[1],
            "created_at": as_text(node.get("created_at")),
        }
        return checkout_id, _prune(fields)

    def _otp_request(
        self, payload: Mapping[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        phone = checkout_phone(payload)
        is_test = payload.get("isTest", payload.get("is_test"))
        fields = {
            "phone": phone,
            "customer_phone": phone,
            "email": as_text(payload.get("email")),
            "is_test": is_test if isinstance(is_test, bool) else None,
            "shipping_country": _payload_country(payload, "shipping"),
            "billing_country": _payload_country(payload, "billing"),
        }
        return phone, _prune(fields)
