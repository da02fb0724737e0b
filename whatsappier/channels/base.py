"""Base abstractions for platform payload adapters."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import phonenumbers

from ..automations.models import Platform, TriggerKind

_NON_DIGITS = re.compile(r"\D")
MIN_PHONE_DIGITS = 8


def as_mapping(value: Any) -> Mapping[str, Any]:
    """Return ``value`` when it is a mapping, otherwise an empty one."""

    return value if isinstance(value, Mapping) else {}


def as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (Mapping, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def dig(data: Any, *path: str) -> Any:
    """Walk nested mappings, returning ``None`` at the first gap."""

    current = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _regions(countries: tuple[Any, ...]) -> list[str]:
    regions: list[str] = []
    for country in countries:
        code = as_text(country)
        if code and len(code) == 2 and code.isalpha() and code.upper() not in regions:
            regions.append(code.upper())
    return regions


def _valid_e164(candidate: str, region: str | None) -> str | None:
    try:
        number = phonenumbers.parse(candidate, region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(number):
        return None
    return phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)[1:]


def normalize_phone(value: Any, *countries: Any) -> str | None:
    """Reduce a phone number (or WhatsApp JID) to international digits.

    ``+212 600-123456``, ``00212600123456`` and
    ``212600123456@s.whatsapp.net`` all normalize to ``212600123456``. A
    national number such as ``0612345678`` is resolved against each
    ISO country code in ``countries`` in turn (shipping before billing),
    then read as an international number. Numbers that no region accepts
    as valid are rejected.
    """

    text = as_text(value)
    if text is None:
        return None
    text = text.split("@", 1)[0]
    international = text.startswith("+")
    digits = _NON_DIGITS.sub("", text)
    if digits.startswith("00"):
        digits = digits[2:]
        international = True
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    candidate = f"+{digits}" if international else digits
    for region in _regions(countries):
        normalized = _valid_e164(candidate, region)
        if normalized:
            return normalized
    return _valid_e164(f"+{digits}", None)


class PayloadAdapter(ABC):
    """Turns one platform's webhook payloads into trigger event fields."""

    #: Platform whose payloads this adapter understands.
    platform: Platform
    #: Event kinds this adapter can extract.
    kinds: frozenset[TriggerKind] = frozenset()

    def verify_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        """Check the authenticity of a raw webhook delivery.

        Platforms that sign their deliveries override this; the default
        accepts every request.
        """

        return True

    def kind_for_topic(self, topic: str) -> TriggerKind | None:
        """Map a platform topic name (``order/confirmed``) to an event kind."""

        return None

    @abstractmethod
    def detect_kind(self, payload: Mapping[str, Any]) -> TriggerKind | None:
        """Guess the event kind from the payload shape alone."""

    @abstractmethod
    def extract(
        self, kind: TriggerKind, payload: Mapping[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        """Return the correlation key and the named fields for ``kind``.

        Every optional field is extracted independently; a malformed nested
        structure leaves that field out instead of failing.
        """
