"""Continuations run when a pending reply is answered."""

from __future__ import annotations

import hmac
import json
import logging
import re
from collections.abc import Callable
from typing import Any, Dict, Optional, Protocol

import openai
from openai import OpenAI

from .errors import ResourceResolutionError
from .models import Connection, PendingReply, TriggerEvent
from .repository import ConnectionStore

logger = logging.getLogger(__name__)

CONFIRM = "CONFIRM"
DECLINE = "DECLINE"
UNCLEAR = "UNCLEAR"

ORDER_TAGS = {
    CONFIRM: ["confirmed"],
    DECLINE: ["not-confirmed"],
    UNCLEAR: ["unclear"],
}

_CONFIRM_WORDS = {
    "yes", "y", "yeah", "yep", "ok", "okay", "confirm", "confirmed", "sure",
    "proceed", "si", "sí", "oui", "ja", "sim", "wakha", "ah", "ayh", "نعم", "تمام",
}
_DECLINE_WORDS = {
    "no", "n", "nope", "cancel", "stop", "decline", "non", "nein", "nao", "não",
    "لا",
}
_CONFIRM_SYMBOLS = ("👍", "✅")
_DECLINE_SYMBOLS = ("👎", "❌")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def classify_reply(text: str) -> str:
    """Classify a free-text order reply as confirm, decline or unclear.

    Mixed signals are unclear.
    """

    lowered = (text or "").strip().lower()
    words = set(_WORD_RE.findall(lowered))
    confirm = bool(words & _CONFIRM_WORDS) or any(s in lowered for s in _CONFIRM_SYMBOLS)
    decline = bool(words & _DECLINE_WORDS) or any(s in lowered for s in _DECLINE_SYMBOLS)
    if confirm and not decline:
        return CONFIRM
    if decline and not confirm:
        return DECLINE
    return UNCLEAR


class ReplyClassifier(Protocol):
    def classify(self, reply_text: str, message_text: str | None = None) -> str: ...


class KeywordReplyClassifier:
    """Offline classifier backed by :func:`classify_reply`."""

    def classify(self, reply_text: str, message_text: str | None = None) -> str:
        return classify_reply(reply_text)


CLASSIFIER_INSTRUCTIONS = (
    "You read a customer's WhatsApp reply to a seller's order confirmation "
    "message and decide what the customer means. Answer CONFIRM when the "
    "customer agrees to the order in any language or with an approving emoji. "
    "Answer DECLINE when the customer refuses or wants to cancel. Answer "
    "UNCLEAR for questions, unrelated messages and mixed signals. Respond with "
    'a JSON object of the form {"classification": "CONFIRM"}.'
)


def parse_classification(content: Any) -> Optional[str]:
    """Read the label out of a model response, or ``None`` if there is none."""

    if not isinstance(content, str) or not content.strip():
        return None
    try:
        data = json.loads(content)
    except ValueError:
        data = content
    value = data.get("classification") if isinstance(data, dict) else data
    if not isinstance(value, str):
        return None
    label = value.strip().strip('"').upper()
    return label if label in ORDER_TAGS else None


class OpenAIReplyClassifier:
    """Ask a chat model to label the reply; keywords decide when it cannot."""

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        fallback: ReplyClassifier | None = None,
    ) -> None:
        self._client = client
        self.model = model
        self.fallback = fallback or KeywordReplyClassifier()

    def classify(self, reply_text: str, message_text: str | None = None) -> str:
        prompt = (
            f'WhatsApp Message (Seller): "{message_text or ""}"\n\n'
            f'Customer Reply: "{reply_text}"'
        )
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": CLASSIFIER_INSTRUCTIONS},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.2,
                max_tokens=50,
                response_format={"type": "json_object"},
            )
            content = completion.choices[0].message.content
        except openai.OpenAIError as exc:
            logger.warning("OpenAI reply classification failed: %s", exc)
            return self.fallback.classify(reply_text, message_text)
        classification = parse_classification(content)
        if classification is None:
            logger.warning("Unusable classification %r; falling back to keywords", content)
            return self.fallback.classify(reply_text, message_text)
        return classification


def build_reply_classifier(
    api_key: str | None, *, model: str, timeout: float
) -> ReplyClassifier:
    """OpenAI-backed classifier when ``api_key`` is set, keywords otherwise."""

    if not api_key:
        return KeywordReplyClassifier()
    return OpenAIReplyClassifier(OpenAI(api_key=api_key, timeout=timeout), model=model)


class OrderConfirmationHandler:
    """Tags the Lightfunnels order according to the customer's reply."""

    def __init__(
        self,
        connections: ConnectionStore,
        client_factory: Callable[[Connection], Any],
        classifier: ReplyClassifier | None = None,
    ) -> None:
        self._connections = connections
        self._client_factory = client_factory
        self.classifier = classifier or KeywordReplyClassifier()

    def accepts(self, pending: PendingReply, reply: TriggerEvent) -> bool:
        return bool(reply.fields.get("reply_text"))

    def on_resolved(self, pending: PendingReply, reply: TriggerEvent) -> Dict[str, Any]:
        order_id = pending.context.get("order_id")
        connection_id = pending.context.get("connection_id")
        connection = (
            self._connections.get_connection(connection_id) if connection_id else None
        )
        if connection is None or not connection.is_active:
            raise ResourceResolutionError(
                f"Lightfunnels connection {connection_id} is missing or inactive"
            )
        if not order_id:
            raise ResourceResolutionError("Pending reply carries no order id")
        classification = self.classifier.classify(
            reply.fields.get("reply_text", ""), pending.context.get("message_text")
        )
        tags = ORDER_TAGS[classification]
        client = self._client_factory(connection)
        client.update_order_tags(order_id, tags)
        logger.info("Order %s tagged %s from reply", order_id, tags)
        return {"classification": classification, "order_id": order_id, "tags": tags}


class OtpCodeHandler:
    """Accepts the reply when it carries the code that was sent."""

    def accepts(self, pending: PendingReply, reply: TriggerEvent) -> bool:
        expected = str(pending.context.get("code") or "")
        received = str(reply.fields.get("code") or "").strip()
        if not expected or not received:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))

    def on_resolved(self, pending: PendingReply, reply: TriggerEvent) -> Dict[str, Any]:
        return {"verified": True, "phone": pending.destination}


__all__ = [
    "KeywordReplyClassifier",
    "OpenAIReplyClassifier",
    "OrderConfirmationHandler",
    "OtpCodeHandler",
    "build_reply_classifier",
    "classify_reply",
    "parse_classification",
]
