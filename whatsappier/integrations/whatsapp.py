"""Evolution API client used to send WhatsApp messages."""

from __future__ import annotations

from typing import Any

from ..automations.errors import PermanentDispatchError
from ..automations.models import Device
from .base import ApiClient


class EvolutionClient(ApiClient):
    service_name = "evolution"

    def __init__(self, base_url: str, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not base_url or not api_key:
            raise PermanentDispatchError("Evolution API URL or key is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    @classmethod
    def for_device(
        cls,
        device: Device,
        *,
        default_url: str | None = None,
        default_key: str | None = None,
        **kwargs: Any,
    ) -> "EvolutionClient":
        """Build a client for ``device``, falling back to the server-wide instance."""

        return cls(
            device.api_url or default_url or "",
            device.api_key or default_key or "",
            **kwargs,
        )

    def send_text(self, instance: str, number: str, text: str) -> dict[str, Any]:
        """Send ``text`` to ``number`` through the ``instance`` session.

        Returns the API response; the message id sits under ``key.id``.
        """

        return self._request(
            "POST",
            f"{self.base_url}/message/sendText/{instance}",
            headers={"apikey": self.api_key, "Content-Type": "application/json"},
            json={"number": number, "text": text},
        )


def message_id(response: dict[str, Any]) -> str | None:
    key = response.get("key") if isinstance(response, dict) else None
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    return None
