"""Lightfunnels GraphQL client."""

from __future__ import annotations

from typing import Any

from ..automations.errors import PermanentDispatchError
from ..automations.models import Connection
from .base import ApiClient

UPDATE_ORDER_MUTATION = """
mutation UpdateOrderMutation($id: ID!, $node: InputOrder!) {
  updateOrder(id: $id, node: $node) {
    id
    tags
    updated_at
  }
}
"""


class LightfunnelsClient(ApiClient):
    service_name = "lightfunnels"

    def __init__(self, access_token: str, *, api_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not access_token:
            raise PermanentDispatchError("Lightfunnels connection has no access token")
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")

    @classmethod
    def for_connection(
        cls, connection: Connection, *, api_url: str, **kwargs: Any
    ) -> "LightfunnelsClient":
        credentials = connection.credentials or {}
        token = credentials.get("access_token") or credentials.get("accessToken")
        return cls(token or "", api_url=api_url, **kwargs)

    def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = self._request(
            "POST",
            f"{self.api_url}/api2",
            headers={"Authorization": f"Bearer {self.access_token}"},
            json={"query": query, "variables": variables},
        )
        if payload.get("errors"):
            raise PermanentDispatchError(f"Lightfunnels rejected the request: {payload['errors']}")
        return payload.get("data") or {}

    def update_order_tags(self, order_id: str, tags: list[str]) -> dict[str, Any]:
        data = self.graphql(UPDATE_ORDER_MUTATION, {"id": order_id, "node": {"tags": tags}})
        return data.get("updateOrder") or {}
