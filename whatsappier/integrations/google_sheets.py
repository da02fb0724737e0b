"""Google Sheets API client limited to appending rows."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from ..automations.errors import PermanentDispatchError
from ..automations.models import Connection
from .base import ApiClient


class GoogleSheetsClient(ApiClient):
    service_name = "google-sheets"

    def __init__(self, access_token: str, *, api_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not access_token:
            raise PermanentDispatchError("Google Sheets connection has no access token")
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")

    @classmethod
    def for_connection(
        cls, connection: Connection, *, api_url: str, **kwargs: Any
    ) -> "GoogleSheetsClient":
        credentials = connection.credentials or {}
        token = credentials.get("access_token") or credentials.get("accessToken")
        return cls(token or "", api_url=api_url, **kwargs)

    def append_row(
        self, spreadsheet_id: str, worksheet: str, values: list[Any]
    ) -> dict[str, Any]:
        sheet_range = quote(f"{worksheet}!A1", safe="")
        return self._request(
            "POST",
            f"{self.api_url}/spreadsheets/{spreadsheet_id}/values/{sheet_range}:append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            headers={"Authorization": f"Bearer {self.access_token}"},
            json={"values": [values]},
        )


def updated_range(response: dict[str, Any]) -> str | None:
    updates = response.get("updates") if isinstance(response, dict) else None
    if isinstance(updates, dict) and updates.get("updatedRange"):
        return str(updates["updatedRange"])
    return None
