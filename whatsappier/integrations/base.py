"""Shared request handling for outbound platform clients."""

from __future__ import annotations

import logging
from typing import Any

import requests

from ..automations.errors import PermanentDispatchError, TransientDispatchError

RETRYABLE_STATUS = {408, 429}


def classify_status(status_code: int) -> type[PermanentDispatchError] | type[TransientDispatchError]:
    if status_code in RETRYABLE_STATUS or status_code >= 500:
        return TransientDispatchError
    return PermanentDispatchError


class ApiClient:
    """Thin wrapper over :class:`requests.Session` mapping failures to errors.

    Timeouts and connection errors become :class:`TransientDispatchError`;
    HTTP errors are split by status code.
    """

    #: Name used in log lines and error messages.
    service_name = "api"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientDispatchError(
                f"{self.service_name} request failed: {exc.__class__.__name__}"
            ) from exc
        except requests.RequestException as exc:
            raise PermanentDispatchError(
                f"{self.service_name} request could not be sent: {exc}"
            ) from exc

        if response.status_code >= 400:
            error_cls = classify_status(response.status_code)
            self.logger.warning(
                "%s responded %s for %s %s",
                self.service_name,
                response.status_code,
                method,
                url,
            )
            raise error_cls(
                f"{self.service_name} responded with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}
