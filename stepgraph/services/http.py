""" HTTP transport used by API and multipart steps. """

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import StepExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpTransport:
    """Thin wrapper over ``httpx.Client``; transport errors become StepExecutionError."""

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def request(self, method: str, url: str, *, headers: Optional[Mapping[str, str]] = None,
                body: Optional[str] = None, data: Optional[Mapping[str, Any]] = None,
                files: Optional[Mapping[str, Any]] = None) -> HttpResponse:
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(
                method,
                url,
                headers=dict(headers or {}),
                content=body.encode("utf-8") if body is not None else None,
                data=dict(data) if data else None,
                files=dict(files) if files else None,
            )
        except httpx.HTTPError as e:
            raise StepExecutionError(f"Request to {url} failed: {e}", request_url=url,
                                     request_body=body, http_method=method) from e
        return HttpResponse(status_code=response.status_code, text=response.text,
                            headers=dict(response.headers))

    def close(self) -> None:
        self._client.close()
