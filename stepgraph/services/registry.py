"""Named side-effect services used by steps.

Steps never talk to the outside world directly; they look up a callable by
name. ``http.request`` is registered here; hosts register the rest
(``email.send``, ``sftp.upload``, ``ai.lookup``, ``places.lookup``).
"""

from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from ..config import get_settings
from .http import HttpResponse, HttpTransport

_SERVICES: Dict[str, Callable] = {}


def register_service(name: str):
    def _wrap(fn):
        _SERVICES[name] = fn
        return fn
    return _wrap


def get_service(name: str) -> Callable:
    if name not in _SERVICES:
        raise ValueError(f"Service not found: {name}")
    return _SERVICES[name]


@lru_cache
def _default_transport() -> HttpTransport:
    return HttpTransport(timeout=get_settings().http_timeout_seconds)


@register_service("http.request")
def http_request(method: str, url: str, *, headers: Optional[Mapping[str, str]] = None,
                 body: Optional[str] = None, data: Optional[Mapping[str, Any]] = None,
                 files: Optional[Mapping[str, Any]] = None) -> HttpResponse:
    """ Send one HTTP request through the shared httpx client. """
    return _default_transport().request(method, url, headers=headers, body=body, data=data, files=files)
