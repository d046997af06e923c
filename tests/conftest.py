"""Shared fixtures: an isolated service registry and a scripted HTTP fake."""

import json

import pytest

from stepgraph.config import Settings
from stepgraph.services import registry
from stepgraph.services.http import HttpResponse


@pytest.fixture(autouse=True)
def isolated_services(monkeypatch):
    """Each test gets its own copy of the service registry."""
    monkeypatch.setattr(registry, "_SERVICES", dict(registry._SERVICES))
    return registry


class FakeHttp:
    """Records requests and answers from a queue (or a default reply)."""

    def __init__(self):
        self.requests = []
        self.replies = []
        self.default = HttpResponse(status_code=200, text=json.dumps({"ok": True}))

    def reply(self, payload=None, status_code=200, text=None):
        body = text if text is not None else json.dumps(payload if payload is not None else {})
        self.replies.append(HttpResponse(status_code=status_code, text=body))

    def __call__(self, method, url, *, headers=None, body=None, data=None, files=None):
        self.requests.append({
            "method": method,
            "url": url,
            "headers": dict(headers or {}),
            "body": body,
            "data": data,
            "files": files,
        })
        return self.replies.pop(0) if self.replies else self.default

    @property
    def bodies(self):
        return [json.loads(r["body"]) if r["body"] else None for r in self.requests]


@pytest.fixture
def fake_http():
    fake = FakeHttp()
    registry.register_service("http.request")(fake)
    return fake


@pytest.fixture
def settings():
    return Settings(api_base_url="https://api.example.test", api_auth_token="tok-123",
                    secondary_apis={"crm": {"base_url": "https://crm.example.test", "auth_token": "crm-tok"}},
                    timezone="UTC", _env_file=None)
