import copy
import json

import httpx
import pytest

from charts import ChartService
from zbx import ChartConfig

ZABBIX_URL = "http://zabbix.test/zabbix"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
HTML = b"<!DOCTYPE html>\n<html>\n  <body>Session terminated, re-login, please.</body>\n</html>"

GRAPH_WIDGET = {
    "widgetid": "99",
    "type": "graph",
    "name": " Core switch traffic ",
    "fields": [
        {"type": "0", "name": "source_type", "value": "0"},
        {"type": "6", "name": "graphid.0", "value": "654321"},
    ],
}

DASHBOARD = {
    "dashboardid": "555",
    "pages": [
        {
            "dashboard_pageid": "1",
            "widgets": [
                {"widgetid": "98", "type": "clock", "name": "Clock", "fields": []},
                GRAPH_WIDGET,
            ],
        }
    ],
}


class FakeZabbix:
    """Scriptable Zabbix frontend: ``api_jsonrpc.php`` and ``chart2.php``."""

    def __init__(self):
        self.api_calls = []
        self.image_requests = []
        self.logins = 0
        self.results = {
            "dashboard.get": [copy.deepcopy(DASHBOARD)],
            "graph.get": [{"graphid": "654321", "name": "Traffic on core switch"}],
            "graphitem.get": [
                {"gitemid": "1", "itemid": "10001", "color": "1A7C11"},
                {"gitemid": "2", "itemid": "10002", "color": "F63100"},
            ],
        }
        self.errors = {}
        self.api_status = 200
        self.image_status = 200
        self.image_content_type = "image/png"
        self.image_body = PNG
        self.transport = httpx.MockTransport(self.handle)

    def methods(self):
        return [body["method"] for body, _ in self.api_calls]

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/api_jsonrpc.php"):
            return self._api(request)
        if request.url.path.endswith("/chart2.php"):
            self.image_requests.append(request)
            return httpx.Response(
                self.image_status,
                headers={"Content-Type": self.image_content_type},
                content=self.image_body,
            )
        return httpx.Response(404)

    def _api(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.api_calls.append((body, request))
        if self.api_status != 200:
            return httpx.Response(self.api_status, text="Bad Gateway")

        method = body["method"]
        if method in self.errors:
            return httpx.Response(200, json={"jsonrpc": "2.0", "error": self.errors[method], "id": body["id"]})
        if method == "user.login":
            self.logins += 1
            result = f"session-{self.logins}"
        else:
            result = self.results.get(method, [])
        return httpx.Response(200, json={"jsonrpc": "2.0", "result": result, "id": body["id"]})


@pytest.fixture
def fake():
    return FakeZabbix()


@pytest.fixture
def service(fake):
    return ChartService(transport=fake.transport)


@pytest.fixture
def session_request():
    return {
        "zabbixUrl": ZABBIX_URL,
        "username": "monitor",
        "password": "secret",
        "dashboardId": 555,
        "widgetId": 99,
        "width": 800,
        "height": 240,
    }


@pytest.fixture
def token_request():
    return {
        "zabbixUrl": ZABBIX_URL,
        "apiToken": "  tok-123  ",
        "dashboardId": "555",
    }


@pytest.fixture
def session_config(session_request):
    return ChartConfig.from_dict(session_request)


@pytest.fixture
def token_config(token_request):
    return ChartConfig.from_dict(token_request)
