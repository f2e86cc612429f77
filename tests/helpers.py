"""Test doubles and constants shared across the suite."""

import time
from datetime import datetime, timedelta
from typing import Optional, Union

import httpx

from pharmadoc_oauth.schemas import utcnow

MASTER_KEY = "test-master-key-0123456789abcdef"
ZOOM_SECRET = "zoom-webhook-secret"
CALDAV_KEY = "caldav-api-key"

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_ME_URL = "https://graph.microsoft.com/v1.0/me"
ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"
ZOOM_ME_URL = "https://api.zoom.us/v2/users/me"
ZOOM_REVOKE_URL = "https://zoom.us/oauth/revoke"


class FakeClock:
    """Controllable wall clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def timestamp(self) -> float:
        return self.now.timestamp()


class SecondsClock:
    """Controllable epoch-seconds clock for the webhook stores."""

    def __init__(self, start: Optional[float] = None):
        self.value = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class ProviderStub:
    """Routes provider HTTP calls to canned responses.

    Responses queued for a URL are consumed in order; the last one repeats.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Union[tuple[int, object], type]]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, json: object = None, status_code: int = 200) -> None:
        self.routes.setdefault((method, url), []).append((status_code, json))

    def fail(self, method: str, url: str, exc_class: type = httpx.ConnectError) -> None:
        self.routes.setdefault((method, url), []).append(exc_class)

    def calls(self, method: str, url: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and f"{r.url.scheme}://{r.url.host}{r.url.path}" == url
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"error": "not_found"})

        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, type):
            raise item("stubbed transport failure", request=request)
        status_code, body = item
        if isinstance(body, (bytes, str)):
            return httpx.Response(status_code, content=body)
        return httpx.Response(status_code, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


