"""Test helpers shared across test modules."""

from __future__ import annotations

from datetime import datetime, timedelta

import httpx

from hookline.models import utc_now

Scripted = int | httpx.Response | Exception


class ScriptedReceiver:
    """Fake merchant server behind an httpx.MockTransport.

    Answers with the scripted items in order; the last item repeats once
    the script runs out. Ints become responses with that status code and
    exceptions are raised as transport errors. Every request is recorded.

    Example:
        ```python
        receiver = ScriptedReceiver(500, 200)
        service = WebhookService.create(settings, transport=receiver.transport)
        ```
    """

    def __init__(self, *script: Scripted) -> None:
        self.script: list[Scripted] = list(script) or [200]
        self.requests: list[httpx.Request] = []

    def respond_with(self, *script: Scripted) -> None:
        self.script = list(script)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, text="ok" if item < 400 else "error")
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    @property
    def calls(self) -> int:
        return len(self.requests)


def later(hours: float = 1) -> datetime:
    """A point in time after any retry the test settings can schedule."""
    return utc_now() + timedelta(hours=hours)
