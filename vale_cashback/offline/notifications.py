from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any

DEFAULT_TITLE = "Vale Cashback"
DEFAULT_ICON = "/icon-512.png"
DEFAULT_BADGE = "/favicon.ico"
DEFAULT_VIBRATE = (100, 50, 100)

@dataclass
class Notification:
    title: str
    body: str = ""
    icon: str = DEFAULT_ICON
    badge: str = DEFAULT_BADGE
    vibrate: tuple[int, ...] = DEFAULT_VIBRATE
    data: dict[str, Any] = field(default_factory=dict)
    actions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def url(self) -> str:
        return self.data.get("url") or "/"

@dataclass
class ClientWindow:
    id: str
    url: str
    focused: bool = False

@dataclass
class ClickAction:
    kind: str  # "focus" | "open"
    url: str
    client_id: str | None = None

def build_notification(payload: dict | str | bytes | None) -> Notification:
    """Map an inbound push payload to a displayable notification with a deep link."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError:
            payload = {"body": payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload}
    payload = payload if isinstance(payload, dict) else {}
    data = dict(payload.get("data") or {})
    if payload.get("url") and "url" not in data:
        data["url"] = payload["url"]
    return Notification(
        title=payload.get("title") or DEFAULT_TITLE,
        body=payload.get("body") or "",
        data=data,
        actions=list(payload.get("actions") or []),
    )

def resolve_click(notification: Notification, open_clients: list[ClientWindow]) -> ClickAction:
    """Focus a window already showing the deep link, otherwise open one."""
    target = notification.url
    for c in open_clients:
        if c.url == target:
            c.focused = True
            return ClickAction(kind="focus", url=target, client_id=c.id)
    return ClickAction(kind="open", url=target)
