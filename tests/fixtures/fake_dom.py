"""Minimal DOM-like object graph used as a replay target in tests.

Only what the tests exercise is modelled: element creation, tree insertion,
attributes, event listeners and a constructible class. Names follow the
browser API so recorded operations read the way they would against a page.
"""

from __future__ import annotations

from typing import Any, Callable


class Event:
    def __init__(self, type: str, target: Element) -> None:
        self.type = type
        self.target = target
        self.defaultPrevented = False

    def preventDefault(self) -> None:
        self.defaultPrevented = True


class Style:
    def __init__(self) -> None:
        self.color = ""
        self.display = ""


class Element:
    def __init__(self, tag: str, document: Document) -> None:
        self.tagName = tag.upper()
        self.ownerDocument = document
        self.parentNode: Element | None = None
        self.children: list[Element] = []
        self.textContent = ""
        self.style = Style()
        self.attributes: dict[str, str] = {}
        self.listeners: dict[str, list[Callable[[Event], Any]]] = {}

    def appendChild(self, child: Element) -> Element:
        self.children.append(child)
        child.parentNode = self
        return child

    def setAttribute(self, name: str, value: str) -> None:
        self.attributes[name] = value

    def getAttribute(self, name: str) -> str | None:
        return self.attributes.get(name)

    def addEventListener(self, type: str, listener: Callable[[Event], Any]) -> None:
        self.listeners.setdefault(type, []).append(listener)

    def removeEventListener(self, type: str, listener: Callable[[Event], Any]) -> None:
        if listener in self.listeners.get(type, []):
            self.listeners[type].remove(listener)

    def dispatchEvent(self, event: Event) -> bool:
        for listener in list(self.listeners.get(event.type, [])):
            listener(event)
        return not event.defaultPrevented

    def click(self) -> bool:
        return self.dispatchEvent(Event("click", self))

    def __repr__(self) -> str:
        return f"<{self.tagName.lower()}>"


class Document:
    def __init__(self) -> None:
        self.title = ""
        self.body = Element("body", self)

    def createElement(self, tag: str) -> Element:
        return Element(tag, self)

    def getElementById(self, element_id: str) -> Element | None:
        stack = [self.body]
        while stack:
            element = stack.pop()
            if element.attributes.get("id") == element_id:
                return element
            stack.extend(element.children)
        return None


class Point:
    def __init__(self, x: float, y: float) -> None:
        self.x = x
        self.y = y

    def translate(self, dx: float, dy: float) -> Point:
        return Point(self.x + dx, self.y + dy)


class Window:
    """Root object for replay: ``root.document``, ``root.Point``, ``root.alert``."""

    Point = Point

    def __init__(self) -> None:
        self.document = Document()
        self.alerts: list[str] = []
        self.location = {"href": "about:blank", "hash": ""}

    def alert(self, message: str) -> None:
        self.alerts.append(message)

    def setTimeout(self, callback: Callable[[], Any], delay: int = 0) -> int:
        # Synchronous stand-in; the tests only care that the callback runs.
        callback()
        return 1


class CapturePort:
    """MessagePort that keeps everything posted to it and delivers nothing."""

    def __init__(self) -> None:
        self.posted: list[tuple[dict[str, Any], list[Any]]] = []
        self.handler: Callable[[Any, list[Any]], None] | None = None
        self.closed = False

    def post(self, message: Any, transfer: Any = ()) -> None:
        if self.closed:
            raise RuntimeError("Port closed")
        self.posted.append((message, list(transfer)))

    def start(self, handler: Callable[[Any, list[Any]], None]) -> None:
        self.handler = handler

    def close(self) -> None:
        self.closed = True

    def messages(self, type: str) -> list[dict[str, Any]]:
        return [message for message, _ in self.posted if message.get("type") == type]
