# defer_app/engine/dom.py
"""
Minimal browser-like host for the defer engine.

Only what the engine touches is modelled: script elements and their containers,
a childList MutationObserver, a virtual clock with timers and microtasks, the
DOMContentLoaded/load events, and the page location. The host also records which
script URLs the "browser" would have requested so behaviour can be asserted on.
"""
import heapq
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urljoin, urlsplit

logger = logging.getLogger(__name__)

EXECUTABLE_SCRIPT_TYPES = {
    "",
    "text/javascript",
    "application/javascript",
    "text/ecmascript",
    "application/ecmascript",
    "module",
}


# ============================================================================
# EVENT LOOP
# ============================================================================

class EventLoop:
    """Virtual millisecond clock. Nothing runs until the owner advances time."""

    def __init__(self):
        self.now = 0
        self._timers: List[tuple] = []
        self._seq = itertools.count()
        self._cancelled = set()
        self._microtasks: deque = deque()

    def set_timeout(self, callback: Callable[[], Any], delay_ms: int = 0) -> int:
        handle = next(self._seq)
        due = self.now + max(0, int(delay_ms))
        heapq.heappush(self._timers, (due, handle, callback))
        return handle

    def clear_timeout(self, handle: Optional[int]) -> None:
        if handle is not None:
            self._cancelled.add(handle)

    def queue_microtask(self, callback: Callable[[], Any]) -> None:
        self._microtasks.append(callback)

    def run_microtasks(self) -> None:
        while self._microtasks:
            self._run(self._microtasks.popleft())

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, handle, _ in self._timers if handle not in self._cancelled)

    def advance(self, ms: int) -> None:
        """Move the clock forward by `ms`, firing every timer that falls due on the way."""
        target = self.now + ms
        self.run_microtasks()
        while self._timers and self._timers[0][0] <= target:
            due, handle, callback = heapq.heappop(self._timers)
            if handle in self._cancelled:
                self._cancelled.discard(handle)
                continue
            self.now = due
            self._run(callback)
            self.run_microtasks()
        self.now = target

    def run_until_idle(self, limit_ms: int = 600000) -> None:
        start = self.now
        self.run_microtasks()
        while self.pending_timers and self.now - start < limit_ms:
            next_due = min(due for due, handle, _ in self._timers if handle not in self._cancelled)
            self.advance(max(0, next_due - self.now))

    def _run(self, callback):
        # A failing task is reported and the loop carries on, as a browser would.
        try:
            callback()
        except Exception:
            logger.exception("uncaught error in host task")


# ============================================================================
# EVENTS
# ============================================================================

class EventTarget:
    def __init__(self):
        self._listeners: Dict[str, List[tuple]] = {}

    def add_event_listener(self, event_type: str, callback: Callable[[], Any], once: bool = False) -> None:
        self._listeners.setdefault(event_type, []).append((callback, once))

    def remove_event_listener(self, event_type: str, callback: Callable[[], Any]) -> None:
        self._listeners[event_type] = [
            (cb, once) for cb, once in self._listeners.get(event_type, []) if cb != callback
        ]

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, []))

    def dispatch_event(self, event_type: str) -> None:
        listeners = list(self._listeners.get(event_type, []))
        self._listeners[event_type] = [(cb, once) for cb, once in listeners if not once]
        for callback, _ in listeners:
            try:
                callback()
            except Exception:
                logger.exception(f"uncaught error in {event_type} listener")


# ============================================================================
# NODES
# ============================================================================

class Element:
    _ids = itertools.count(1)

    def __init__(self, tag_name: str, attributes: Optional[Dict[str, str]] = None, document: "Document" = None):
        self.tag_name = tag_name.upper()
        self.attributes: Dict[str, str] = dict(attributes or {})
        self.children: List["Element"] = []
        self.parent: Optional["Element"] = None
        self.owner_document = document
        self.node_id = next(self._ids)
        self.already_started = False
        self.text = ""

    def __repr__(self):
        return f"<{self.tag_name.lower()} #{self.node_id} {self.attributes!r}>"

    # -- attributes --------------------------------------------------------

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def set_attribute(self, name: str, value: str) -> None:
        self.attributes[name] = value
        self._log("attributes", name)

    def remove_attribute(self, name: str) -> None:
        if name in self.attributes:
            del self.attributes[name]
            self._log("attributes", name)

    @property
    def src(self) -> str:
        """The script URL resolved against the page, as `script.src` reads in a browser."""
        raw = self.attributes.get("src", "").strip()
        if not raw:
            return ""
        base = self.owner_document.url if self.owner_document is not None else ""
        return urljoin(base, raw) if base else raw

    @src.setter
    def src(self, value: str) -> None:
        self.set_attribute("src", value)

    @property
    def type(self) -> str:
        return self.attributes.get("type", "")

    @type.setter
    def type(self, value: str) -> None:
        self.set_attribute("type", value)

    # -- tree --------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        node = self
        while node.parent is not None:
            node = node.parent
        doc = self.owner_document
        return doc is not None and node is doc.document_element

    def append_child(self, child: "Element") -> "Element":
        if child.parent is not None:
            child.remove()
        child.parent = self
        self.children.append(child)
        if self.owner_document is not None:
            self.owner_document._child_list_changed(self, added=[child], removed=[])
        return child

    def remove(self) -> None:
        parent = self.parent
        if parent is None:
            return
        parent.children.remove(self)
        self.parent = None
        if parent.owner_document is not None:
            parent.owner_document._child_list_changed(parent, added=[], removed=[self])

    def iter_descendants(self):
        for child in self.children:
            yield child
            yield from child.iter_descendants()

    def query_selector_all(self, tag_name: str) -> List["Element"]:
        wanted = tag_name.upper()
        return [el for el in self.iter_descendants() if el.tag_name == wanted]

    def contains(self, other: "Element") -> bool:
        node = other
        while node is not None:
            if node is self:
                return True
            node = node.parent
        return False

    def _log(self, kind: str, detail: str) -> None:
        if self.owner_document is not None:
            self.owner_document.mutation_log.append((kind, self.node_id, detail))


@dataclass
class MutationRecord:
    target: Element
    added_nodes: List[Element] = field(default_factory=list)
    removed_nodes: List[Element] = field(default_factory=list)


class MutationObserver:
    """childList-only observer; records are batched and delivered as one microtask."""

    def __init__(self, callback: Callable[[List[MutationRecord], "MutationObserver"], Any]):
        self._callback = callback
        self._target: Optional[Element] = None
        self._subtree = False
        self._records: List[MutationRecord] = []
        self._document: Optional["Document"] = None

    @property
    def connected(self) -> bool:
        return self._target is not None

    def observe(self, target: Element, child_list: bool = True, subtree: bool = False) -> None:
        self._target = target
        self._subtree = subtree
        self._document = target.owner_document
        self._document._observers.append(self)

    def disconnect(self) -> None:
        if self._document is not None and self in self._document._observers:
            self._document._observers.remove(self)
        self._target = None
        self._records = []

    def take_records(self) -> List[MutationRecord]:
        records, self._records = self._records, []
        return records

    def _interested(self, node: Element) -> bool:
        if self._target is None:
            return False
        return node is self._target or (self._subtree and self._target.contains(node))

    def _enqueue(self, record: MutationRecord) -> bool:
        self._records.append(record)
        return len(self._records) == 1

    def _deliver(self) -> None:
        records = self.take_records()
        if records and self._target is not None:
            self._callback(records, self)


class Document(EventTarget):
    def __init__(self):
        super().__init__()
        self.ready_state = "loading"
        self.url = ""
        self.mutation_log: List[tuple] = []
        self.requested_scripts: List[str] = []
        self._observers: List[MutationObserver] = []
        self.loop: Optional[EventLoop] = None
        self.document_element = Element("html", document=self)
        self.head = Element("head", document=self)
        self.body = Element("body", document=self)
        self.document_element.children = [self.head, self.body]
        self.head.parent = self.document_element
        self.body.parent = self.document_element

    def create_element(self, tag_name: str, attributes: Optional[Dict[str, str]] = None) -> Element:
        return Element(tag_name, attributes, document=self)

    def query_selector_all(self, tag_name: str) -> List[Element]:
        return self.document_element.query_selector_all(tag_name)

    def _child_list_changed(self, target: Element, added: List[Element], removed: List[Element]) -> None:
        for node in added:
            self.mutation_log.append(("childList", target.node_id, f"+{node.node_id}"))
        for node in removed:
            self.mutation_log.append(("childList", target.node_id, f"-{node.node_id}"))
        if not target.is_connected:
            return

        record = MutationRecord(target=target, added_nodes=list(added), removed_nodes=list(removed))
        for observer in list(self._observers):
            if observer._interested(target) and observer._enqueue(record):
                self._schedule(observer._deliver)

        # The browser prepares inserted scripts after pending observers have run.
        for node in added:
            candidates = [node] if node.tag_name == "SCRIPT" else []
            candidates += node.query_selector_all("script")
            for script in candidates:
                self._schedule(lambda s=script: self._prepare_script(s))

    def _prepare_script(self, script: Element) -> None:
        if script.already_started or not script.is_connected:
            return
        if not script.src or script.type.strip().lower() not in EXECUTABLE_SCRIPT_TYPES:
            return
        script.already_started = True
        self.requested_scripts.append(script.src)

    def _schedule(self, callback: Callable[[], Any]) -> None:
        if self.loop is not None:
            self.loop.queue_microtask(callback)
        else:
            callback()


@dataclass
class Location:
    href: str
    pathname: str = "/"
    search: str = ""

    @classmethod
    def from_url(cls, url: str) -> "Location":
        parts = urlsplit(url)
        return cls(href=url, pathname=parts.path or "/", search=f"?{parts.query}" if parts.query else "")

    def query_params(self) -> Dict[str, List[str]]:
        return parse_qs(self.search.lstrip("?"), keep_blank_values=True)


class Window(EventTarget):
    def __init__(self, url: str = "https://example.myshopify.com/", document: Optional[Document] = None,
                 loop: Optional[EventLoop] = None):
        super().__init__()
        self.loop = loop or EventLoop()
        self.document = document or Document()
        self.document.loop = self.loop
        self.document.url = url
        self.location = Location.from_url(url)

    def set_timeout(self, callback: Callable[[], Any], delay_ms: int = 0) -> int:
        return self.loop.set_timeout(callback, delay_ms)

    def clear_timeout(self, handle: Optional[int]) -> None:
        self.loop.clear_timeout(handle)

    def finish_parsing(self) -> None:
        self.loop.run_microtasks()
        self.document.ready_state = "interactive"
        self.document.dispatch_event("DOMContentLoaded")
        self.loop.run_microtasks()

    def complete_load(self) -> None:
        if self.document.ready_state == "loading":
            self.finish_parsing()
        self.document.ready_state = "complete"
        self.dispatch_event("load")
        self.loop.run_microtasks()


# ============================================================================
# HTML -> DOCUMENT
# ============================================================================

def _convert(tag, document: Document) -> Element:
    el = document.create_element(tag.name, {
        k: " ".join(v) if isinstance(v, list) else ("" if v is None else str(v))
        for k, v in tag.attrs.items()
    })
    if tag.name == "script":
        el.text = tag.string or ""
    for child in tag.find_all(recursive=False):
        sub = _convert(child, document)
        sub.parent = el
        el.children.append(sub)
    return el


def parse_into(window: Window, html: str) -> None:
    """
    Feed an HTML page into `window.document` the way a parser would: head children one by
    one, then each top-level body child as an already-built subtree.
    """
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html, "html.parser")
    document = window.document
    head = soup.find("head")
    body = soup.find("body")
    if head is not None:
        for child in head.find_all(recursive=False):
            document.head.append_child(_convert(child, document))
            window.loop.run_microtasks()
    roots = body.find_all(recursive=False) if body is not None else [
        t for t in soup.find_all(recursive=False) if t.name not in ("html", "head")
    ]
    for child in roots:
        document.body.append_child(_convert(child, document))
        window.loop.run_microtasks()
