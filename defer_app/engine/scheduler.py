# defer_app/engine/scheduler.py
import logging
from typing import Callable, List, Optional, Tuple

from defer_app.engine.controller import DeferredScript, ScriptInterceptionController
from defer_app.engine.dom import Window
from defer_app.engine.matcher import is_module_script

logger = logging.getLogger(__name__)

DEFAULT_STAGGER_MS = 50
DEFAULT_GRACE_MS = 3000

# Attributes the replacement element sets itself; an authored type="module" is carried over.
RESERVED_ATTRIBUTES = {"src", "type", "async", "defer"}


class ReleaseScheduler:
    """
    Puts queued scripts back on the page, once.

    Two triggers race for the queue: the release timer and a grace timer armed when
    the page finishes loading. Whichever fires first drains the queue, stops
    interception and cancels the other; the loser finds nothing to do.
    """

    def __init__(
        self,
        window: Window,
        controller: ScriptInterceptionController,
        release_after_ms: int,
        stagger_ms: int = DEFAULT_STAGGER_MS,
        grace_ms: int = DEFAULT_GRACE_MS,
        module_predicate: Callable[[str], bool] = is_module_script,
    ):
        self.window = window
        self.controller = controller
        self.release_after_ms = release_after_ms
        self.stagger_ms = stagger_ms
        self.grace_ms = grace_ms
        self.is_module_script = module_predicate
        self.released: List[str] = []
        self.release_log: List[Tuple[int, str]] = []
        self.release_reason: Optional[str] = None
        self._timer: Optional[int] = None
        self._grace_timer: Optional[int] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def arm(self) -> None:
        self._timer = self.window.set_timeout(lambda: self.release_all("timer"), self.release_after_ms)
        if self.window.document.ready_state == "complete":
            self._arm_grace()
        else:
            self.window.add_event_listener("load", self._arm_grace, once=True)

    def _arm_grace(self) -> None:
        if self._done:
            return
        self._grace_timer = self.window.set_timeout(lambda: self.release_all("load"), self.grace_ms)

    def release_all(self, reason: str = "manual") -> int:
        """Drain the queue and schedule each script's re-insertion. Returns how many were scheduled."""
        if self._done:
            return 0
        self._done = True
        self.release_reason = reason

        self.window.clear_timeout(self._timer)
        self.window.clear_timeout(self._grace_timer)
        self.window.remove_event_listener("load", self._arm_grace)
        self.controller.detach()

        records = self.controller.drain()
        logger.info(f"[defer] releasing {len(records)} scripts ({reason}, template {self.controller.classifier.tag.value})")
        for i, record in enumerate(records):
            self.window.set_timeout(lambda r=record: self._insert(r), i * self.stagger_ms)
        return len(records)

    def _insert(self, record: DeferredScript) -> None:
        document = self.window.document
        script = document.create_element("script")
        for name, value in record.attributes.items():
            if name not in RESERVED_ATTRIBUTES:
                script.attributes[name] = value
        script.attributes["src"] = record.source
        script.attributes["async"] = ""
        authored_type = record.attributes.get("type", "").strip().lower()
        if authored_type == "module" or self.is_module_script(record.source):
            script.attributes["type"] = "module"
        self.controller.mark_inspected(script)
        document.head.append_child(script)
        record.original_element = None
        self.released.append(record.source)
        self.release_log.append((self.window.loop.now, record.source))
        logger.debug(f"[defer] released {record.source}")
