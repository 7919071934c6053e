# defer_app/engine/controller.py
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from defer_app.engine.classifier import TemplateClassifier
from defer_app.engine.dom import EXECUTABLE_SCRIPT_TYPES, Element, MutationObserver, Window
from defer_app.engine.matcher import compile_rules, find_rule
from defer_app.engine.models import DeferConfig, RuleAction

logger = logging.getLogger(__name__)

NEUTRAL_SCRIPT_TYPE = "text/deferred"


class Disposition(str, Enum):
    SKIPPED = "skipped"          # inline script, never managed
    PASSTHROUGH = "passthrough"
    BLOCKED = "blocked"
    QUEUED = "queued"
    RELEASED = "released"        # replacement inserted by the scheduler


@dataclass
class DeferredScript:
    source: str
    original_element: Optional[Element]
    rule_id: str
    attributes: Dict[str, str] = field(default_factory=dict)


class ScriptInterceptionController:
    """
    Gates every external <script> on the page through the rule set.

    Each element is inspected at most once. Scripts matching a defer/delay rule are
    neutralised in place and queued in discovery order; the queue is only ever
    emptied through drain().
    """

    def __init__(self, window: Window, config: DeferConfig, classifier: Optional[TemplateClassifier] = None):
        self.window = window
        self.config = config
        self.classifier = classifier or TemplateClassifier(window.location)
        self.rules = compile_rules(config.rules)
        self.queue: List[DeferredScript] = []
        self.dispositions: Dict[int, Disposition] = {}
        self.sources: Dict[int, str] = {}
        self.rule_ids: Dict[int, str] = {}
        self._observer: Optional[MutationObserver] = None

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------

    def inspect(self, element: Element) -> Disposition:
        seen = self.dispositions.get(element.node_id)
        if seen is not None:
            return seen

        src = element.src
        if not src:
            return self._settle(element, Disposition.SKIPPED, src)
        # text/plain consent placeholders and the like would never run on their own
        if element.type.strip().lower() not in EXECUTABLE_SCRIPT_TYPES:
            return self._settle(element, Disposition.PASSTHROUGH, src)

        template = self.classifier.tag
        rule = find_rule(src, self.rules, template)
        if rule is None:
            return self._settle(element, Disposition.PASSTHROUGH, src)

        if rule.action == RuleAction.BLOCK:
            element.remove()
            logger.info(f"[defer] blocked {src} (rule {rule.id}, template {template.value})")
            return self._settle(element, Disposition.BLOCKED, src, rule.id)

        # defer and delay are mechanically identical here
        attributes = dict(element.attributes)
        element.type = NEUTRAL_SCRIPT_TYPE
        element.remove_attribute("src")
        self.queue.append(DeferredScript(source=src, original_element=element, rule_id=rule.id, attributes=attributes))
        logger.debug(f"[defer] queued {src} (rule {rule.id}, action {rule.action.value}, template {template.value})")
        return self._settle(element, Disposition.QUEUED, src, rule.id)

    def mark_inspected(self, element: Element) -> None:
        """Exempt an element from interception, e.g. a released replacement script."""
        self._settle(element, Disposition.RELEASED, element.src)

    def scan_existing(self) -> None:
        for script in self.window.document.query_selector_all("script"):
            self.inspect(script)

    def _settle(self, element: Element, disposition: Disposition, src: str, rule_id: Optional[str] = None) -> Disposition:
        self.dispositions[element.node_id] = disposition
        self.sources[element.node_id] = src
        if rule_id:
            self.rule_ids[element.node_id] = rule_id
        return disposition

    # ------------------------------------------------------------------
    # observation
    # ------------------------------------------------------------------

    @property
    def observing(self) -> bool:
        return self._observer is not None and self._observer.connected

    def attach(self) -> None:
        if self._observer is not None:
            return
        self._observer = MutationObserver(self._on_mutations)
        self._observer.observe(self.window.document.document_element, child_list=True, subtree=True)

    def detach(self) -> None:
        if self._observer is not None:
            self._observer.disconnect()

    def _on_mutations(self, records, observer) -> None:
        for record in records:
            for node in record.added_nodes:
                if node.tag_name == "SCRIPT":
                    self.inspect(node)
                else:
                    for script in node.query_selector_all("script"):
                        self.inspect(script)

    # ------------------------------------------------------------------
    # queue
    # ------------------------------------------------------------------

    def drain(self) -> List[DeferredScript]:
        """Hand over every queued record and leave the queue empty."""
        drained, self.queue = self.queue, []
        return drained

    def debug_snapshot(self) -> dict:
        return {
            "template": self.classifier.tag.value,
            "enabled": self.config.enabled,
            "release_after_ms": self.config.release_after_ms,
            "rules": [c.rule.id for c in self.rules],
            "queue": [item.source for item in self.queue],
            "observing": self.observing,
            "dispositions": {
                node_id: {"src": self.sources.get(node_id, ""), "disposition": d.value, "rule": self.rule_ids.get(node_id)}
                for node_id, d in self.dispositions.items()
            },
        }
