# defer_app/engine/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_RELEASE_AFTER_MS = 30000
DEFAULT_RELEASE_AFTER_MS = 2000
CONFIG_VERSION = "1.0.0"


class RuleAction(str, Enum):
    DEFER = "defer"
    DELAY = "delay"
    BLOCK = "block"


class Device(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class TemplateTag(str, Enum):
    INDEX = "index"
    PRODUCT = "product"
    COLLECTION = "collection"
    PAGE = "page"
    CONTACT = "contact"
    ARTICLE = "article"
    CART = "cart"


class RuleConditions(BaseModel):
    """Optional scoping for a rule. Device is stored but not enforced by the engine."""
    page_types: Optional[List[str]] = None
    device: Optional[List[Device]] = None


class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    pattern: str = Field(..., alias="src_regex")
    action: RuleAction = RuleAction.DEFER
    priority: int = 0
    enabled: bool = True
    conditions: RuleConditions = Field(default_factory=RuleConditions)

    @property
    def holds_script(self) -> bool:
        return self.action in (RuleAction.DEFER, RuleAction.DELAY)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeferConfig(BaseModel):
    release_after_ms: int = Field(default=DEFAULT_RELEASE_AFTER_MS, ge=0, le=MAX_RELEASE_AFTER_MS)
    enabled: bool = True
    rules: List[Rule] = Field(default_factory=list)
    version: str = CONFIG_VERSION
    source: str = Field(default="manual", pattern="^(manual|lighthouse|auto)$")
    updated_at: Optional[datetime] = None

    def to_storage(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["rules"] = [r.to_storage() for r in self.rules]
        return data

    def find_rule(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    # ------------------------------------------------------------------
    # Wire format: compact keys inlined into loader.js
    # ------------------------------------------------------------------

    def to_wire(self) -> Dict[str, Any]:
        return {
            "t": self.release_after_ms,
            "e": self.enabled,
            "r": [
                {
                    "i": rule.id,
                    "r": rule.pattern,
                    "a": rule.action.value,
                    "e": rule.enabled,
                    "p": rule.priority,
                    "c": rule.conditions.model_dump(mode="json", exclude_none=True),
                }
                for rule in self.rules
            ],
        }

    @classmethod
    def from_wire(cls, payload: Dict[str, Any]) -> "DeferConfig":
        rules = []
        for item in payload.get("r") or []:
            rules.append(
                Rule(
                    id=item["i"],
                    src_regex=item["r"],
                    action=item.get("a", RuleAction.DEFER.value),
                    enabled=item.get("e", True) is not False,
                    priority=item.get("p", 0),
                    conditions=RuleConditions(**(item.get("c") or {})),
                )
            )
        return cls(
            release_after_ms=payload.get("t", DEFAULT_RELEASE_AFTER_MS),
            enabled=bool(payload.get("e", True)),
            rules=rules,
        )


def default_config() -> DeferConfig:
    return DeferConfig()
