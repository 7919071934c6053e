# defer_app/engine/matcher.py
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from defer_app.engine.models import Rule, TemplateTag

logger = logging.getLogger(__name__)

MODULE_URL_MARKERS = (".mjs", "portable-wallets")


class UnportablePattern(ValueError):
    """Pattern syntax that Python accepts but a browser's RegExp does not."""


# group openers only Python understands: named/backref groups, comments, atomic, conditional
_PYTHON_ONLY_GROUPS = ("(?P", "(?#", "(?>", "(?(")
_INLINE_FLAGS = set("aiLmsux-")
_PYTHON_ONLY_ESCAPES = {"A", "Z", "z"}
_JS_BACKREF = re.compile(r"\\k<([A-Za-z_$][\w$]*)>")


def to_python_pattern(pattern: str) -> str:
    """
    Translate a rule pattern, written for the storefront's `new RegExp(pattern, 'i')`,
    into an equivalent Python pattern.

    JS named groups (`(?<name>...)`, `\\k<name>`) and `\\cX` control escapes are
    rewritten. Syntax that only Python accepts raises UnportablePattern, since such a
    rule would never match in the browser. Anything else is left for re.compile to judge.
    """
    out = []
    i = 0
    in_class = False
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "\\":
            nxt = pattern[i + 1:i + 2]
            if not in_class and nxt in _PYTHON_ONLY_ESCAPES:
                raise UnportablePattern(f"\\{nxt} is not supported in browsers")
            if nxt == "c" and pattern[i + 2:i + 3].isalpha():
                out.append(f"\\x{ord(pattern[i + 2]) % 32:02x}")
                i += 3
                continue
            if nxt == "k" and not in_class:
                m = _JS_BACKREF.match(pattern, i)
                if m:
                    out.append(f"(?P={m.group(1)})")
                    i = m.end()
                    continue
            out.append(pattern[i:i + 2])
            i += 2
            continue

        if in_class:
            if ch == "]":
                in_class = False
            out.append(ch)
            i += 1
            continue

        if ch == "[":
            in_class = True
        elif ch == "(" and pattern.startswith("(?", i):
            if pattern.startswith(_PYTHON_ONLY_GROUPS, i):
                raise UnportablePattern(f"group syntax {pattern[i:i + 3]} is not supported in browsers")
            if pattern[i + 2:i + 3] in _INLINE_FLAGS:
                raise UnportablePattern("inline flags are not supported in browsers")
            if pattern.startswith("(?<", i) and pattern[i + 3:i + 4] not in ("=", "!"):
                out.append("(?P<")
                i += 3
                continue
        elif ch in "*+?}" and pattern[i + 1:i + 2] == "+":
            raise UnportablePattern("possessive quantifiers are not supported in browsers")
        elif ch == "{" and pattern[i + 1:i + 2] == ",":
            raise UnportablePattern("{,n} quantifiers are not supported in browsers")
        out.append(ch)
        i += 1
    return "".join(out)


def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a storefront rule pattern the way the loader does: case-insensitive, browser syntax."""
    return re.compile(to_python_pattern(pattern), re.IGNORECASE)


@dataclass(frozen=True)
class CompiledRule:
    rule: Rule
    regex: Optional[re.Pattern]  # None when the pattern does not compile


def compile_rules(rules: Iterable[Rule]) -> List[CompiledRule]:
    """
    Compile rule patterns once per page load.

    Rules are ordered by priority (highest first); sorted() is stable so rules
    sharing a priority keep their authored order.
    """
    compiled = []
    for rule in sorted(rules, key=lambda r: -r.priority):
        try:
            regex = compile_pattern(rule.pattern)
        except (re.error, UnportablePattern, TypeError) as e:
            logger.warning(f"[defer] rule {rule.id} has an invalid pattern, it will never match: {e}")
            regex = None
        compiled.append(CompiledRule(rule=rule, regex=regex))
    return compiled


def rule_applies(rule: Rule, page_type: TemplateTag) -> bool:
    page_types = rule.conditions.page_types if rule.conditions else None
    if not page_types:
        return True
    return page_type.value in page_types


def pattern_matches(compiled: CompiledRule, url: str) -> bool:
    if compiled.regex is None:
        return False
    try:
        return compiled.regex.search(url) is not None
    except Exception:
        return False


def find_rule(url: str, rules: Sequence[Union[CompiledRule, Rule]], page_type: TemplateTag) -> Optional[Rule]:
    """Return the first enabled rule scoped to `page_type` whose pattern matches `url`."""
    if any(isinstance(r, Rule) for r in rules):
        rules = compile_rules(r.rule if isinstance(r, CompiledRule) else r for r in rules)
    for compiled in rules:
        rule = compiled.rule
        if rule.enabled and rule_applies(rule, page_type) and pattern_matches(compiled, url):
            return rule
    return None


def is_module_script(url: str) -> bool:
    """Released scripts that look like ES modules must be re-inserted as type=module."""
    return any(marker in url for marker in MODULE_URL_MARKERS)
