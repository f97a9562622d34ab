"""
Content Filter Module

Matching of filter rules against decrees. Exclude rules (plus the built-in
nomination patterns) keep documents out of storage during a crawl; protect
rules shield stored documents from budget-driven deletion. Include rules are
matched but currently have no effect.
"""

import re
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from models import FilterRule, Document


Matcher = Callable[[Optional[str]], bool]

# Appointment decrees are never kept, whatever the configured rules say
NOMINATION_PATTERNS = (
    "nomination",
    "portant nomination",
    "portant nominations",
    "nommé",
    "nommée",
    "est nommé",
    "sont nommés",
)


@dataclass
class FilterDecision:
    exclude: bool
    reason: Optional[str] = None


def build_matcher(mode: str, pattern: str) -> Matcher:
    """
    Build a case-insensitive matcher for one rule.

    An invalid regex or an unknown mode yields a matcher that never matches.
    """
    pattern_lc = pattern.lower()

    if mode == "regex":
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logging.warning(f"Ignoring invalid filter regex {pattern!r}: {e}")
            return lambda value: False
        return lambda value: bool(compiled.search(value or ""))

    if mode == "contains":
        return lambda value: pattern_lc in (value or "").lower()
    if mode == "startsWith":
        return lambda value: (value or "").lower().startswith(pattern_lc)
    if mode == "endsWith":
        return lambda value: (value or "").lower().endswith(pattern_lc)

    logging.warning(f"Ignoring filter with unknown mode {mode!r}")
    return lambda value: False


def is_nomination(title: Optional[str], text: Optional[str]) -> bool:
    title_lc = (title or "").lower()
    text_lc = (text or "").lower()
    return any(p in title_lc or p in text_lc for p in NOMINATION_PATTERNS)


class ContentFilter:
    """Crawl-time exclusion built once per scan from the active rules"""

    def __init__(self, rules: Iterable[FilterRule]):
        self.logger = logging.getLogger(__name__)
        self._rules = [
            (rule, build_matcher(rule.mode, rule.pattern))
            for rule in rules
            if rule.active and rule.rule_type in ("exclude", "include")
        ]

    def evaluate(self, url: str, text: Optional[str] = None, title: Optional[str] = None,
                 tag: Optional[str] = None, category: Optional[str] = None) -> FilterDecision:
        if is_nomination(title, text):
            return FilterDecision(exclude=True, reason="nomination")

        sources = {"title": title, "text": text, "url": url, "tag": tag, "category": category}
        for rule, matcher in self._rules:
            value = sources.get(rule.field)
            if not value:
                continue
            if not matcher(value):
                continue
            if rule.rule_type == "exclude":
                return FilterDecision(exclude=True, reason=f"filter #{rule.id}")
            self.logger.debug(f"Include rule #{rule.id} matched {url} (no action)")

        return FilterDecision(exclude=False)


class ProtectionRules:
    """Protect rules on tag or category, used by the storage budget enforcer"""

    def __init__(self, rules: Iterable[FilterRule]):
        self.tag_matchers: List[Matcher] = []
        self.category_matchers: List[Matcher] = []
        for rule in rules:
            if not rule.active or rule.rule_type != "protect":
                continue
            if rule.field == "tag":
                self.tag_matchers.append(build_matcher(rule.mode, rule.pattern))
            elif rule.field == "category":
                self.category_matchers.append(build_matcher(rule.mode, rule.pattern))

    def is_protected(self, document: Document) -> bool:
        return (any(m(document.tag) for m in self.tag_matchers)
                or any(m(document.category) for m in self.category_matchers))
