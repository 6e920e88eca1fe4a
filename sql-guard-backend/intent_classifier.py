"""
Intent Classifier for SQL Guard
Maps free-form intent text onto catalog indicator keys by name/synonym matching.

An empty result is valid and does NOT mean the request is benign: paraphrased
requests that never name an indicator are the sensitive scanner's job.
"""

import logging
import re
from typing import Dict, FrozenSet, List, Optional

from semantic_catalog import SemanticDictionary

logger = logging.getLogger(__name__)


# Time keywords recognised in intent text, checked in order
TIME_PATTERNS = [
    r'今天|昨天|前天|本周|上周|本月|上月|近\s*\d+\s*(?:天|日|周|个月|月)|最近\s*\d+\s*(?:天|日)|本季度|上季度|本年度|今年|去年',
    r'\b(?:today|yesterday|this\s+week|last\s+week|this\s+month|last\s+month|this\s+quarter|last\s+quarter|this\s+year|last\s+year)\b',
    r'\blast\s+\d+\s+(?:days?|weeks?|months?)\b',
    r'\d{4}\s*年(?:\s*\d{1,2}\s*月)?|\d{4}-\d{2}(?:-\d{2})?',
]

_COMPILED_TIME_PATTERNS = [re.compile(p, re.IGNORECASE) for p in TIME_PATTERNS]


def _terms_for(name: str, synonyms) -> List[str]:
    terms = [name.lower()]
    terms.extend(s.lower() for s in synonyms)
    return terms


def classify(text: str, catalog: SemanticDictionary) -> FrozenSet[str]:
    """
    Return the keys of every indicator whose display name or any synonym
    occurs in `text` (case-insensitive substring).
    """
    if not text:
        return frozenset()

    text_lower = text.lower()
    matched = set()
    for key, indicator in catalog.indicators.items():
        if any(term in text_lower for term in _terms_for(indicator.name, indicator.synonyms)):
            matched.add(key)
    logger.debug(f"[CLASSIFY] {sorted(matched) or 'none'} from catalog v{catalog.version}")
    return frozenset(matched)


def matched_terms(text: str, catalog: SemanticDictionary) -> Dict[str, List[str]]:
    """Which name/synonym strings triggered each indicator (for the audit trail)."""
    text_lower = (text or "").lower()
    result: Dict[str, List[str]] = {}
    for key, indicator in catalog.indicators.items():
        hits = [t for t in _terms_for(indicator.name, sorted(indicator.synonyms)) if t in text_lower]
        if hits:
            result[key] = hits
    return result


def detect_time_scope(text: str) -> Optional[str]:
    """First time keyword found in `text`, or None if the request is unbounded in time."""
    if not text:
        return None
    for pattern in _COMPILED_TIME_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None
