"""
SQL Guard - Indicator Catalog (Semantic Dictionary)
===================================================

PURPOSE:
    Loads the versioned indicator catalog (data/semantic_dict.json) into an
    immutable SemanticDictionary that every evaluation receives explicitly.

CATALOG SCHEMA (per indicator):
    key (object key, unique), name, synonyms[], fields[], level (L0|L1),
    formula, denial_message?, unit?

    Top level also carries: version, dimensions{}, rules{calculation[],
    security[], formula_patterns[]}.

GUARANTEES:
    - Fail closed: a missing, unparsable or invalid catalog raises
      CatalogLoadError. Duplicate keys are rejected at every object level.
    - Immutable after load: frozen dataclasses, frozensets, read-only mappings.
    - Reload is atomic for readers: CatalogStore builds the complete new
      dictionary first and only then swaps the reference.
"""

import json
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from guard_errors import CatalogLoadError

logger = logging.getLogger(__name__)


class SecurityLevel(str, Enum):
    """Sensitivity level of an indicator or a decision."""
    L0 = "L0"   # public
    L1 = "L1"   # restricted


# =============================================================================
# RAW SCHEMA (validation only)
# =============================================================================

class _IndicatorSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    synonyms: List[str] = Field(default_factory=list)
    fields: List[str] = Field(min_length=1)
    level: Literal["L0", "L1"]
    formula: str
    denial_message: Optional[str] = None
    unit: Optional[str] = None

    @field_validator("synonyms", "fields")
    @classmethod
    def _no_blank_entries(cls, value: List[str]) -> List[str]:
        if any(not item or not item.strip() for item in value):
            raise ValueError("entries must be non-empty strings")
        return value


class _RulesSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    calculation: List[str] = Field(default_factory=list)
    security: List[str] = Field(default_factory=list)
    formula_patterns: List[str] = Field(default_factory=list)

    @field_validator("formula_patterns")
    @classmethod
    def _patterns_compile(cls, value: List[str]) -> List[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid formula pattern {pattern!r}: {e}")
        return value


class _CatalogSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: str = "0"
    indicators: Dict[str, _IndicatorSpec]
    dimensions: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    rules: _RulesSpec = Field(default_factory=_RulesSpec)

    @field_validator("indicators")
    @classmethod
    def _at_least_one(cls, value: Dict[str, _IndicatorSpec]) -> Dict[str, _IndicatorSpec]:
        if not value:
            raise ValueError("catalog must define at least one indicator")
        return value


# =============================================================================
# IMMUTABLE MODEL
# =============================================================================

@dataclass(frozen=True)
class IndicatorDefinition:
    """One derived business metric."""
    key: str
    name: str
    synonyms: FrozenSet[str]
    fields: Tuple[str, ...]
    level: SecurityLevel
    formula: str
    denial_message: Optional[str] = None
    unit: Optional[str] = None

    @property
    def is_restricted(self) -> bool:
        return self.level is SecurityLevel.L1

    def effective_denial_message(self) -> str:
        return self.denial_message or f"{self.name}涉及敏感数据，需 Admin 权限"


@dataclass(frozen=True)
class SemanticDictionary:
    """
    Read-only catalog shared by all concurrent evaluations.

    Build with SemanticDictionary.from_dict() or load_catalog(); the field
    index is derived once at build time.
    """
    version: str
    indicators: Mapping[str, IndicatorDefinition]
    dimensions: Mapping[str, Mapping[str, Any]]
    calculation_rules: Tuple[str, ...]
    security_rules: Tuple[str, ...]
    formula_patterns: Tuple[str, ...]
    field_index: Mapping[str, Tuple[str, ...]]

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SemanticDictionary":
        """Validate a raw catalog mapping and freeze it. Raises CatalogLoadError."""
        try:
            spec = _CatalogSpec.model_validate(raw)
        except ValidationError as e:
            raise CatalogLoadError(f"catalog failed schema validation: {e}") from e

        indicators: Dict[str, IndicatorDefinition] = {}
        field_index: Dict[str, List[str]] = {}
        for key, ind in spec.indicators.items():
            fields = tuple(dict.fromkeys(ind.fields))
            indicators[key] = IndicatorDefinition(
                key=key,
                name=ind.name,
                synonyms=frozenset(ind.synonyms),
                fields=fields,
                level=SecurityLevel(ind.level),
                formula=ind.formula,
                denial_message=ind.denial_message,
                unit=ind.unit,
            )
            for f in fields:
                field_index.setdefault(f, []).append(key)

        return cls(
            version=spec.version,
            indicators=MappingProxyType(indicators),
            dimensions=MappingProxyType(
                {k: MappingProxyType(dict(v)) for k, v in spec.dimensions.items()}
            ),
            calculation_rules=tuple(spec.rules.calculation),
            security_rules=tuple(spec.rules.security),
            formula_patterns=tuple(spec.rules.formula_patterns),
            field_index=MappingProxyType({f: tuple(keys) for f, keys in field_index.items()}),
        )

    # -------------------------------------------------------------------------
    # READ HELPERS
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Optional[IndicatorDefinition]:
        return self.indicators.get(key)

    def all_fields(self) -> Tuple[str, ...]:
        """Distinct field names in catalog order."""
        return tuple(self.field_index.keys())

    def indicators_with_field(self, field_name: str) -> Tuple[IndicatorDefinition, ...]:
        return tuple(self.indicators[k] for k in self.field_index.get(field_name, ()))

    def restricted_indicators(self) -> Tuple[IndicatorDefinition, ...]:
        return tuple(ind for ind in self.indicators.values() if ind.is_restricted)

    def is_restricted_field(self, field_name: str) -> bool:
        return any(ind.is_restricted for ind in self.indicators_with_field(field_name))

    def display_names(self, keys: Iterable[str]) -> List[str]:
        """Display names of the given keys, in catalog order."""
        wanted = set(keys)
        return [ind.name for k, ind in self.indicators.items() if k in wanted]

    def ordered(self, keys: Iterable[str]) -> List[str]:
        """Keys sorted into catalog order (unknown keys dropped)."""
        wanted = set(keys)
        return [k for k in self.indicators if k in wanted]


# =============================================================================
# LOADING
# =============================================================================

def _reject_duplicate_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise CatalogLoadError(f"duplicate key in catalog: {key!r}")
        result[key] = value
    return result


def load_catalog(path: Union[str, Path]) -> SemanticDictionary:
    """
    Load and validate the catalog document at `path`.

    Raises:
        CatalogLoadError: file missing/unreadable, invalid JSON, duplicate
            keys, or schema violation.
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise CatalogLoadError(f"cannot read catalog at {path}: {e}") from e

    try:
        raw = json.loads(content, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as e:
        raise CatalogLoadError(f"catalog at {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise CatalogLoadError(f"catalog at {path} must be a JSON object")

    dictionary = SemanticDictionary.from_dict(raw)
    logger.info(
        f"[CATALOG] Loaded v{dictionary.version} from {path} "
        f"({len(dictionary.indicators)} indicators, "
        f"{len(dictionary.restricted_indicators())} restricted, "
        f"{len(dictionary.field_index)} fields)"
    )
    return dictionary


class CatalogStore:
    """
    Holder of the process-wide catalog reference.

    Readers take `store.current` once per evaluation and pass that snapshot
    down; they never lock. Writers (reload/swap) are serialised and publish a
    fully built dictionary with a single reference assignment.
    """

    def __init__(self, dictionary: SemanticDictionary, source_path: Optional[Union[str, Path]] = None):
        self._current = dictionary
        self._source_path = Path(source_path) if source_path else None
        self._write_lock = threading.Lock()

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "CatalogStore":
        return cls(load_catalog(path), source_path=path)

    @property
    def current(self) -> SemanticDictionary:
        return self._current

    @property
    def source_path(self) -> Optional[Path]:
        return self._source_path

    def swap(self, dictionary: SemanticDictionary) -> SemanticDictionary:
        """Publish an already-built dictionary. Returns the previous one."""
        with self._write_lock:
            previous = self._current
            self._current = dictionary
        logger.info(f"[CATALOG] Swapped v{previous.version} -> v{dictionary.version}")
        return previous

    def reload(self, path: Optional[Union[str, Path]] = None) -> SemanticDictionary:
        """
        Load a new catalog and swap it in. On failure the current catalog
        stays in place and CatalogLoadError propagates.
        """
        target = Path(path) if path else self._source_path
        if target is None:
            raise CatalogLoadError("no catalog path configured for reload")

        with self._write_lock:
            fresh = load_catalog(target)
            self._current = fresh
            self._source_path = target
        logger.info(f"[CATALOG] Reloaded v{fresh.version} from {target}")
        return fresh
