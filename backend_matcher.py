# backend/matcher.py

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from backend_logging import get_logger
from backend_matcher_config import (
    DEFAULT_CONFIG,
    DEFAULT_TOP_N,
    FIELD_ALIASES,
    MAX_TOP_N,
    MatcherConfig,
)
from backend_settings import get_settings


logger = get_logger("matcher")


def _aliases(field_name: str) -> AliasChoices:
    return AliasChoices(*FIELD_ALIASES[field_name])


class IssueRecord(BaseModel):
    """
    One knowledge-base entry. Every field is optional; a missing field simply
    contributes nothing to scoring or to the prompt.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(default="", validation_alias=_aliases("id"))
    title: str = Field(default="", validation_alias=_aliases("title"))
    symptom_patterns: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("symptom_patterns"))
    symptom_short: str = Field(default="", validation_alias=_aliases("symptom_short"))
    system: str = Field(default="", validation_alias=_aliases("system"))
    keywords: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("keywords"))
    possible_causes: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("possible_causes"))
    recommended_actions: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("recommended_actions"))
    checks: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("checks"))
    warnings: Tuple[str, ...] = Field(default=(), validation_alias=_aliases("warnings"))
    severity: str = Field(default="", validation_alias=_aliases("severity"))
    notes: str = Field(default="", validation_alias=_aliases("notes"))
    source: str = ""

    @field_validator("id", "title", "symptom_short", "system", "severity", "notes", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        return str(value).strip()

    @field_validator(
        "symptom_patterns",
        "keywords",
        "possible_causes",
        "recommended_actions",
        "checks",
        "warnings",
        mode="before",
    )
    @classmethod
    def _coerce_text_list(cls, value: Any) -> Tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"expected a list of strings, got {type(value).__name__}")
        return tuple(str(item) for item in value if item is not None)

    @property
    def label(self) -> str:
        return self.title or self.symptom_short or self.id


@dataclass(frozen=True)
class ScoredMatch:
    record: IssueRecord
    score: int

    @property
    def title(self) -> str:
        return self.record.label


# -------------------- LOADING --------------------

class _MalformedDocument(ValueError):
    pass


def _iter_raw_records(document: Any) -> Iterable[Tuple[Any, Optional[str], Optional[str]]]:
    """
    Yields (raw_record, category, key) from one JSON document.

    Accepted shapes:
    - list of records
    - {"issues": [...]}
    - {category: [records], ...} or {id: record, ...}
    """
    if isinstance(document, list):
        for item in document:
            yield item, None, None
        return

    if not isinstance(document, dict):
        raise _MalformedDocument(f"top-level JSON must be a list or object, got {type(document).__name__}")

    if isinstance(document.get("issues"), list):
        for item in document["issues"]:
            yield item, None, None
        return

    for key, value in document.items():
        if isinstance(value, list):
            for item in value:
                yield item, str(key), None
        elif isinstance(value, dict):
            yield value, None, str(key)


def _parse_document(document: Any, source: str) -> List[IssueRecord]:
    stem = Path(source).stem
    records: List[IssueRecord] = []
    skipped = 0

    for raw, category, key in _iter_raw_records(document):
        if not isinstance(raw, dict):
            skipped += 1
            continue
        try:
            record = IssueRecord.model_validate(raw)
        except ValidationError as e:
            skipped += 1
            logger.warning("record_skipped", source=source, errors=e.error_count())
            continue

        update: Dict[str, str] = {"source": source}
        if not record.id:
            update["id"] = key or f"{stem}::{len(records) + 1}"
        if not record.system and category:
            update["system"] = category
        records.append(record.model_copy(update=update))

    if skipped:
        logger.warning("records_skipped", source=source, count=skipped)
    return records


def _read_json(file_path: Path) -> Any:
    with file_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _knowledge_files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix.lower() == ".json" and p.is_file())
    if path.is_file():
        return [path]
    return []


def load_collection(path: Union[str, Path]) -> Tuple[IssueRecord, ...]:
    """
    Load every issue record found at `path` (a JSON file or a directory of
    JSON files). Never raises: unreadable or malformed documents are skipped
    and an empty tuple is returned when nothing could be loaded.
    """
    path = Path(path)
    try:
        files = _knowledge_files(path)
    except OSError as e:
        logger.warning("knowledge_path_unreadable", path=str(path), error=str(e))
        return ()

    if not files:
        logger.warning("knowledge_path_empty", path=str(path))
        return ()

    records: List[IssueRecord] = []
    for file_path in files:
        try:
            document = _read_json(file_path)
            records.extend(_parse_document(document, file_path.name))
        except (OSError, ValueError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.warning("knowledge_file_skipped", file=file_path.name, error=str(e))

    logger.info("knowledge_loaded", path=str(path), files=len(files), issues=len(records))
    return tuple(records)


# -------------------- CACHE --------------------

_collection: Optional[Tuple[IssueRecord, ...]] = None
_collection_lock = threading.Lock()


def get_collection() -> Tuple[IssueRecord, ...]:
    """Return the process-wide collection, loading it on first use."""
    global _collection
    if _collection is not None:
        return _collection
    with _collection_lock:
        if _collection is None:
            _collection = load_collection(get_settings().knowledge_path)
    return _collection


def reset_collection() -> None:
    """Forget the cached collection; the next call to get_collection() reloads it."""
    global _collection
    with _collection_lock:
        _collection = None


# -------------------- SCORING --------------------

def _phrase_score(text: str, pattern: str, config: MatcherConfig) -> int:
    phrase = pattern.strip().lower()
    if not phrase:
        return 0
    if phrase in text:
        return config.phrase_exact_weight

    hits = sum(
        1 for token in phrase.split()
        if len(token) >= config.min_token_length and token in text
    )
    if hits >= config.partial_min_hits:
        return config.phrase_partial_many_weight
    if hits > 0:
        return config.phrase_partial_one_weight
    return 0


def score_record(text: str, record: IssueRecord, config: MatcherConfig = DEFAULT_CONFIG) -> int:
    """
    Sum of independent signals for one record. `text` must already be
    lowercased.
    """
    score = 0

    if config.use_phrases:
        for pattern in record.symptom_patterns:
            score += _phrase_score(text, pattern, config)

    if config.use_symptom_short:
        short = record.symptom_short.lower()
        if short and short in text:
            score += config.symptom_short_weight

    if config.use_system:
        system = record.system.lower()
        if system and system in text:
            score += config.system_weight

    if config.use_keywords:
        for keyword in record.keywords:
            kw = keyword.strip().lower()
            if kw and kw in text:
                score += config.keyword_weight

    return score


def _restrict_to_systems(
    collection: Sequence[IssueRecord], systems: Optional[Sequence[str]]
) -> Sequence[IssueRecord]:
    if not systems:
        return collection
    wanted = {s.strip().lower() for s in systems if s and s.strip()}
    pool = [r for r in collection if r.system.lower() in wanted]
    # unknown systems fall back to the whole collection
    return pool or collection


def find_relevant_issues(
    text: Optional[str],
    top_n: int = DEFAULT_TOP_N,
    *,
    collection: Optional[Sequence[IssueRecord]] = None,
    config: MatcherConfig = DEFAULT_CONFIG,
    systems: Optional[Sequence[str]] = None,
) -> List[ScoredMatch]:
    """
    Rank knowledge-base records against free text.

    Returns at most `top_n` matches ordered by descending score; records
    with equal scores keep their collection order. An empty list means no
    knowledge-base context is available, never an error.
    """
    if not isinstance(text, str) or not text.strip():
        return []

    if collection is None:
        collection = get_collection()
    if not collection:
        return []

    if isinstance(top_n, bool) or not isinstance(top_n, int):
        top_n = DEFAULT_TOP_N
    limit = max(1, min(top_n, MAX_TOP_N))
    lowered = text.lower()

    scored: List[ScoredMatch] = []
    for record in _restrict_to_systems(collection, systems):
        score = score_record(lowered, record, config)
        if score > 0 and score >= config.min_score:
            scored.append(ScoredMatch(record=record, score=score))

    # sorted() is stable, ties keep source order
    scored = sorted(scored, key=lambda m: m.score, reverse=True)
    return scored[:limit]


def knowledge_stats() -> Dict[str, Any]:
    collection = get_collection()
    files = sorted({r.source for r in collection if r.source})
    systems = sorted({r.system for r in collection if r.system})
    return {
        "knowledge_path": get_settings().knowledge_path,
        "files_count": len(files),
        "files": files,
        "issues_count": len(collection),
        "systems_count": len(systems),
        "systems": systems,
    }
