# backend/matcher_config.py

from dataclasses import dataclass
from typing import Dict, Tuple


DEFAULT_TOP_N = 5
MAX_TOP_N = 15


@dataclass(frozen=True)
class MatcherConfig:
    # phrase signal (symptom patterns)
    phrase_exact_weight: int = 3
    phrase_partial_many_weight: int = 2
    phrase_partial_one_weight: int = 1
    partial_min_hits: int = 2
    min_token_length: int = 4

    symptom_short_weight: int = 2
    system_weight: int = 1
    keyword_weight: int = 1

    # records scoring below this are dropped
    min_score: int = 1

    use_phrases: bool = True
    use_symptom_short: bool = True
    use_system: bool = True
    use_keywords: bool = True


DEFAULT_CONFIG = MatcherConfig()


# Accepted spellings for each record field, first match wins.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "id": ("id", "issue_id", "key"),
    "title": ("title", "name"),
    "symptom_patterns": ("symptomPatterns", "symptom_patterns", "patterns"),
    "symptom_short": ("symptomShort", "symptom_short", "symptom"),
    "system": ("system", "category", "domain"),
    "keywords": ("keywords",),
    "possible_causes": ("possibleCauses", "possible_causes", "likely_causes"),
    "recommended_actions": ("recommendedActions", "recommended_actions", "fixes"),
    "checks": ("checks",),
    "warnings": ("warnings", "safety_warnings"),
    "severity": ("severity",),
    "notes": ("notes", "description"),
}
