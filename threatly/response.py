"""Parsing and normalization of LLM classification responses."""

import logging
from dataclasses import dataclass, field

from .database import Article, Keyword
from .llm import parse_json_response

logger = logging.getLogger(__name__)

THREAT_LEVELS = ("HIGH", "MEDIUM", "LOW", "NONE")
THREAT_LEVEL_ALIASES = {"CRITICAL": "HIGH"}

# Applied in order; a legacy key only fills its modern key when the modern
# value is blank, so modern keys win when a response carries both.
LEGACY_FIELD_MAP = [
    ("articleId", "id"),
    ("Article ID", "id"),
    ("Threat Level", "threatLevel"),
    ("Threat Type", "threatType"),
    ("Affected Industries", "industries"),
    ("Industries", "industries"),
    ("Matched Alerts", "alertMatches"),
    ("matches", "alertMatches"),
    ("Is Spam", "isSpam"),
    ("spam", "isSpam"),
]

_PLACEHOLDER_VALUES = {"", "n/a", "na", "none", "null"}
_TRUE_STRINGS = {"true", "1", "yes"}
_BLANK_STRINGS = {"", "n/a"}


class MalformedResponse(Exception):
    """The model's output is not a JSON array of classification objects."""


@dataclass
class ClassificationResult:
    """Normalized classification for one article, ready to persist."""

    article_id: int
    threat_level: str = "NONE"
    threat_type: str = "N/A"
    industries: list[str] = field(default_factory=list)
    is_spam: bool = False
    matched_keyword_ids: list[int] = field(default_factory=list)


def parse_classification_response(
    raw: str, articles: list[Article], catalog: list[Keyword]
) -> list[ClassificationResult]:
    """Turn raw model output into one result per article the model answered for.

    Articles the model skipped are left out so they stay eligible for the
    next run. Raises MalformedResponse when the output has the wrong shape.
    """
    items = extract_items(raw)

    by_id = {str(a.id): a for a in articles}
    valid_keyword_ids = {str(k.id): k.id for k in catalog}

    results: list[ClassificationResult] = []
    seen: set[str] = set()

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning("Skipping non-object result at position %d", index)
            continue

        record = normalize_keys(item)
        article = _resolve_article(record, index, articles, by_id)
        if article is None:
            continue

        key = str(article.id)
        if key in seen:
            logger.warning("Ignoring duplicate result for article %s", key)
            continue
        seen.add(key)

        results.append(_build_result(article, record, valid_keyword_ids))

    missing = len(articles) - len(results)
    if missing:
        logger.warning("Model returned no result for %d of %d articles", missing, len(articles))

    return results


def extract_items(raw: str) -> list:
    """Pull the list of per-article objects out of the model's text."""
    if not raw or not raw.strip():
        raise MalformedResponse("Empty model response")

    data = parse_json_response(raw)
    if data is None:
        raise MalformedResponse("Model response is not valid JSON")

    if isinstance(data, list):
        return data

    if isinstance(data, dict):
        if _looks_like_result(data):
            return [data]
        # JSON-mode models wrap the array in an object
        lists = [v for v in data.values() if isinstance(v, list)]
        if len(lists) == 1 and all(isinstance(v, dict) for v in lists[0]):
            return lists[0]

    raise MalformedResponse(
        f"Expected a JSON array of results, got {type(data).__name__}"
    )


def normalize_keys(item: dict) -> dict:
    """Map legacy human-readable keys onto the modern flat schema."""
    record = dict(item)
    for legacy_key, modern_key in LEGACY_FIELD_MAP:
        if legacy_key in record and _is_blank(record.get(modern_key)):
            record[modern_key] = record[legacy_key]
    return record


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, (bool, int, float)):
        return not value
    return isinstance(value, str) and value.strip().lower() in _BLANK_STRINGS


def coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def coerce_list(value) -> list:
    """Return a de-duplicated list, wrapping scalars and dropping placeholders."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]

    items = []
    for v in value:
        if v is None or isinstance(v, (dict, list)):
            continue
        if isinstance(v, str):
            v = v.strip()
            if v.lower() in _PLACEHOLDER_VALUES:
                continue
        if v not in items:
            items.append(v)
    return items


def normalize_threat_level(value) -> str:
    if not isinstance(value, str) or not value.strip():
        return "NONE"
    level = value.strip().upper()
    level = THREAT_LEVEL_ALIASES.get(level, level)
    if level not in THREAT_LEVELS:
        logger.warning("Unknown threat level %r, using NONE", value)
        return "NONE"
    return level


def filter_keyword_ids(matches: list, valid_keyword_ids: dict[str, int]) -> list[int]:
    """Keep only ids present in the catalog snapshot, in catalog id form."""
    kept = []
    for match in matches:
        keyword_id = valid_keyword_ids.get(str(match))
        if keyword_id is None:
            logger.warning("Dropping unknown keyword id %r", match)
            continue
        if keyword_id not in kept:
            kept.append(keyword_id)
    return kept


def _resolve_article(
    record: dict, index: int, articles: list[Article], by_id: dict[str, Article]
) -> Article | None:
    article_id = record.get("id")
    if article_id is not None and str(article_id).strip():
        article = by_id.get(str(article_id).strip())
        if article is None:
            logger.warning("Result references article %r outside this batch", article_id)
        return article

    # Older responses omit ids; fall back to batch order
    if index < len(articles):
        logger.debug("Result %d has no id, matching by position", index)
        return articles[index]

    logger.warning("Result %d has no id and no article at that position", index)
    return None


def _build_result(
    article: Article, record: dict, valid_keyword_ids: dict[str, int]
) -> ClassificationResult:
    threat_type = record.get("threatType")
    if not isinstance(threat_type, str) or not threat_type.strip():
        threat_type = "N/A"

    matches = coerce_list(record.get("alertMatches"))

    return ClassificationResult(
        article_id=article.id,
        threat_level=normalize_threat_level(record.get("threatLevel")),
        threat_type=threat_type.strip(),
        industries=[str(i) for i in coerce_list(record.get("industries"))],
        is_spam=coerce_bool(record.get("isSpam")),
        matched_keyword_ids=filter_keyword_ids(matches, valid_keyword_ids),
    )


def _looks_like_result(data: dict) -> bool:
    keys = set(normalize_keys(data))
    return bool(keys & {"id", "threatLevel", "alertMatches"})
