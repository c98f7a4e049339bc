"""Prompt construction for batch alert classification."""

import json
import re

from .database import Article, Keyword, PromptTemplate

DEFAULT_MAX_CONTENT_CHARS = 4000

_PLACEHOLDER_RE = re.compile(r"\{(alerts|articles)\}")

SYSTEM_PROMPT = (
    "You are a cybersecurity threat intelligence analyst. "
    "Analyze articles against alerts and return JSON results."
)

DEFAULT_PROMPT = """You are a cybersecurity threat intelligence analyst. Analyze each article against the predefined alerts and return structured results.

## ALERTS:
{alerts}

## ARTICLES TO ANALYZE:
{articles}

## INSTRUCTIONS:
For each article, analyze the title and content against each alert:

### ALERT MATCHING:
- Compare article content against each alert's "name" and "description"
- If there's a match (exact, synonym, or contextual), add the alert's "id" to "alertMatches"
- IMPORTANT: Always return the keyword's "id" value, NOT the description text
- Look for keyword matches, related terms, and industry-specific terminology
- Example: If an article mentions a company named in an alert, return that alert's "id" like "12"

### CLASSIFICATION:
- **threatLevel**: HIGH, MEDIUM, LOW, or NONE
- **threatType**: malware, phishing, ransomware, data breach, vulnerability, APT, insider threat, or other
- **industries**: Choose from Automotive, Finance, ICS/OT, Healthcare, Technology, Government, Retail, Manufacturing
- **isSpam**: true for ads/promotional content, false for genuine news

## RESPONSE FORMAT:
Return a JSON array with one object per article, exactly this structure:
[
  {
    "id": "ARTICLE_ID_HERE",
    "threatLevel": "HIGH",
    "threatType": "malware",
    "industries": ["Automotive", "Technology"],
    "alertMatches": ["KEYWORD_ID_1", "KEYWORD_ID_2"],
    "isSpam": false
  }
]

CRITICAL: In "alertMatches", always use the keyword's "id" value from the ALERTS section above.
NEVER return description text, names, or any other value - ONLY the "id" strings.

Only respond with the JSON array, no additional text."""


def format_catalog(catalog: list[Keyword]) -> str:
    """Serialize the keyword catalog as a JSON array the model can cite ids from."""
    return json.dumps(
        [
            {
                "id": str(keyword.id),
                "name": keyword.name,
                "displayName": keyword.display_name or keyword.name or "Unknown",
                "description": keyword.description or "",
            }
            for keyword in catalog
        ],
        indent=2,
        ensure_ascii=False,
    )


def format_articles(
    articles: list[Article], max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS
) -> str:
    """Serialize a batch of articles as labeled blocks."""
    blocks = []
    for article in articles:
        content = article.content or "No Content"
        if len(content) > max_content_chars:
            content = content[:max_content_chars] + "..."

        blocks.append(
            f"Article ID: {article.id}\n"
            f"Title: {article.title or 'No Title'}\n"
            f"Content: {content}\n"
            f"Source: {article.source or 'No Source'}\n"
            f"Link: {article.link or 'No Link'}\n"
            "---"
        )
    return "\n\n".join(blocks)


def _substitute(content: str, sections: dict[str, str]) -> str:
    # Single pass, so placeholder-looking text inside inserted data stays literal.
    return _PLACEHOLDER_RE.sub(lambda m: sections[m.group(1)], content)


def build_prompt(
    articles: list[Article],
    catalog: list[Keyword],
    template: PromptTemplate | None = None,
    max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
) -> str:
    """Build the user prompt for one batch.

    An operator template gets its placeholders substituted; a section whose
    placeholder is missing is appended instead. Other braces in a template
    (JSON examples) are left alone.
    """
    sections = {
        "alerts": format_catalog(catalog),
        "articles": format_articles(articles, max_content_chars),
    }

    if not (template and template.content and template.content.strip()):
        return _substitute(DEFAULT_PROMPT, sections)

    content = template.content
    present = set(_PLACEHOLDER_RE.findall(content))
    content = _substitute(content, sections)
    if "alerts" not in present:
        content += f"\n\n## ALERTS\n{sections['alerts']}"
    if "articles" not in present:
        content += f"\n\n## ARTICLES TO ANALYZE\n{sections['articles']}"
    return content
