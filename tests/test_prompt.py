"""Tests for prompt construction."""

import json

from threatly.database import Article, Keyword, PromptTemplate
from threatly.prompt import build_prompt, format_articles, format_catalog


def _article(aid=1, **kwargs):
    defaults = dict(
        link="https://example.com/a",
        title="Car hacked",
        content="attackers accessed ECU",
        source="SecurityWeek",
        published_at=None,
    )
    defaults.update(kwargs)
    return Article(id=aid, **defaults)


def _keyword(kid=1, name="automotive", description="car security"):
    return Keyword(id=kid, name=name, display_name=name.title(), description=description)


def _template(content):
    return PromptTemplate(id=1, name="custom", content=content, is_active=True)


def test_format_catalog_uses_string_ids():
    data = json.loads(format_catalog([_keyword(7)]))
    assert data == [
        {
            "id": "7",
            "name": "automotive",
            "displayName": "Automotive",
            "description": "car security",
        }
    ]


def test_format_articles_labels_every_field():
    text = format_articles([_article(42)])
    assert "Article ID: 42" in text
    assert "Title: Car hacked" in text
    assert "Content: attackers accessed ECU" in text
    assert "Source: SecurityWeek" in text
    assert "Link: https://example.com/a" in text


def test_format_articles_truncates_long_content():
    text = format_articles([_article(content="x" * 50)], max_content_chars=10)
    assert "Content: " + "x" * 10 + "...\n" in text


def test_format_articles_placeholders_for_missing_values():
    text = format_articles([_article(source=None, link="")])
    assert "Source: No Source" in text
    assert "Link: No Link" in text


def test_default_prompt_when_no_template():
    prompt = build_prompt([_article(5)], [_keyword(9)])
    assert '"id": "9"' in prompt
    assert "Article ID: 5" in prompt
    assert "alertMatches" in prompt
    assert "NOT the description text" in prompt
    assert "{alerts}" not in prompt
    assert "{articles}" not in prompt


def test_template_placeholders_are_substituted():
    template = _template("Rules:\n{alerts}\nNews:\n{articles}\nDone.")
    prompt = build_prompt([_article(5)], [_keyword(9)], template)

    assert prompt.startswith("Rules:\n[")
    assert prompt.endswith("Done.")
    assert "Article ID: 5" in prompt
    assert "## ALERTS" not in prompt
    assert "## ARTICLES TO ANALYZE" not in prompt


def test_missing_placeholders_are_appended():
    template = _template("Classify these.")
    prompt = build_prompt([_article(5)], [_keyword(9)], template)

    assert prompt.startswith("Classify these.")
    assert prompt.index("## ALERTS") < prompt.index("## ARTICLES TO ANALYZE")
    assert '"id": "9"' in prompt
    assert "Article ID: 5" in prompt


def test_only_missing_section_is_appended():
    template = _template("Alerts first: {alerts}")
    prompt = build_prompt([_article(5)], [_keyword(9)], template)

    assert "## ALERTS" not in prompt
    assert "## ARTICLES TO ANALYZE\nArticle ID: 5" in prompt


def test_other_braces_in_template_are_kept():
    template = _template('Reply like {"id": "..."} using {alerts} and {articles}')
    prompt = build_prompt([_article(5)], [_keyword(9)], template)
    assert '{"id": "..."}' in prompt


def test_placeholder_text_inside_data_is_not_expanded():
    keyword = _keyword(description="mentions {articles} literally")
    prompt = build_prompt([_article(5)], [keyword])
    assert "mentions {articles} literally" in prompt
    assert prompt.count("Article ID: 5") == 1


def test_blank_template_falls_back_to_default():
    prompt = build_prompt([_article(5)], [_keyword(9)], _template("   "))
    assert "RESPONSE FORMAT" in prompt
