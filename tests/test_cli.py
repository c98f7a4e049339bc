"""Tests for the command line interface."""

import json
import sqlite3
from unittest.mock import MagicMock

import pytest
import yaml
from click.testing import CliRunner

from threatly.cli import main
from threatly.database import get_db, reset_db


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Config file pointing at a temporary data dir; returns (runner, args, db)."""
    for name in ("ALERT_BATCH_SIZE", "BATCH_SIZE", "ALERT_MAX_ARTICLES", "ALERT_BATCH_DELAY"):
        monkeypatch.delenv(name, raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "storage": {"data_dir": str(tmp_path / "data")},
                "classification": {"batch_size": 2, "batch_delay_seconds": 0},
            }
        )
    )
    reset_db()
    db = get_db(data_dir=str(tmp_path / "data"))
    yield CliRunner(), ["-c", str(config_path)], db
    reset_db()


def test_keywords_add_and_list(cli_env):
    runner, args, db = cli_env

    result = runner.invoke(main, args + ["keywords", "add", "Adyen", "payment processor"])
    assert result.exit_code == 0
    assert "Added keyword" in result.output

    duplicate = runner.invoke(main, args + ["keywords", "add", "adyen", "again"])
    assert duplicate.exit_code == 1

    listing = runner.invoke(main, args + ["keywords", "list"])
    assert "Adyen (adyen)" in listing.output
    assert len(db.list_keywords()) == 1


def test_keywords_remove_unknown(cli_env):
    runner, args, _ = cli_env
    result = runner.invoke(main, args + ["keywords", "remove", "99"])
    assert result.exit_code == 1


def test_prompts_add_and_activate(cli_env, tmp_path):
    runner, args, db = cli_env
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("Analyze {articles} with {alerts}")

    result = runner.invoke(main, args + ["prompts", "add", "custom", str(prompt_file), "--activate"])
    assert result.exit_code == 0
    assert db.get_active_prompt().name == "custom"

    runner.invoke(main, args + ["prompts", "deactivate"])
    assert db.get_active_prompt() is None


def test_status(cli_env):
    runner, args, db = cli_env
    db.insert_article(link="https://a.com", title="A", content="C")

    result = runner.invoke(main, args + ["status"])
    assert result.exit_code == 0
    assert "Unclassified: 1" in result.output
    assert "(built-in default)" in result.output


def test_classify_dry_run(cli_env):
    runner, args, db = cli_env
    for i in range(3):
        db.insert_article(link=f"https://a.com/{i}", title="A", content="C")

    result = runner.invoke(main, args + ["classify", "--dry-run"])
    assert result.exit_code == 0
    assert "3 articles pending, 2 batches" in result.output


def test_classify_runs_pipeline(cli_env, monkeypatch):
    runner, args, db = cli_env
    aid = db.insert_article(link="https://a.com", title="A", content="C")

    mock_provider = MagicMock()
    mock_provider.complete.return_value = json.dumps([{"id": str(aid), "threatLevel": "MEDIUM"}])
    monkeypatch.setattr("threatly.classifier.create_provider", lambda config: mock_provider)

    result = runner.invoke(main, args + ["classify"])
    assert result.exit_code == 0
    assert "Articles updated: 1" in result.output
    assert db.get_article_by_id(aid).threat_level == "MEDIUM"


def test_classify_reports_lease_storage_error(cli_env, monkeypatch):
    runner, args, db = cli_env
    db.insert_article(link="https://a.com", title="A", content="C")

    monkeypatch.setattr("threatly.classifier.create_provider", lambda config: MagicMock())
    monkeypatch.setattr(
        "threatly.database.Database.acquire_lease",
        MagicMock(side_effect=sqlite3.OperationalError("database is locked")),
    )

    result = runner.invoke(main, args + ["classify"])
    assert result.exit_code == 1
    assert "database is locked" in result.output


def test_reclassify(cli_env):
    runner, args, db = cli_env
    aid = db.insert_article(link="https://a.com", title="A", content="C")
    db.update_article_classification(
        aid, threat_level="LOW", threat_type="other", industries=[], is_spam=False, alert_matches=[]
    )

    assert runner.invoke(main, args + ["reclassify"]).exit_code == 1

    result = runner.invoke(main, args + ["reclassify", str(aid)])
    assert "Reset 1 articles" in result.output
    assert not db.get_article_by_id(aid).is_classified
