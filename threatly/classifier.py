"""Batch LLM alert classification for Threatly."""

import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field

from .database import Article, Database, Keyword, get_db
from .llm import LLMProvider, ProviderError, create_provider
from .prompt import DEFAULT_MAX_CONTENT_CHARS, SYSTEM_PROMPT, build_prompt
from .response import ClassificationResult, MalformedResponse, parse_classification_response

logger = logging.getLogger(__name__)

LEASE_NAME = "alert-classification"


class CatalogUnavailable(Exception):
    """The keyword catalog could not be loaded; nothing can be classified."""


class SelectionUnavailable(Exception):
    """Unprocessed articles could not be read from the store."""


class RunInProgress(Exception):
    """Another classification run holds the lease."""


class LeaseUnavailable(Exception):
    """The run lease could not be read or written."""


@dataclass
class ClassifierSettings:
    """Tunables for a classification run."""

    batch_size: int = 5
    max_articles: int = 200
    batch_delay: float = 2.0
    temperature: float = 0.1
    max_output_tokens: int = 4000
    max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS
    lease_ttl: int = 3600

    @classmethod
    def from_config(cls, config: dict) -> "ClassifierSettings":
        """Read the ``classification`` section, letting env variables override it."""
        section = config.get("classification", {}) or {}
        defaults = cls()

        def pick(env_names: tuple[str, ...], key: str, default, cast):
            for name in env_names:
                value = os.environ.get(name)
                if value:
                    return cast(value)
            value = section.get(key)
            return default if value is None else cast(value)

        settings = cls(
            batch_size=pick(
                ("ALERT_BATCH_SIZE", "BATCH_SIZE"), "batch_size", defaults.batch_size, int
            ),
            max_articles=pick(
                ("ALERT_MAX_ARTICLES",), "max_articles", defaults.max_articles, int
            ),
            batch_delay=pick(
                ("ALERT_BATCH_DELAY",), "batch_delay_seconds", defaults.batch_delay, float
            ),
            temperature=pick(
                ("ALERT_TEMPERATURE",), "temperature", defaults.temperature, float
            ),
            max_output_tokens=pick(
                ("ALERT_MAX_TOKENS",), "max_output_tokens", defaults.max_output_tokens, int
            ),
            max_content_chars=pick((), "max_content_chars", defaults.max_content_chars, int),
            lease_ttl=pick((), "lease_ttl_seconds", defaults.lease_ttl, int),
        )
        if settings.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if settings.max_articles < 0:
            raise ValueError("max_articles must not be negative")
        if settings.lease_ttl < 1:
            raise ValueError("lease_ttl_seconds must be at least 1")
        return settings


@dataclass
class ApplyResult:
    """Outcome of persisting one batch."""

    updated: int = 0
    errors: dict[int, str] = field(default_factory=dict)


@dataclass
class ClassificationRunResult:
    """Results from a classification run."""

    batches: int
    processed: int
    failed_batches: int = 0
    write_errors: int = 0


class AlertClassifier:
    """Classifies unprocessed articles against the alert keyword catalog."""

    def __init__(
        self,
        config: dict,
        db: Database | None = None,
        provider: LLMProvider | None = None,
        settings: ClassifierSettings | None = None,
    ):
        self.config = config
        self.db = db or get_db()
        self.provider = provider or create_provider(config)
        self.settings = settings or ClassifierSettings.from_config(config)
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._lease_lost = threading.Event()

    def stop(self) -> None:
        """Ask a running classification to finish after the current batch."""
        self._stop.set()

    def run(self) -> ClassificationRunResult:
        """Classify all pending articles, batch by batch.

        The run holds a lease in the database for its whole duration. A
        background thread keeps renewing it, and each batch checks it first,
        so a run that outlives ``lease_ttl`` is not overtaken by a second one.
        """
        if not self._run_lock.acquire(blocking=False):
            raise RunInProgress("A classification run is already active in this process")

        owner = uuid.uuid4().hex
        try:
            try:
                acquired = self.db.acquire_lease(LEASE_NAME, owner, self.settings.lease_ttl)
            except sqlite3.Error as e:
                raise LeaseUnavailable(f"Could not take the run lease: {e}") from e
            if not acquired:
                raise RunInProgress("Another classification run holds the lease")

            self._stop.clear()
            self._lease_lost.clear()
            done = threading.Event()
            keeper = threading.Thread(
                target=self._keep_lease, args=(owner, done), name="lease-keeper", daemon=True
            )
            keeper.start()
            try:
                return self._run(owner)
            finally:
                done.set()
                keeper.join()
                self._release_lease(owner)
        finally:
            self._run_lock.release()

    def _keep_lease(self, owner: str, done: threading.Event) -> None:
        interval = self.settings.lease_ttl / 3
        while not done.wait(interval):
            if not self._renew_lease(owner):
                self._lease_lost.set()
                return

    def _renew_lease(self, owner: str) -> bool:
        try:
            return self.db.renew_lease(LEASE_NAME, owner, self.settings.lease_ttl)
        except sqlite3.Error as e:
            logger.warning("Could not renew the run lease: %s", e)
            return False

    def _release_lease(self, owner: str) -> None:
        try:
            self.db.release_lease(LEASE_NAME, owner)
        except sqlite3.Error as e:
            logger.error("Could not release the run lease, it expires on its own: %s", e)

    def _run(self, owner: str) -> ClassificationRunResult:
        if not self.provider:
            raise ProviderError("No LLM provider available for classification")

        catalog = self.load_catalog()
        articles = self.select_unprocessed(self.settings.max_articles)
        if not articles:
            logger.info("No unprocessed articles found")
            return ClassificationRunResult(batches=0, processed=0)

        batch_size = self.settings.batch_size
        batches = [articles[i : i + batch_size] for i in range(0, len(articles), batch_size)]
        logger.info(
            "Processing %d articles in %d batches of %d",
            len(articles),
            len(batches),
            batch_size,
        )

        template = self._load_template()

        processed = 0
        failed = 0
        write_errors = 0
        batch_count = 0

        for number, batch in enumerate(batches, 1):
            if self._stop.is_set():
                logger.info(
                    "Stop requested, leaving %d batches for the next run",
                    len(batches) - number + 1,
                )
                break
            if self._lease_lost.is_set() or not self._renew_lease(owner):
                logger.error(
                    "Run lease lost, leaving %d batches for the next run",
                    len(batches) - number + 1,
                )
                break

            batch_count += 1
            logger.info("Processing batch %d/%d", number, len(batches))
            try:
                applied = self._process_batch(batch, catalog, template)
                processed += applied.updated
                write_errors += len(applied.errors)
                logger.info("Batch %d completed: %d articles updated", number, applied.updated)
            except (ProviderError, MalformedResponse) as e:
                logger.error("Batch %d failed: %s", number, e)
                failed += 1
            except Exception:
                logger.exception("Unexpected error in batch %d", number)
                failed += 1

            if number < len(batches) and self.settings.batch_delay > 0:
                logger.debug("Waiting %.1fs before next batch", self.settings.batch_delay)
                self._stop.wait(self.settings.batch_delay)

        logger.info(
            "Classification complete: %d articles updated in %d batches (%d failed)",
            processed,
            batch_count,
            failed,
        )

        return ClassificationRunResult(
            batches=batch_count,
            processed=processed,
            failed_batches=failed,
            write_errors=write_errors,
        )

    def load_catalog(self) -> list[Keyword]:
        """Snapshot the keyword catalog for the whole run."""
        try:
            catalog = self.db.list_keywords()
        except sqlite3.Error as e:
            raise CatalogUnavailable(f"Could not load keyword catalog: {e}") from e

        if not catalog:
            logger.warning("Keyword catalog is empty; no article will match an alert")
        else:
            logger.info("Loaded %d alert keywords", len(catalog))
        return catalog

    def select_unprocessed(self, max_count: int) -> list[Article]:
        try:
            articles = self.db.find_unclassified(max_count)
        except sqlite3.Error as e:
            raise SelectionUnavailable(f"Could not select unprocessed articles: {e}") from e
        logger.info("Found %d unprocessed articles with content", len(articles))
        return articles

    def invoke(self, prompt_text: str) -> str:
        logger.debug("Prompt length: %d characters", len(prompt_text))
        return self.provider.complete(
            SYSTEM_PROMPT,
            prompt_text,
            max_tokens=self.settings.max_output_tokens,
            temperature=self.settings.temperature,
        )

    def apply_results(self, results: list[ClassificationResult]) -> ApplyResult:
        """Write results back onto their articles, one at a time."""
        applied = ApplyResult()
        for result in results:
            try:
                found = self.db.update_article_classification(
                    article_id=result.article_id,
                    threat_level=result.threat_level,
                    threat_type=result.threat_type,
                    industries=result.industries,
                    is_spam=result.is_spam,
                    alert_matches=result.matched_keyword_ids,
                )
            except sqlite3.Error as e:
                logger.error("Error updating article %s: %s", result.article_id, e)
                applied.errors[result.article_id] = str(e)
                continue

            if not found:
                logger.warning("Article %s no longer exists, skipping", result.article_id)
                applied.errors[result.article_id] = "article not found"
                continue

            applied.updated += 1
            logger.debug(
                "Updated article %s: %s (%s), %d alert matches, spam: %s",
                result.article_id,
                result.threat_level,
                result.threat_type,
                len(result.matched_keyword_ids),
                result.is_spam,
            )
        return applied

    def _process_batch(self, batch: list[Article], catalog: list[Keyword], template) -> ApplyResult:
        prompt_text = build_prompt(
            batch, catalog, template, max_content_chars=self.settings.max_content_chars
        )
        raw = self.invoke(prompt_text)
        results = parse_classification_response(raw, batch, catalog)
        return self.apply_results(results)

    def _load_template(self):
        try:
            template = self.db.get_active_prompt()
        except sqlite3.Error as e:
            logger.error("Error loading active prompt, using default: %s", e)
            return None
        if template:
            logger.info("Loaded active prompt: %s", template.name)
        else:
            logger.info("No active prompt found, using default prompt")
        return template


def run_classification_batch(
    config: dict,
    db: Database | None = None,
    provider: LLMProvider | None = None,
) -> dict:
    """Run one classification pass and return ``{"batches", "processed"}``."""
    result = AlertClassifier(config, db=db, provider=provider).run()
    return {"batches": result.batches, "processed": result.processed}
