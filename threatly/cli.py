"""CLI interface for Threatly."""

import importlib.resources
import logging
import shutil
import sys
from pathlib import Path

import click
import yaml
from dotenv import load_dotenv

load_dotenv()

CONFIG_DIR = Path.home() / ".config" / "threatly"
DATA_DIR = Path.home() / ".local" / "share" / "threatly"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def resolve_config_path(explicit: str | None) -> Path:
    """Resolve the config file path.

    Priority: --config flag > ~/.config/threatly/config.yaml > ./config.yaml
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            click.echo(f"Error: Config file not found: {explicit}", err=True)
            sys.exit(1)
        return path

    xdg_config = CONFIG_DIR / "config.yaml"
    if xdg_config.exists():
        return xdg_config

    cwd_config = Path("config.yaml")
    if cwd_config.exists():
        return cwd_config

    click.echo(
        "Error: No config file found. Searched:\n"
        f"  {xdg_config}\n"
        "  ./config.yaml\n"
        "\nRun 'threatly init' to create a default config.",
        err=True,
    )
    sys.exit(1)


def load_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def get_data_dir(config: dict) -> str:
    """Get the data directory path from config or XDG default."""
    configured = (config.get("storage") or {}).get("data_dir")
    if configured:
        return configured
    return str(DATA_DIR)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("-c", "--config", default=None, help="Path to config file")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config: str | None) -> None:
    """Threatly - LLM alert classification for threat intelligence feeds."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if ctx.invoked_subcommand == "init":
        return

    config_path = resolve_config_path(config)
    ctx.obj["config_path"] = str(config_path)
    ctx.obj["config"] = load_config(config_path)
    ctx.obj["data_dir"] = get_data_dir(ctx.obj["config"])


@main.command()
def init() -> None:
    """Initialize configuration in ~/.config/threatly/."""
    target = CONFIG_DIR / "config.yaml"
    if target.exists():
        click.echo(f"Config already exists: {target}")
        return

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    default_config = importlib.resources.files("threatly").joinpath("default_config.yaml")
    shutil.copy2(str(default_config), str(target))
    click.echo(f"Created config: {target}")
    click.echo("Edit it to configure the LLM provider and batch settings.")


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be classified without calling the LLM")
@click.pass_context
def classify(ctx: click.Context, dry_run: bool) -> None:
    """Classify unprocessed articles against the alert keywords."""
    from .classifier import (
        AlertClassifier,
        CatalogUnavailable,
        ClassifierSettings,
        LeaseUnavailable,
        RunInProgress,
        SelectionUnavailable,
    )
    from .database import get_db
    from .llm import ProviderError

    config = ctx.obj["config"]
    db = get_db(data_dir=ctx.obj["data_dir"])

    if dry_run:
        settings = ClassifierSettings.from_config(config)
        pending = db.find_unclassified(settings.max_articles)
        batches = -(-len(pending) // settings.batch_size)
        click.echo(f"[dry-run] {len(pending)} articles pending, {batches} batches")
        click.echo(f"[dry-run] {len(db.list_keywords())} alert keywords in catalog")
        return

    click.echo("Classifying articles...")
    classifier = AlertClassifier(config=config, db=db)
    try:
        result = classifier.run()
    except RunInProgress as e:
        click.echo(f"Skipped: {e}", err=True)
        sys.exit(1)
    except (CatalogUnavailable, SelectionUnavailable, LeaseUnavailable, ProviderError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("\nClassification complete:")
    click.echo(f"  Batches: {result.batches}")
    click.echo(f"  Articles updated: {result.processed}")
    if result.failed_batches:
        click.echo(f"  Failed batches: {result.failed_batches}")
    if result.write_errors:
        click.echo(f"  Write errors: {result.write_errors}")


@main.command()
@click.argument("article_ids", nargs=-1, type=int)
@click.option("--all", "reset_all", is_flag=True, help="Reset every classified article")
@click.pass_context
def reclassify(ctx: click.Context, article_ids: tuple[int, ...], reset_all: bool) -> None:
    """Mark articles as unclassified so the next run picks them up again."""
    from .database import get_db

    if not article_ids and not reset_all:
        click.echo("Error: give article IDs or --all", err=True)
        sys.exit(1)

    db = get_db(data_dir=ctx.obj["data_dir"])
    count = db.reset_classification(None if reset_all else list(article_ids))
    click.echo(f"Reset {count} articles for reclassification")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show database and classification status."""
    from .database import get_db

    db = get_db(data_dir=ctx.obj["data_dir"])
    stats = db.get_stats()
    active = db.get_active_prompt()

    click.echo("Articles:")
    click.echo(f"  Total: {stats['total_articles']}")
    click.echo(f"  Classified: {stats['classified_articles']}")
    click.echo(f"  Unclassified: {stats['unclassified_articles']}")
    click.echo(f"  With alert matches: {stats['matched_articles']}")
    click.echo(f"  Spam: {stats['spam_articles']}")
    if stats["threat_levels"]:
        click.echo("\nThreat levels:")
        for level, count in sorted(stats["threat_levels"].items(), key=lambda x: -x[1]):
            click.echo(f"  {level}: {count}")
    click.echo("\nCatalog:")
    click.echo(f"  Alert keywords: {stats['keywords']}")
    click.echo(f"  Prompts: {stats['prompts']}")
    click.echo(f"  Active prompt: {active.name if active else '(built-in default)'}")


# --- Keywords subcommand group ---


@main.group()
@click.pass_context
def keywords(ctx: click.Context) -> None:
    """Manage alert keywords."""
    from .database import get_db

    get_db(data_dir=ctx.obj["data_dir"])


@keywords.command("list")
def keywords_list() -> None:
    """List all alert keywords."""
    from .database import get_db

    db = get_db()
    items = db.list_keywords()

    if not items:
        click.echo("No alert keywords defined. Add one with: threatly keywords add")
        return

    click.echo("Alert Keywords:\n")
    for k in items:
        click.echo(f"  [{k.id}] {k.display_name} ({k.name})")
        desc = k.description[:60] + "..." if len(k.description) > 60 else k.description
        click.echo(f"        {desc}")


@keywords.command("add")
@click.argument("name")
@click.argument("description")
@click.option("--display-name", default=None, help="Human-readable name")
@click.option("--owner", default=None, help="Owner reference")
def keywords_add(name: str, description: str, display_name: str | None, owner: str | None) -> None:
    """Add a new alert keyword."""
    from .database import get_db

    db = get_db()
    keyword_id = db.insert_keyword(
        name=name, description=description, display_name=display_name, owner=owner
    )
    if keyword_id is None:
        click.echo(f"Error: Keyword '{name.lower()}' already exists", err=True)
        sys.exit(1)
    click.echo(f"Added keyword [{keyword_id}]: {name.lower()}")


@keywords.command("edit")
@click.argument("keyword_id", type=int)
@click.option("--display-name", default=None, help="New display name")
@click.option("--description", default=None, help="New matching description")
def keywords_edit(keyword_id: int, display_name: str | None, description: str | None) -> None:
    """Change a keyword's display name or description."""
    from .database import get_db

    db = get_db()
    if not db.get_keyword(keyword_id):
        click.echo(f"Error: Keyword {keyword_id} not found", err=True)
        sys.exit(1)

    db.update_keyword(keyword_id, display_name=display_name, description=description)
    click.echo(f"Updated keyword [{keyword_id}]")


@keywords.command("remove")
@click.argument("keyword_id", type=int)
def keywords_remove(keyword_id: int) -> None:
    """Remove an alert keyword."""
    from .database import get_db

    db = get_db()
    keyword = db.get_keyword(keyword_id)

    if not keyword:
        click.echo(f"Error: Keyword {keyword_id} not found", err=True)
        sys.exit(1)

    db.delete_keyword(keyword_id)
    click.echo(f"Removed keyword [{keyword_id}]: {keyword.name}")


# --- Prompts subcommand group ---


@main.group()
@click.pass_context
def prompts(ctx: click.Context) -> None:
    """Manage classification prompt templates."""
    from .database import get_db

    get_db(data_dir=ctx.obj["data_dir"])


@prompts.command("list")
def prompts_list() -> None:
    """List prompt templates."""
    from .database import get_db

    db = get_db()
    items = db.list_prompts()

    if not items:
        click.echo("No prompts defined; the built-in default prompt is used.")
        return

    click.echo("Prompts:\n")
    for p in items:
        status_icon = "*" if p.is_active else " "
        click.echo(f"  [{p.id}] {status_icon} {p.name}")


@prompts.command("add")
@click.argument("name")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--activate", is_flag=True, help="Make this the active prompt")
def prompts_add(name: str, path: str, activate: bool) -> None:
    """Add a prompt template from a file. Use {alerts} and {articles} as placeholders."""
    from .database import get_db

    content = Path(path).read_text(encoding="utf-8")
    if not content.strip():
        click.echo("Error: Prompt file is empty", err=True)
        sys.exit(1)

    db = get_db()
    prompt_id = db.insert_prompt(name=name, content=content, activate=activate)
    state = " (active)" if activate else ""
    click.echo(f"Added prompt [{prompt_id}]: {name}{state}")


@prompts.command("show")
@click.argument("prompt_id", type=int)
def prompts_show(prompt_id: int) -> None:
    """Print a prompt template."""
    from .database import get_db

    prompt = get_db().get_prompt(prompt_id)
    if not prompt:
        click.echo(f"Error: Prompt {prompt_id} not found", err=True)
        sys.exit(1)
    click.echo(prompt.content)


@prompts.command("activate")
@click.argument("prompt_id", type=int)
def prompts_activate(prompt_id: int) -> None:
    """Make a prompt the active one."""
    from .database import get_db

    if not get_db().activate_prompt(prompt_id):
        click.echo(f"Error: Prompt {prompt_id} not found", err=True)
        sys.exit(1)
    click.echo(f"Prompt [{prompt_id}] is now active")


@prompts.command("deactivate")
def prompts_deactivate() -> None:
    """Go back to the built-in default prompt."""
    from .database import get_db

    get_db().deactivate_prompts()
    click.echo("Using the built-in default prompt")


if __name__ == "__main__":
    main()
