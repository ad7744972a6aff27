"""CLI interface for contextforge."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from contextforge.utils.logging import setup_logging

console = Console()


def _run_async(coro):
    """Run an async function from sync CLI."""
    return asyncio.run(coro)


def _load_store(entities_file: str):
    from contextforge.config import load_entity_store

    return load_entity_store(Path(entities_file))


@click.group()
@click.version_option(version="0.1.0")
def main():
    """contextforge: mode-aware entity context for creative writing chat."""
    pass


@main.command()
def modes():
    """List chat modes and how each splits the entity budget."""
    from contextforge.context.modes import ChatMode, get_mode_context_config

    table = Table(title="Chat modes")
    table.add_column("Mode", style="cyan")
    table.add_column("Character %", justify="right")
    table.add_column("World %", justify="right")
    table.add_column("Project %", justify="right")
    table.add_column("Format")
    table.add_column("Description", style="dim")

    for mode in ChatMode:
        config = get_mode_context_config(mode)
        pct = config.budget_percentages
        table.add_row(
            mode.value,
            str(pct.character),
            str(pct.world),
            str(pct.project),
            config.format_hint,
            config.description,
        )
    console.print(table)


@main.command()
@click.argument("entities_file", type=click.Path(exists=True))
@click.option("--mode", "-m", default="chat", help="Chat mode")
@click.option("--budget", "-b", type=int, default=3000, help="Entity token budget")
@click.option("--id", "entity_ids", multiple=True, help="Entity ID to include (repeatable)")
@click.option("--debug", is_flag=True, help="Show per-entity debug lines")
@click.option("--verbose", "-v", is_flag=True)
def assemble(
    entities_file: str,
    mode: str,
    budget: int,
    entity_ids: tuple[str, ...],
    debug: bool,
    verbose: bool,
):
    """Assemble the entity context a chat in MODE would receive."""
    setup_logging(verbose)
    from contextforge.context.injection import (
        LinkedEntities,
        assemble_context_for_prompt,
    )
    from contextforge.context.modes import ChatMode
    from contextforge.entities.resolver import fetch_entities_by_ids

    valid_modes = [m.value for m in ChatMode]
    if mode not in valid_modes:
        raise click.BadParameter(
            f"must be one of: {', '.join(valid_modes)}", param_hint="--mode"
        )

    store = _load_store(entities_file)
    if entity_ids:
        fetched = fetch_entities_by_ids(entity_ids, store)
        linked = LinkedEntities(
            characters=fetched.characters,
            worlds=fetched.worlds,
            projects=fetched.projects,
        )
        for missing in fetched.missing:
            console.print(f"[yellow]![/yellow] Not found: {missing}")
    else:
        linked = LinkedEntities(
            characters=list(store.characters),
            worlds=list(store.worlds),
            projects=list(store.projects),
        )

    result = assemble_context_for_prompt(
        mode, linked, token_budget=budget, include_debug_info=debug
    )
    click.echo(result.context_string)

    console.print(
        f"\n[bold]{result.token_count}[/bold] tokens "
        f"(budget {budget}, mode {mode})"
    )
    if result.truncated_fields:
        console.print(
            f"[yellow]Truncated:[/yellow] {', '.join(result.truncated_fields)}"
        )


@main.command()
@click.argument("request_file", type=click.Path(exists=True))
def validate(request_file: str):
    """Validate a JSON chat request body."""
    from contextforge.api.validation import validate_chat_request

    try:
        body = json.loads(Path(request_file).read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]✗ Invalid JSON:[/red] {e}")
        raise SystemExit(1)

    result = validate_chat_request(body)
    if not result.valid:
        console.print("[red]✗ Request is invalid[/red]")
        for error in result.errors:
            console.print(f"  - {escape(error)}")
        raise SystemExit(1)

    request = result.sanitized
    console.print("[green]✓[/green] Request is valid")
    console.print(f"  Provider: {request.provider}")
    console.print(f"  Messages: {len(request.messages)}")
    console.print(f"  Mode: {request.mode.value if request.mode else 'chat'}")
    ids = [*request.pinned_entity_ids, *request.mentioned_entity_ids]
    if ids:
        console.print(f"  Entities: {', '.join(ids)}")


@main.command()
@click.argument("entities_file", type=click.Path(exists=True))
@click.argument("text_file", type=click.Path(exists=True))
@click.option("--facts", is_flag=True, help="Also list detected facts")
def enrich(entities_file: str, text_file: str, facts: bool):
    """Link entity names in TEXT_FILE and report references."""
    from contextforge.api.enrichment import (
        detect_canonical_fact_updates,
        enrich_response_with_links,
        extract_entity_references,
        format_entity_references_summary,
    )

    store = _load_store(entities_file)
    entities = store.all_entities
    text = Path(text_file).read_text()

    click.echo(enrich_response_with_links(text, entities))

    references = extract_entity_references(text, entities)
    console.print(f"\n[bold]{format_entity_references_summary(references)}[/bold]")
    for ref in references:
        console.print(f"  {ref.id} {ref.name} ({ref.confidence:.2f})")

    if facts:
        detected = detect_canonical_fact_updates(text, entities)
        table = Table(title="Detected facts")
        table.add_column("Entity", style="cyan")
        table.add_column("Category")
        table.add_column("Fact")
        for fact in detected:
            table.add_row(fact.entity_id, fact.category, escape(fact.fact))
        console.print(table)


@main.command()
@click.argument("message")
@click.option("--config-dir", "-c", type=click.Path(exists=True), default=".")
@click.option("--entities", "-e", "entities_file", type=click.Path(exists=True), default=None)
@click.option("--mode", "-m", default=None, help="Chat mode")
@click.option("--pin", "pinned", multiple=True, help="Pinned entity ID (repeatable)")
@click.option("--provider", "-p", type=click.Choice(["anthropic", "openai"]), default=None)
@click.option("--api-key", "-k", type=str, default=None, help="LLM API key (avoids storing in files)")
@click.option("--verbose", "-v", is_flag=True)
def chat(
    message: str,
    config_dir: str,
    entities_file: Optional[str],
    mode: Optional[str],
    pinned: tuple[str, ...],
    provider: Optional[str],
    api_key: Optional[str],
    verbose: bool,
):
    """Send one MESSAGE through the full chat pipeline."""
    setup_logging(verbose)

    async def _chat():
        from contextforge.api.rate_limiter import RateLimiter
        from contextforge.config import AppConfig, load_config
        from contextforge.entities.store import EntityStore
        from contextforge.pipeline.chat import ChatPipeline

        config_path = Path(config_dir)
        if (config_path / "contextforge.yaml").exists():
            config = load_config(config_path)
        else:
            config = AppConfig()

        source = entities_file or config.entities_file
        store = _load_store(source) if source else EntityStore()

        pipeline = ChatPipeline(
            store,
            RateLimiter(config.rate_limit.to_config()),
            config=config,
        )
        body = {
            "messages": [{"role": "user", "content": message}],
            "provider": provider or config.default_provider,
            "pinnedEntityIds": list(pinned),
        }
        if api_key:
            body["apiKey"] = api_key
        else:
            body["isAdminMode"] = True
        if mode:
            body["mode"] = mode

        try:
            return await pipeline.handle(body, identifier="cli")
        finally:
            await pipeline.aclose()

    outcome = _run_async(_chat())
    if not outcome.ok:
        console.print(f"[red]✗ {outcome.status}:[/red] {escape(outcome.error.error)}")
        raise SystemExit(1)

    click.echo(outcome.text)
    for stub_id in outcome.created_stub_ids:
        console.print(f"[yellow]+[/yellow] Created stub {stub_id}")


@main.command()
@click.option("--config-dir", "-c", type=click.Path(exists=True), default=".")
@click.option("--verbose", "-v", is_flag=True)
def check(config_dir: str, verbose: bool):
    """Load configuration and check provider connectivity."""
    setup_logging(verbose)

    async def _check():
        from contextforge.config import load_config
        from contextforge.llm.factory import LLMFactory

        try:
            config = load_config(Path(config_dir))
            console.print("[green]✓[/green] Configuration loaded successfully")
            console.print(f"  Default provider: {config.default_provider}")
            console.print(f"  Entity budget: {config.context.token_budget}")
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]✗ Configuration error:[/red] {e}")
            return

        console.print("\n[bold]Providers:[/bold]")
        for name, provider_config in config.providers.items():
            if not provider_config.api_key:
                console.print(f"  [yellow]-[/yellow] {name}: no API key")
                continue
            backend = LLMFactory.create(provider_config.to_llm_config())
            try:
                healthy = await backend.health_check()
            finally:
                await backend.aclose()
            status = "[green]✓[/green]" if healthy else "[red]✗[/red]"
            console.print(
                f"  {status} {name}: {provider_config.provider}/"
                f"{provider_config.model}"
            )

    _run_async(_check())


if __name__ == "__main__":
    main()
