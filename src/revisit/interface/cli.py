"""revisit CLI: review sessions, progress, migration and configuration."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Any

import typer

from revisit.application.config import AppConfig, resolve_config
from revisit.consts import VERSION
from revisit.domain.errors import CardSetNotFound
from revisit.domain.models import CardState, Rating, SessionPhase

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="revisit: spaced-repetition flashcards with offline-first progress sync.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

config_app = typer.Typer(help="Manage revisit configuration.")
app.add_typer(config_app, name="config")

RATING_KEYS = {
    "a": Rating.AGAIN,
    "h": Rating.HARD,
    "g": Rating.GOOD,
    "e": Rating.EASY,
}


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool):
    if value:
        typer.echo(f"revisit {VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 0,
    user: Annotated[
        str | None, typer.Option("--user", "-u", help="User id for remote sync (omit for guest).")
    ] = None,
    backend: Annotated[str | None, typer.Option(help="Document store backend: memory, http.")] = None,
    store_url: Annotated[str | None, typer.Option(help="Document service URL (http backend).")] = None,
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version."),
    ] = None,
):
    """Global settings for revisit."""
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {"user_id": user, "backend": backend, "store_url": store_url}
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose >= 2 else logging.INFO if verbose == 1 else logging.WARNING
    logging.getLogger().setLevel(level)


def _resolve_with_overrides(ctx: typer.Context, **overrides: Any) -> AppConfig:
    obj = ctx.obj or {}
    return resolve_config({**obj.get("overrides", {}), **overrides})


def _format_side(side: Any) -> str:
    if isinstance(side, dict):
        head = " ".join(str(side[k]) for k in ("icon", "title") if side.get(k))
        body = side.get("description")
        return f"{head}: {body}" if head and body else head or str(body or "")
    return str(side) if side is not None else ""


def _show_card(card: CardState, position: int, total: int) -> None:
    label = "new" if card.is_new else f"due, EF {card.easiness_factor:.2f}"
    typer.secho(f"\n[{position}/{total}] ({label})", fg="cyan")
    typer.echo(_format_side(card.content.get("front", card.content)))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def review(
    ctx: typer.Context,
    card_set: Annotated[str, typer.Argument(help="Card set id. Defaults to the last one used.")] = "",
    size: Annotated[int | None, typer.Option("--size", "-n", help="Cards per session.")] = None,
    requeue: Annotated[
        bool | None,
        typer.Option("--requeue/--no-requeue", help="Show cards rated 'again' later in the session."),
    ] = None,
):
    """[bold green]Review[/bold green] the due cards of a card set."""
    from revisit.application.factory import build_cache, get_document_store, get_last_card_set_store
    from revisit.application.session import SessionController, describe_session

    config = _resolve_with_overrides(ctx, session_size=size, requeue_again=requeue)
    last_store = get_last_card_set_store(config)

    async def run() -> int:
        store = get_document_store(config)
        cache = build_cache(config, store)
        controller = SessionController(
            cache,
            session_size=config.session_size,
            requeue_again=config.requeue_again,
            last_store=last_store,
        )
        try:
            card_set_id = card_set or last_store.load_last_card_set()
            if not card_set_id:
                typer.secho("No card set given and none used before.", fg="red")
                return 1
            try:
                state = await controller.start(card_set_id)
            except CardSetNotFound as e:
                typer.secho(str(e), fg="red")
                return 1

            if not state.queue:
                typer.secho(f"Nothing due in '{card_set_id}'.", fg="green")

            while controller.phase is SessionPhase.IN_PROGRESS:
                card = controller.current_card
                _show_card(card, state.position + 1, len(state.queue))
                typer.prompt("Press Enter to reveal", default="", show_default=False)
                typer.echo(_format_side(card.content.get("back", "")))

                answer = typer.prompt("Rate [a]gain/[h]ard/[g]ood/[e]asy, [q]uit").strip().lower()
                if answer == "q":
                    break
                rating = RATING_KEYS.get(answer[:1])
                if rating is None:
                    typer.secho("Unknown rating; use a, h, g, e or q.", fg="yellow")
                    continue
                await controller.rate(rating)

            if controller.phase is SessionPhase.COMPLETE and state.queue:
                after = cache.get_progress(card_set_id)
                typer.secho("\nSession complete.", fg="green", bold=True)
                typer.echo(describe_session(state.progress_before, after, state))
                typer.echo(
                    f"Easy: {state.easy_count}  Hard: {state.hard_count}  Again: {state.again_count}"
                )
            elif controller.phase is SessionPhase.IN_PROGRESS:
                typer.echo(f"Stopped with {controller.remaining} cards left.")

            results = await cache.dispose()
            failed = [r for r in results.values() if not r.success]
            if state.flush_result is not None and not state.flush_result.success:
                failed.append(state.flush_result)
            if failed:
                if config.user_id is None:
                    typer.secho("Guest mode: progress was not saved. Pass --user to sync.", fg="yellow")
                else:
                    typer.secho(f"Sync failed: {failed[0].error}", fg="red")
                    return 1
            return 0
        finally:
            await store.close()

    code = asyncio.run(run())
    if code:
        raise typer.Exit(code)


@app.command()
def progress(
    ctx: typer.Context,
    card_set: Annotated[str | None, typer.Argument(help="Card set id. Defaults to all.")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show progress per card set."""
    from revisit.application.factory import build_cache, get_card_source, get_document_store
    from revisit.application.progress import review_stats

    config = _resolve_with_overrides(ctx)

    async def run() -> dict[str, dict[str, Any]]:
        store = get_document_store(config)
        cache = build_cache(config, store)
        try:
            ids = [card_set] if card_set else get_card_source(config).available_card_sets()
            await cache.prepare_user()
            loaded = await cache.preload(ids)
            if card_set and not loaded:
                raise CardSetNotFound(card_set)

            rows = {}
            for card_set_id in loaded:
                snapshot = cache.get_progress(card_set_id)
                stats = review_stats(cache.peek(card_set_id).current_cards())
                rows[card_set_id] = {
                    "total": snapshot.total_cards,
                    "reviewed": snapshot.reviewed_cards,
                    "progress": round(snapshot.progress_percentage, 1),
                    "mastered": snapshot.mastered_cards,
                    "need_practice": snapshot.need_practice_cards,
                    "reviewed_today": snapshot.reviewed_today,
                    "due": stats.due_cards,
                    "overdue": stats.overdue_cards,
                }
            await cache.dispose(flush=False)
            return rows
        finally:
            await store.close()

    try:
        rows = asyncio.run(run())
    except CardSetNotFound as e:
        typer.secho(str(e), fg="red")
        raise typer.Exit(1) from None

    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        typer.secho("No card sets found.", fg="yellow")
        return
    for card_set_id, row in rows.items():
        typer.echo(
            f"{card_set_id}: {row['reviewed']}/{row['total']} reviewed ({row['progress']}%)"
            f"  mastered {row['mastered']}  practice {row['need_practice']}"
            f"  due {row['due']}  today {row['reviewed_today']}"
        )


@app.command()
def migrate(ctx: typer.Context):
    """Fold legacy per-card-set progress documents into the user profile."""
    from revisit.application.factory import build_cache, get_document_store

    config = _resolve_with_overrides(ctx)
    if config.user_id is None:
        typer.secho("Migration needs a user; pass --user or set REVISIT_USER_ID.", fg="red")
        raise typer.Exit(1)

    async def run():
        store = get_document_store(config)
        cache = build_cache(config, store)
        try:
            result = await cache.prepare_user()
            await cache.dispose(flush=False)
            return result
        finally:
            await store.close()

    result = asyncio.run(run())
    typer.echo(f"Migrated: {len(result.migrated_card_sets)} {sorted(result.migrated_card_sets)}")
    typer.echo(f"Already consolidated: {len(result.skipped_card_sets)}")
    typer.echo(f"Legacy documents deleted: {len(result.deleted_documents)}")
    for error in result.errors:
        typer.secho(f"  {error}", fg="yellow")
    if not result.success:
        typer.secho("Migration incomplete; run again to retry.", fg="red")
        raise typer.Exit(1)


@app.command()
def reset(
    ctx: typer.Context,
    card_set: Annotated[str, typer.Argument(help="Card set id to reset.")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Skip confirmation.")] = False,
):
    """Reset all scheduling progress of a card set."""
    from revisit.application.factory import build_cache, get_document_store

    config = _resolve_with_overrides(ctx)
    if not force and not typer.confirm(f"Reset all progress for '{card_set}'?"):
        raise typer.Abort()

    async def run() -> int:
        store = get_document_store(config)
        cache = build_cache(config, store)
        try:
            try:
                await cache.reset_card_set(card_set)
            except CardSetNotFound as e:
                typer.secho(str(e), fg="red")
                return 1
            results = await cache.dispose()
            outcome = results.get(card_set)
            if outcome is not None and not outcome.success and config.user_id is not None:
                typer.secho(f"Reset locally but sync failed: {outcome.error}", fg="red")
                return 1
            typer.secho(f"Reset '{card_set}'.", fg="green")
            return 0
        finally:
            await store.close()

    code = asyncio.run(run())
    if code:
        raise typer.Exit(code)


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Display final resolved configuration."""
    config = _resolve_with_overrides(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    if d.get("api_token"):
        d["api_token"] = "***"
    typer.echo(json.dumps(d, indent=2))


if __name__ == "__main__":
    app()
