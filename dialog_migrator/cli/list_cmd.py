"""CLI command that lists the source account's conversations."""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Optional

import click

from dialog_migrator.cli.common import (
    build_client,
    cli,
    common_options,
    handle_exception,
    prepare,
)
from dialog_migrator.core.config import should_process_conversation
from dialog_migrator.core.progress import load_progress
from dialog_migrator.services.client import maybe_connect, maybe_disconnect
from dialog_migrator.services.rate_limiter import RateLimiter, with_rate_limit_retry
from dialog_migrator.types import ConversationInfo, DialogType
from dialog_migrator.utils.formatting import format_count, truncate


async def fetch_conversations(client: Any, limiter: RateLimiter) -> list[ConversationInfo]:
    await maybe_connect(client)
    try:
        return list(
            await with_rate_limit_retry(
                client.enumerate_conversations, limiter, "enumerate_conversations"
            )
        )
    finally:
        await maybe_disconnect(client)


@cli.command("list")
@common_options
@click.option(
    "--type",
    "dialog_type",
    type=click.Choice([t.value for t in DialogType]),
    default=None,
    help="Only list conversations of this kind",
)
def list_cmd(
    config: str,
    progress_path: Optional[str],
    verbose: bool,
    quiet: bool,
    dialog_type: Optional[str],
) -> None:
    """List the conversations of the source account."""
    try:
        cfg, progress_file = prepare(config, progress_path, verbose, quiet)
        client = build_client(cfg)
        limiter = RateLimiter(cfg.rate_limit.to_limiter_config())
        conversations = asyncio.run(fetch_conversations(client, limiter))
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    if dialog_type is not None:
        conversations = [c for c in conversations if c.type.value == dialog_type]

    loaded = load_progress(progress_file)
    progress = loaded.value if loaded.ok else None

    click.echo(f"{'ID':<16} {'TYPE':<11} {'MESSAGES':>9}  {'STATUS':<18} {'SELECTED':<8} NAME")
    for conversation in conversations:
        dialog = progress.get_dialog(conversation.id) if progress else None
        status = dialog.status.value if dialog else "-"
        selected = "yes" if should_process_conversation(conversation, cfg.filters) else "no"
        click.echo(
            f"{truncate(conversation.id, 16):<16} {conversation.type.value:<11} "
            f"{format_count(conversation.message_count):>9}  {status:<18} {selected:<8} "
            f"{conversation.name}"
        )
    click.echo(f"\n{len(conversations)} conversations")
