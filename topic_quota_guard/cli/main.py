"""
CLI interface for Topic Quota Guard.

Provides command-line access to project topics, their quota and the
quota-gated assistant. Reads go to the local ledger, or to the mirror
service with ``--mirror``; writes always go to the local ledger.
"""

import logging
import os
import sqlite3
import sys
from dataclasses import dataclass
from typing import Optional

import typer
from openai import OpenAIError
from rich.console import Console
from rich.table import Table

from topic_quota_guard.config.loader import AppConfig, load_app_config
from topic_quota_guard.core.quota import MissingCreationRecord, QuotaExhausted
from topic_quota_guard.core.recorder import ConversationRecorder
from topic_quota_guard.core.topics import TopicService
from topic_quota_guard.sdk.assistant import QuotaGuardedAssistant
from topic_quota_guard.storage.mirror import MirrorClient
from topic_quota_guard.storage.repository import (
    AppendFailure,
    LocalTopicLedger,
    UpstreamFetchFailure,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_QUOTA = 2  # Chat turn refused, quota exhausted


@dataclass
class CliState:
    """Options shared by every command."""
    config: AppConfig
    use_mirror: bool = False

    def ledger(self) -> LocalTopicLedger:
        return LocalTopicLedger(
            db_path=self.config.ledger.db_path,
            chunk_size=self.config.ledger.chunk_size,
        )

    def feed(self):
        if self.use_mirror:
            return MirrorClient(
                self.config.network.resolved_mirror_url,
                page_limit=self.config.ledger.page_limit,
            )
        return self.ledger()

    def topics(self) -> TopicService:
        return TopicService(self.feed(), default_allowance=self.config.quota.default_allowance)

    def recorder(self) -> ConversationRecorder:
        if self.use_mirror:
            console.print("[red]Error:[/] the mirror is read-only, drop --mirror to write")
            sys.exit(EXIT_CODE_FAIL)
        ledger = self.ledger()
        return ConversationRecorder(
            ledger,
            ledger,
            quota_config=self.config.quota,
            subscription_period_days=self.config.ledger.subscription_period_days,
        )


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _handle_error(e: Exception) -> None:
    """Map library errors to messages and exit codes."""
    if isinstance(e, QuotaExhausted):
        console.print(f"[yellow]Quota exhausted:[/] {e}")
        sys.exit(EXIT_CODE_QUOTA)
    if isinstance(e, sqlite3.OperationalError) and "no such table" in str(e).lower():
        _fail("Ledger not initialized. Run `topic-quota-guard init` first")
    if isinstance(e, (MissingCreationRecord, UpstreamFetchFailure, AppendFailure, OpenAIError, ValueError)):
        _fail(str(e))
    raise e


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    mirror: bool = typer.Option(
        False,
        "--mirror",
        help="Read topics from the mirror service instead of the local ledger"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """Topic Quota Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        app_config = load_app_config(config) if config else AppConfig.default()
    except (FileNotFoundError, ValueError) as e:
        _fail(f"Invalid configuration: {e}")
    ctx.obj = CliState(config=app_config, use_mirror=mirror)

    if ctx.invoked_subcommand is None:
        console.print("Topic Quota Guard - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Check initialization status of the local ledger."""
    state = _state(ctx)
    db_path = state.config.ledger.db_path
    if not os.path.exists(db_path):
        console.print(f"[yellow]![/] No ledger at {db_path}. Run `topic-quota-guard init`")
        sys.exit(EXIT_CODE_FAIL)
    try:
        topics = state.ledger().list_topics()
    except sqlite3.OperationalError as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Ledger is initialized ({len(topics)} topics): {db_path}")


@app.command()
def init(ctx: typer.Context):
    """Initialize the local topic ledger."""
    try:
        _state(ctx).ledger().initialize_schema()
        console.print("[green]✓[/] Ledger initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("create-project")
def create_project(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name"),
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owner account id"),
    chat_count: Optional[int] = typer.Option(
        None,
        "--chat-count",
        help="Initial message allowance (defaults to quota.default_allowance)"
    ),
):
    """Create a project topic with its creation record."""
    state = _state(ctx)
    try:
        recorder = state.recorder()
        ledger = state.ledger()
        ledger.initialize_schema()
        topic_id = ledger.create_topic(memo=name)
        recorder.create_project(topic_id, name, owner=owner, chat_count=chat_count)
    except Exception as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Created project [bold]{name}[/] on topic {topic_id}")


@app.command()
def messages(ctx: typer.Context, topic_id: str = typer.Argument(..., help="Topic id")):
    """List every decodable message on a topic."""
    try:
        items = _state(ctx).topics().get_topic_messages(topic_id)
    except Exception as e:
        _handle_error(e)

    table = Table(title=f"Messages on {topic_id}")
    table.add_column("Seq", justify="right")
    table.add_column("Timestamp")
    table.add_column("Type")
    for item in items:
        table.add_row(str(item["topicSequenceNumber"]), item["consensusTimestamp"], item["type"])
    console.print(table)


@app.command("chat-history")
def chat_history(ctx: typer.Context, topic_id: str = typer.Argument(..., help="Project topic id")):
    """Show the chat history of a project topic."""
    try:
        turns = _state(ctx).topics().get_chat_messages(topic_id)
    except Exception as e:
        _handle_error(e)

    if not turns:
        console.print("\n[dim]No chat messages found.[/]")
        return
    for turn in turns:
        console.print(f"\n[bold]{turn.timestamp}[/bold] Q: {turn.question}")
        console.print(f"A: {turn.answer}")


@app.command()
def quota(ctx: typer.Context, topic_id: str = typer.Argument(..., help="Project topic id")):
    """Show the current message quota of a project topic."""
    try:
        state = _state(ctx).topics().get_quota(topic_id)
    except Exception as e:
        _handle_error(e)

    table = Table(title=f"Quota for {topic_id}")
    table.add_column("Total allowance", justify="right")
    table.add_column("Messages used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_row(str(state.total_allowance), str(state.messages_used), str(state.remaining_messages))
    console.print(table)


@app.command()
def ask(
    ctx: typer.Context,
    topic_id: str = typer.Argument(..., help="Project topic id"),
    prompt: str = typer.Argument(..., help="Question for the assistant"),
):
    """Ask the assistant a question, charged against the topic's quota."""
    state = _state(ctx)
    try:
        assistant = QuotaGuardedAssistant(
            state.recorder(),
            model=state.config.assistant.model,
            system_prompt=state.config.assistant.system_prompt,
        )
        reply = assistant.ask(prompt, topic_id)
    except Exception as e:
        _handle_error(e)

    console.print(reply.text)
    if not reply.recorded:
        console.print("[yellow]![/] The conversation could not be recorded")


@app.command("update-quota")
def update_quota(
    ctx: typer.Context,
    topic_id: str = typer.Argument(..., help="Project topic id"),
    usage_quota: int = typer.Argument(..., help="Messages remaining after the update"),
):
    """Set the remaining message count of a project topic."""
    try:
        _state(ctx).recorder().update_usage_quota(topic_id, usage_quota)
    except Exception as e:
        _handle_error(e)
    console.print(f"[green]✓[/] Quota for {topic_id} set to {usage_quota}")


@app.command("add-messages")
def add_messages(
    ctx: typer.Context,
    topic_id: str = typer.Argument(..., help="Project topic id"),
    count: int = typer.Argument(..., help="Messages to add"),
    transaction_id: str = typer.Option(..., "--transaction-id", "-t", help="Payment transaction id"),
):
    """Add purchased messages to a project topic."""
    try:
        previous, new = _state(ctx).recorder().add_messages(topic_id, count, transaction_id)
    except Exception as e:
        _handle_error(e)
    console.print(
        f"[green]✓[/] Added {count} messages to {topic_id}: "
        f"{previous.remaining_messages} -> {new.remaining_messages} remaining"
    )


@app.command()
def subscribe(
    ctx: typer.Context,
    license_topic_id: str = typer.Argument(..., help="License topic id"),
    transaction_id: str = typer.Option(..., "--transaction-id", "-t", help="Payment transaction id"),
    message_limit: int = typer.Option(100, "--messages", help="Messages included"),
    project_limit: int = typer.Option(1, "--projects", help="Projects included"),
    price_usd: float = typer.Option(0.0, "--price-usd", help="Price paid in USD"),
):
    """Record a paid subscription on a license topic."""
    try:
        subscription = _state(ctx).recorder().record_subscription(
            license_topic_id,
            transaction_id,
            message_limit=message_limit,
            project_limit=project_limit,
            price_usd=price_usd,
        )
    except Exception as e:
        _handle_error(e)
    console.print(
        f"[green]✓[/] Subscription {subscription['subscriptionId']} active "
        f"until {subscription['expiresAt']}"
    )


@app.command()
def subscription(ctx: typer.Context, license_topic_id: str = typer.Argument(..., help="License topic id")):
    """Check the subscription recorded on a license topic."""
    topics = _state(ctx).topics()
    try:
        result = topics.get_subscription_status(license_topic_id)
        metadata = topics.get_license_metadata(license_topic_id)
    except Exception as e:
        _handle_error(e)

    console.print(f"\n[bold]License:[/bold] {metadata.get('name', 'License NFT')}")
    if not result.active:
        console.print(f"[red]✗[/] {result.error}")
        sys.exit(EXIT_CODE_FAIL)
    details = result.subscription
    console.print(
        f"[green]✓[/] Subscription active until {details.get('expiresAt')} "
        f"({details.get('messageLimit')} messages, {details.get('projectLimit')} projects)"
    )


@app.command()
def summary(ctx: typer.Context, topic_id: str = typer.Argument(..., help="Topic id")):
    """Summarize the records on a topic."""
    try:
        usage = _state(ctx).topics().summarize_usage(topic_id)
    except Exception as e:
        _handle_error(e)

    console.print(f"\n[bold]Usage Summary for {topic_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Records: {usage.total_records}")
    console.print(f"Chat turns: {usage.chat_turns}")
    console.print(f"Quota updates: {usage.quota_updates}")
    if usage.first_timestamp:
        console.print(f"First record: {usage.first_timestamp}")
        console.print(f"Last record: {usage.last_timestamp}")
    if usage.latest_quota_update_at:
        console.print(f"Latest quota update: {usage.latest_quota_update_at}")

    if usage.counts:
        table = Table(title="Records by type")
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for name, count in sorted(usage.counts.items()):
            table.add_row(name, str(count))
        console.print(table)


if __name__ == "__main__":
    app()
