#!/usr/bin/env python3
"""
changerelay CLI
Administrative command line interface for the change notification pipeline.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from pydantic import ValidationError

from changerelay import __version__
from changerelay.admin import AdminService
from changerelay.config import RelayConfig, load_config, setup_logging
from changerelay.dispatchers import SideEffectDispatcher, build_dispatchers
from changerelay.errors import ConflictExhaustedError, RelayError, VersionConflictError
from changerelay.fanout import FanOutExecutor
from changerelay.guard import EventLoopGuard
from changerelay.handler import EventConsumer, EventHandler, RedisEventSource
from changerelay.models import Record, RecordStatus
from changerelay.optimistic import OptimisticUpdater
from changerelay.processor import TriggerProcessor
from changerelay.store import ObjectStore, create_object_store

logger = logging.getLogger(__name__)


class ChangeRelayCLI:
    """Wires the pipeline together from configuration"""

    def __init__(self, config: RelayConfig):
        self.config = config
        self.store: Optional[ObjectStore] = None
        self.dispatchers: List[SideEffectDispatcher] = []
        self.processor: Optional[TriggerProcessor] = None
        self.admin: Optional[AdminService] = None
        self.handler: Optional[EventHandler] = None

    async def _setup_system(self) -> None:
        self.store = create_object_store(self.config)
        await self.store.initialize()

        self.dispatchers = build_dispatchers(self.config)
        for dispatcher in self.dispatchers:
            await dispatcher.initialize()

        updater = OptimisticUpdater(
            self.store, retry=self.config.retry_policy, store_timeout=self.config.store_timeout
        )
        self.processor = TriggerProcessor(self.store, self.dispatchers, updater, self.config)
        self.admin = AdminService(
            self.processor, FanOutExecutor(), max_concurrency=self.config.max_concurrency
        )
        self.handler = EventHandler(
            self.processor, EventLoopGuard(self.config.self_identity, self.config.guard_patterns)
        )
        logger.debug(f"System ready on {self.config.store_backend} store")

    async def _shutdown_system(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.shutdown()
        if self.store:
            await self.store.shutdown()


def _read_document(path: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping")
    return data


def _run(ctx: click.Context, action) -> int:
    """Run an async action against a fully set up system; return an exit code"""
    relay: ChangeRelayCLI = ctx.obj

    async def runner() -> int:
        await relay._setup_system()
        try:
            return await action(relay)
        finally:
            await relay._shutdown_system()

    try:
        return asyncio.run(runner())
    except ConflictExhaustedError as e:
        click.echo(f"❌ {e.message}", err=True)
        return 2
    except RelayError as e:
        click.echo(f"❌ {e}", err=True)
        if e.definition.resolution_hint:
            click.echo(f"   Hint: {e.definition.resolution_hint}", err=True)
        return 1


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--backend", type=click.Choice(["memory", "sqlite", "redis", "filesystem"]),
              help="Override object store backend")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="changerelay")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], backend: Optional[str], verbose: bool, debug: bool):
    """
    changerelay - idempotent change notification pipeline

    Submit records, process per-tenant triggers and run bulk operations.
    """
    log_level = "DEBUG" if debug else ("INFO" if verbose else None)
    try:
        config = load_config(
            Path(config_path) if config_path else None,
            defaults={"log_level": "WARNING"},
            store_backend=backend,
            log_level=log_level,
        )
    except RelayError as e:
        raise click.UsageError(str(e))
    setup_logging(config)
    ctx.obj = ChangeRelayCLI(config)


@cli.command()
@click.argument("record_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--actor", default="cli-user", help="User submitting the record")
@click.pass_context
def submit(ctx: click.Context, record_file: str, actor: str):
    """Archive a record from a YAML/JSON file and create its tenant triggers"""
    try:
        record = Record.model_validate(_read_document(record_file))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'record'}: {error['msg']}"
            for error in e.errors()
        )
        raise click.BadParameter(problems, param_hint="RECORD_FILE")

    async def action(relay: ChangeRelayCLI) -> int:
        try:
            summary = await relay.admin.submit(record, actor)
        except VersionConflictError:
            click.echo(f"❌ Record {record.id} already exists", err=True)
            return 1
        click.echo(f"✅ Submitted {record.id}: {summary.succeeded} triggers created")
        return summary.exit_code

    sys.exit(_run(ctx, action))


@cli.command("status")
@click.argument("record_id")
@click.argument("status", type=click.Choice([s.value for s in RecordStatus]))
@click.option("--actor", default="cli-user", help="User making the change")
@click.pass_context
def change_status(ctx: click.Context, record_id: str, status: str, actor: str):
    """Change a record's status and re-trigger its tenants"""

    async def action(relay: ChangeRelayCLI) -> int:
        summary = await relay.admin.change_status(record_id, RecordStatus(status), actor)
        click.echo(f"✅ {record_id} is now {status} ({summary.succeeded} triggers created)")
        return summary.exit_code

    sys.exit(_run(ctx, action))


@cli.command()
@click.argument("tenant_id")
@click.argument("record_id")
@click.pass_context
def process(ctx: click.Context, tenant_id: str, record_id: str):
    """Process one trigger"""

    async def action(relay: ChangeRelayCLI) -> int:
        run = await relay.processor.run(tenant_id, record_id)
        path = " -> ".join(state.value for state in run.transitions)
        if run.error is not None:
            click.echo(f"❌ {tenant_id}/{record_id}: {path}")
            click.echo(f"   {run.error} (retryable={run.error.retryable})")
            return 1
        note = f" ({run.skipped_reason})" if run.skipped_reason else ""
        click.echo(f"✅ {tenant_id}/{record_id}: {path}{note}")
        for name, reference in run.receipts.items():
            click.echo(f"   {name}: {reference}")
        return 0

    sys.exit(_run(ctx, action))


@cli.command()
@click.argument("event_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def handle(ctx: click.Context, event_file: str):
    """Handle a storage notification read from a file"""
    body = Path(event_file).read_bytes()

    async def action(relay: ChangeRelayCLI) -> int:
        report = await relay.handler.handle(body)
        click.echo(
            f"processed={report.processed} skipped={report.skipped} "
            f"discarded={report.discarded} ignored={report.ignored} failures={len(report.failures)}"
        )
        for key, error in report.failures:
            click.echo(f"   ❌ {key}: {error}")
        return 0 if report.should_acknowledge else 1

    sys.exit(_run(ctx, action))


@cli.command()
@click.option("--queue", help="Redis list to consume (defaults to config event_queue)")
@click.option("--batch-size", default=10, show_default=True)
@click.pass_context
def consume(ctx: click.Context, queue: Optional[str], batch_size: int):
    """Drain notifications queued in Redis"""

    async def action(relay: ChangeRelayCLI) -> int:
        source = RedisEventSource(relay.config.redis_url, queue or relay.config.event_queue)
        await source.initialize()
        try:
            summary = await EventConsumer(source, relay.handler, batch_size).drain()
        finally:
            await source.shutdown()
        click.echo(json.dumps(summary.to_dict(), indent=2))
        return 1 if summary.released else 0

    sys.exit(_run(ctx, action))


@cli.command()
@click.option("--tenant", "tenants", multiple=True, help="Only these tenants (repeatable)")
@click.option("--max-concurrency", type=int, help="Parallel tenants (0 = all)")
@click.option("--names", "names_file", type=click.Path(exists=True, dir_okay=False),
              help="YAML mapping of tenant ID to display name")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.pass_context
def drain(ctx: click.Context, tenants, max_concurrency: Optional[int], names_file: Optional[str], as_json: bool):
    """Process all pending triggers; exits 1 if any tenant failed"""
    names = _read_document(names_file) if names_file else None

    async def action(relay: ChangeRelayCLI) -> int:
        summary = await relay.admin.drain(tenants or None, max_concurrency, names)
        if as_json:
            click.echo(json.dumps(summary.to_dict(), indent=2))
        else:
            click.echo(summary.render_report())
        return summary.exit_code

    sys.exit(_run(ctx, action))


@cli.command()
@click.option("--tenant", help="Only this tenant")
@click.pass_context
def pending(ctx: click.Context, tenant: Optional[str]):
    """List pending triggers"""

    async def action(relay: ChangeRelayCLI) -> int:
        grouped = await relay.admin.pending_triggers(tenant)
        if not grouped:
            click.echo("No pending triggers")
        for tenant_id, record_ids in sorted(grouped.items()):
            click.echo(f"{tenant_id}: {', '.join(record_ids)}")
        return 0

    sys.exit(_run(ctx, action))


@cli.command()
@click.argument("record_id")
@click.pass_context
def show(ctx: click.Context, record_id: str):
    """Print an archived record"""

    async def action(relay: ChangeRelayCLI) -> int:
        record = await relay.admin.load(record_id)
        data = record.to_dict()
        data["version"] = record.version
        click.echo(json.dumps(data, indent=2))
        return 0

    sys.exit(_run(ctx, action))


def main():
    cli()


if __name__ == "__main__":
    main()
