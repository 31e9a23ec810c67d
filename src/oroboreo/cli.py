from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import click
from dotenv import load_dotenv

from oroboreo import __version__
from oroboreo.archive import (
    FEEDBACK_TEMPLATE,
    RULES_TEMPLATE,
    ArchiveManager,
    progress_template,
    task_store_template,
)
from oroboreo.backends import ClaudeCodeBackend
from oroboreo.config import (
    ConfigError,
    OroboreoConfig,
    PreconditionError,
    WorkspacePaths,
    apply_env_overrides,
    load_config,
    save_config,
)
from oroboreo.costs import CostLedger, empty_ledger
from oroboreo.diagnose import DiagnoseError, analyze_log_file, render_report
from oroboreo.logs import configure_logging, utc_timestamp
from oroboreo.loop import GoldenLoop, LoopStatus, RunSummary
from oroboreo.providers import (
    AnthropicProvider,
    BedrockProvider,
    ProviderConfig,
    resolve_provider,
)
from oroboreo.state import GitRepository, SessionBranchManager
from oroboreo.status import StatusReporter
from oroboreo.tasks import MarkdownTaskParser

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CliContext:
    paths: WorkspacePaths


def _load_environment(paths: WorkspacePaths) -> None:
    if paths.env_file.exists():
        load_dotenv(paths.env_file, override=False)
    else:
        logger.warning("No .env file found in oroboreo directory")


def _load_config(paths: WorkspacePaths) -> OroboreoConfig:
    try:
        return apply_env_overrides(load_config(paths.config_file))
    except ConfigError as exc:
        logger.error("%s", exc)
        raise click.ClickException(str(exc)) from exc


def _check_preconditions(paths: WorkspacePaths) -> None:
    if not paths.tasks.exists():
        raise PreconditionError(
            f"{paths.tasks.name} not found! Create your task list first."
        )
    if not paths.rules.exists():
        raise PreconditionError(
            f"{paths.rules.name} not found! Create your system rules first."
        )


def _log_provider(provider: ProviderConfig) -> None:
    logger.info("AI Provider: %s", provider.name)
    if isinstance(provider, BedrockProvider):
        logger.info("AWS Region: %s", provider.region)
    elif isinstance(provider, AnthropicProvider):
        logger.info("Using Anthropic API")
    else:
        logger.info(
            "Using Claude Code Subscription "
            "(ensure you have run: npx @anthropic-ai/claude-code login)"
        )


def _build_loop(
    paths: WorkspacePaths, config: OroboreoConfig, provider: ProviderConfig
) -> GoldenLoop:
    repo = GitRepository(paths.project_root, timeout_seconds=config.timeouts.git_timeout_seconds)
    parser = MarkdownTaskParser()
    return GoldenLoop(
        paths=paths,
        config=config,
        parser=parser,
        session=SessionBranchManager(repo, paths.tasks, config.git, parser),
        backend=ClaudeCodeBackend(
            working_directory=paths.project_root,
            prompt_path=paths.prompt,
            log_path=paths.log,
            timeouts=config.timeouts,
            agent=config.agent,
        ),
        ledger=CostLedger(paths.costs),
        provider=provider,
        archiver=ArchiveManager(paths, config.git, repo),
    )


async def _run_with_signals(golden: GoldenLoop) -> RunSummary:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, golden.request_stop, sig.name)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        return await golden.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@click.group()
@click.version_option(__version__, prog_name="oreo")
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project directory containing the oroboreo/ working directory (default: cwd).",
)
@click.pass_context
def cli(ctx: click.Context, project_root: Path | None) -> None:
    """Oroboreo: run a coding agent through a markdown task list."""
    root = (project_root or Path.cwd()).resolve()
    ctx.obj = CliContext(paths=WorkspacePaths.from_root(root))


@cli.command("init")
@click.pass_obj
def init_command(obj: CliContext) -> None:
    paths = obj.paths
    paths.workdir.mkdir(parents=True, exist_ok=True)
    paths.reusable_tests.mkdir(parents=True, exist_ok=True)

    now = datetime.now(UTC)
    scaffold = {
        paths.tasks: task_store_template(f"{now:%Y-%m-%d}"),
        paths.rules: RULES_TEMPLATE,
        paths.progress: progress_template(utc_timestamp(now)),
        paths.feedback: FEEDBACK_TEMPLATE,
        paths.costs: json.dumps(empty_ledger(now), indent=2),
    }
    for path, content in scaffold.items():
        if path.exists():
            click.echo(f"Exists:  {path.name}")
            continue
        path.write_text(content, encoding="utf-8")
        click.echo(f"Created: {path.name}")
    if not paths.config_file.exists():
        save_config(paths.config_file, OroboreoConfig.default())
        click.echo(f"Created: {paths.config_file.name}")

    click.echo(f"Initialized Oroboreo in {paths.workdir}")


@cli.command("run")
@click.pass_context
def run_command(ctx: click.Context) -> None:
    paths: WorkspacePaths = ctx.obj.paths
    if not paths.workdir.is_dir():
        raise click.ClickException(
            f"Working directory not found: {paths.workdir}. Run `oreo init` first."
        )
    configure_logging(paths.log)
    logger.info("OROBOREO - The Golden Loop")
    _load_environment(paths)
    config = _load_config(paths)
    try:
        provider = resolve_provider()
        _check_preconditions(paths)
    except PreconditionError as exc:
        logger.error("%s", exc)
        raise click.ClickException(str(exc)) from exc
    _log_provider(provider)

    summary = asyncio.run(_run_with_signals(_build_loop(paths, config, provider)))

    if summary.status is LoopStatus.COMPLETE:
        click.echo("THE GOLDEN LOOP IS COMPLETE!")
        click.echo(f"Tasks completed this run: {len(summary.completed_task_ids)}")
        if summary.archive_path is not None:
            click.echo(f"Archive: {summary.archive_path}")
    else:
        click.echo(f"Golden Loop stopped: {summary.status.value} ({summary.reason})")
    ctx.exit(summary.exit_code)


@cli.command("archive")
@click.option("--reset", "reset", is_flag=True, default=False, help="Reset session files.")
@click.option("--list", "list_only", is_flag=True, default=False, help="List archives.")
@click.pass_obj
def archive_command(obj: CliContext, reset: bool, list_only: bool) -> None:
    paths = obj.paths
    configure_logging()
    config = _load_config(paths)
    manager = ArchiveManager(
        paths,
        config.git,
        GitRepository(paths.project_root, timeout_seconds=config.timeouts.git_timeout_seconds),
    )

    if list_only:
        archives = manager.list_archives()
        if not archives:
            click.echo("No archived sessions found.")
            return
        click.echo(f"Found {len(archives)} archived session(s):")
        for index, info in enumerate(archives, start=1):
            click.echo(f"{index}. {info.name}")
            click.echo(f"   Date: {info.modified.astimezone():%Y-%m-%d %H:%M:%S}")
            if info.cost is not None:
                click.echo(f"   Cost: ${info.cost}")
            if info.progress is not None:
                click.echo(f"   Progress: {info.progress}")
        return

    try:
        result = manager.archive(reset=reset)
    except OSError as exc:
        raise click.ClickException(f"Archive failed: {exc}") from exc
    if result is None:
        click.echo("No files to archive!")
        return
    click.echo(f"Archived {len(result.archived_files)} file(s) to: {result.path}")
    if result.reusable_tests or result.archived_tests:
        click.echo(f"Reusable tests: {len(result.reusable_tests)}")
        click.echo(f"Archived tests: {len(result.archived_tests)}")
    if result.pr_url:
        click.echo(f"Pull Request: {result.pr_url}")
    if not reset:
        click.echo("To reset session files for next run, use: oreo archive --reset")


@cli.command("diagnose")
@click.argument("log_path", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def diagnose_command(obj: CliContext, log_path: Path | None) -> None:
    target = log_path or obj.paths.log
    try:
        report = analyze_log_file(target)
    except DiagnoseError as exc:
        raise click.ClickException(
            f"{exc}. Run `oreo run` at least once to generate logs."
        ) from exc
    click.echo(render_report(report), nl=False)


@cli.command("status")
@click.pass_obj
def status_command(obj: CliContext) -> None:
    payload = StatusReporter(obj.paths).snapshot()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
