"""CLI entrypoint for forgeloop."""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from forgeloop import control
from forgeloop.blockers import BlockerDetector
from forgeloop.config import ForgeloopConfig, ForgeloopConfigError
from forgeloop.control import ControlFlagConsumer
from forgeloop.daemon import DaemonSupervisor
from forgeloop.ingest import IngestError, LogIngestor, LogSource
from forgeloop.loop import (
    DEFAULT_PLAN_WORK_ITERATIONS,
    EXIT_USAGE,
    IterationLoop,
    LoopUsageError,
)
from forgeloop.notify import OperatorNotifier
from forgeloop.router import ExecutionRouter
from forgeloop.schemas import Backend, TaskType
from forgeloop.state_store import (
    DAEMON_STATE_FILENAME,
    ROUTER_STATE_FILENAME,
    BlockerStateFile,
    RouterStateFile,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so it's found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="forgeloop",
        description="forgeloop - drive Codex and Claude Code through plan/build loops.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    def _add_repo(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--repo",
            type=str,
            default=".",
            help="Path to the target git repository (default: current directory).",
        )

    # -- loop -----------------------------------------------------------------
    loop_p = sub.add_parser(
        "loop",
        help="Run plan, plan-work, review or build iterations.",
        description=(
            "Usage: loop [plan] [N] | loop plan-work \"<scope>\" [N] | loop review | loop [build] [N]"
        ),
    )
    loop_p.add_argument(
        "words",
        nargs="*",
        help="Mode and iteration count, e.g. 'plan 1', 'build 10', '10'.",
    )
    _add_repo(loop_p)

    # -- daemon ---------------------------------------------------------------
    daemon_p = sub.add_parser("daemon", help="Run the long-lived supervisor.")
    _add_repo(daemon_p)
    daemon_p.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Seconds between cycles (default: FORGELOOP_DAEMON_INTERVAL or 300).",
    )

    # -- ingest-logs ----------------------------------------------------------
    ingest_p = sub.add_parser(
        "ingest-logs",
        help="Analyze runtime logs into a new request in REQUESTS.md.",
    )
    _add_repo(ingest_p)
    source = ingest_p.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=str, default="", help="Read logs from a file.")
    source.add_argument("--cmd", type=str, default="", help="Read logs from a shell command.")
    source.add_argument("--stdin", action="store_true", help="Read logs from stdin.")
    source.add_argument(
        "--latest",
        action="store_true",
        help="Read the newest file in --logs-dir matching --glob.",
    )
    ingest_p.add_argument("--logs-dir", type=str, default="", help="Directory for --latest.")
    ingest_p.add_argument("--glob", type=str, default="*.log", help="Pattern for --latest.")
    ingest_p.add_argument("--tail", type=int, default=0, help="Lines to keep from the end.")
    ingest_p.add_argument("--max-chars", type=int, default=0, help="Max characters sent.")
    ingest_p.add_argument("--source", type=str, default="", help="Label recorded in the request.")
    ingest_p.add_argument("--requests", type=str, default="", help="Requests file to append to.")
    ingest_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the request instead of appending it.",
    )
    ingest_p.add_argument("--force", action="store_true", help="Ignore dedupe markers.")
    ingest_p.add_argument("--no-redact", action="store_true", help="Skip secret redaction.")
    ingest_p.add_argument("--json-out", type=str, default="", help="Save the analysis JSON here.")

    # -- status ---------------------------------------------------------------
    status_p = sub.add_parser("status", help="Show router state, blocker state and directives.")
    _add_repo(status_p)
    return p


def parse_loop_words(words: list[str]) -> tuple[TaskType, int, str]:
    """Translate ``loop`` positionals into ``(mode, max_iterations, work_scope)``."""
    if not words:
        return TaskType.BUILD, 0, ""
    head, rest = words[0], words[1:]
    if head.isdigit():
        if rest:
            raise LoopUsageError(f"Unexpected arguments: {' '.join(rest)}")
        return TaskType.BUILD, int(head), ""
    if head == TaskType.PLAN_WORK.value:
        if not rest or not rest[0].strip():
            raise LoopUsageError('plan-work requires a work description: loop plan-work "<scope>" [N]')
        return TaskType.PLAN_WORK, _iterations(rest[1:], DEFAULT_PLAN_WORK_ITERATIONS), rest[0]
    if head == TaskType.REVIEW.value:
        return TaskType.REVIEW, 1, ""
    if head in (TaskType.PLAN.value, TaskType.BUILD.value):
        return TaskType(head), _iterations(rest, 0), ""
    raise LoopUsageError(f"Unknown loop mode: {head}")


def _iterations(words: list[str], default: int) -> int:
    if not words:
        return default
    if len(words) > 1 or not words[0].isdigit():
        raise LoopUsageError(f"Expected an iteration count, got: {' '.join(words)}")
    return int(words[0])


def _configure_logging(verbose: bool, log_file: Path | None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            print(f"Could not open log file {log_file}: {exc}", file=sys.stderr)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S", handlers=handlers)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    repo = Path(args.repo).expanduser().resolve()
    try:
        config = ForgeloopConfig.load(repo)
    except ForgeloopConfigError as exc:
        _configure_logging(args.verbose, None)
        logger.error("%s", exc)
        return EXIT_USAGE

    log_file = None
    if args.command != "status":
        log_file = config.runtime_path(repo) / "logs" / f"{args.command}.log"
    _configure_logging(args.verbose, log_file)

    if args.command == "loop":
        return _run_loop(args, repo, config)
    if args.command == "daemon":
        return _run_daemon(args, repo, config)
    if args.command == "ingest-logs":
        return _run_ingest(args, repo, config)
    if args.command == "status":
        return _print_status(repo, config)
    parser.print_help()
    return EXIT_USAGE


# -- Command handlers ---------------------------------------------------------


def _notifier(config: ForgeloopConfig) -> OperatorNotifier:
    return OperatorNotifier(config.slack_webhook_url, desktop=config.desktop_notifications)


def _router(repo: Path, config: ForgeloopConfig, notifier: OperatorNotifier) -> ExecutionRouter:
    store = RouterStateFile(config.runtime_path(repo) / ROUTER_STATE_FILENAME)
    return ExecutionRouter.from_config(repo, config, store, notifier=notifier)


def _run_loop(args: argparse.Namespace, repo: Path, config: ForgeloopConfig) -> int:
    notifier = _notifier(config)
    try:
        mode, iterations, scope = parse_loop_words(args.words)
        loop = IterationLoop(
            repo,
            config,
            _router(repo, config, notifier),
            mode=mode,
            max_iterations=iterations,
            work_scope=scope,
            notifier=notifier,
        )
    except LoopUsageError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE
    return loop.run()


def _run_daemon(args: argparse.Namespace, repo: Path, config: ForgeloopConfig) -> int:
    if args.interval > 0:
        config = config.model_copy(update={"daemon_interval_seconds": args.interval})
    supervisor = DaemonSupervisor(repo, config, notifier=_notifier(config))
    return supervisor.run()


def _run_ingest(args: argparse.Namespace, repo: Path, config: ForgeloopConfig) -> int:
    if args.file:
        source = LogSource(kind="file", value=args.file, label=args.source)
    elif args.cmd:
        source = LogSource(kind="cmd", value=args.cmd, label=args.source)
    elif args.stdin:
        source = LogSource(kind="stdin", text=sys.stdin.read(), label=args.source)
    else:
        source = LogSource(
            kind="latest",
            value=args.logs_dir or config.logs_dir,
            glob=args.glob,
            label=args.source,
        )

    notifier = _notifier(config)
    requests_path = config.repo_file(repo, args.requests or config.requests_file)
    ingestor = LogIngestor(
        repo,
        requests_path,
        _router(repo, config, notifier),
        notifier=notifier,
        tail=args.tail or config.ingest_logs_tail,
        max_chars=args.max_chars or config.ingest_logs_max_chars,
        trigger_replan=config.ingest_trigger_replan,
    )
    try:
        outcome = ingestor.ingest(
            source,
            dry_run=args.dry_run,
            force=args.force,
            redact=not args.no_redact,
            json_out=config.repo_file(repo, args.json_out) if args.json_out else None,
        )
    except IngestError as exc:
        logger.error("%s", exc)
        return 1
    if outcome.status == "dry_run":
        print(outcome.request_text)
    return 0


def _print_status(repo: Path, config: ForgeloopConfig) -> int:
    runtime = config.runtime_path(repo)
    state = RouterStateFile(runtime / ROUTER_STATE_FILENAME).load()
    now = dt.datetime.now().timestamp()

    print(f"\n  forgeloop status - {repo}")
    print("  " + "=" * 58)
    print(f"  Active backend: {state.active_backend.label}")
    for backend in Backend:
        until = state.limited_until(backend)
        if state.is_limited(backend, now):
            stamp = dt.datetime.fromtimestamp(until).strftime("%Y-%m-%d %H:%M:%S")
            print(f"  {backend.label}: rate-limited until {stamp}")
        else:
            print(f"  {backend.label}: available")

    detector = BlockerDetector(
        config.repo_file(repo, config.questions_file),
        BlockerStateFile(runtime / DAEMON_STATE_FILENAME),
        threshold=config.blocker_threshold,
    )
    blocker = detector.store.load()
    print(
        f"  Blocked iterations: {blocker.consecutive_count}/{config.blocker_threshold}"
        f" (fingerprint: {blocker.last_fingerprint or '-'})"
    )

    flags = ControlFlagConsumer(repo, config.repo_file(repo, config.requests_file), commit=False)
    present = [
        control.directive_token(name)
        for name in (control.PAUSE, control.REPLAN, control.DEPLOY, control.INGEST_LOGS)
        if flags.has_flag(name)
    ]
    print(f"  Directives: {', '.join(present) if present else 'none'}")
    print()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
