"""Entry point for `python -m guix_release_builder` and the `guix-release-builder` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging

from guix_release_builder.builder import BuildWorkspace, CommandError, GuixBuildExecutor
from guix_release_builder.config import load_config
from guix_release_builder.context import build_context
from guix_release_builder.errors import (
    AuthError,
    BuildFailure,
    ConfigError,
    InvalidTransitionError,
    LockContentionError,
    SigningError,
    WatcherRunningError,
)
from guix_release_builder.models import JobConfig, PipelineStage, Tag
from guix_release_builder.settings import LOG_LEVELS, TRACE, RuntimeSettings
from guix_release_builder.signing import check_signing_capability
from guix_release_builder.tag_registry import TagRegistry
from guix_release_builder.watcher import Watcher, live_watcher, request_stop
from guix_release_builder.wizard import run_setup

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_LOCKED = 4

# Manual single-stage commands: (stage the entry is reset to, last stage to run).
MANUAL_STAGES: dict[str, tuple[PipelineStage, PipelineStage]] = {
    "build": (PipelineStage.PENDING, PipelineStage.BUILT),
    "attest": (PipelineStage.BUILT, PipelineStage.ATTESTED),
    "codesign": (PipelineStage.AWAITING_SIGNATURES, PipelineStage.DONE),
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="guix-release-builder",
        description="Build, attest and codesign tagged releases with the Guix toolchain",
    )
    parser.add_argument(
        "--multi-package",
        action="store_true",
        help="Build packages in parallel (JOBS=1 with guix --max-jobs)",
    )
    parser.add_argument(
        "--log-level",
        type=lambda value: value.lower(),
        default=None,
        choices=sorted(LOG_LEVELS),
        help="Logging verbosity (default: $GRB_LOG or info)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("setup", help="Interactively create or edit the configuration")
    for name, help_text in (
        ("build", "Build one tag; the watcher no longer drives a tag once it is handled manually"),
        ("attest", "Attest to the non-codesigned outputs of one tag"),
        ("codesign", "Attach detached signatures to one tag and attest to all outputs"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("tag", help="Release tag, e.g. v28.0 or v28.0rc1")

    watch = commands.add_parser("watch", help="Watch for new release tags")
    watch_commands = watch.add_subparsers(dest="watch_command", required=True)
    start = watch_commands.add_parser("start", help="Start the watcher")
    start.add_argument("--daemon", action="store_true", help="Detach and log to the state directory")
    watch_commands.add_parser("stop", help="Stop a running watcher")

    commands.add_parser("clean", help="Remove build scratch directories, keeping caches")
    commands.add_parser("show-config", help="Print the current configuration")
    commands.add_parser("warmup", help="Build master to populate the depends caches")
    commands.add_parser("status", help="List known tags and their pipeline stage")
    return parser.parse_args(argv)


def configure_logging(level: int) -> None:
    logging.addLevelName(TRACE, "TRACE")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _job_config(args: argparse.Namespace, settings: RuntimeSettings) -> JobConfig:
    config = load_config(settings.config_file)
    return JobConfig(multi_package=args.multi_package or config.multi_package, max_jobs=config.max_jobs)


def _run_stage(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    try:
        tag = Tag(args.tag)
    except ValueError as exc:
        logging.error("%s", exc)
        return EXIT_CONFIG
    reset_to, stop_after = MANUAL_STAGES[args.command]
    context = build_context(settings, multi_package=args.multi_package or None)
    runner = context.pipeline_runner()
    result = runner.run(
        tag,
        stop_after=stop_after,
        reset_to=reset_to,
        poll_signatures=args.command != "codesign",
    )
    if result.stage == PipelineStage.FAILED:
        entry = context.registry.get(tag.name)
        failed_stage = entry.failed_stage.value if entry is not None and entry.failed_stage else "unknown"
        logging.error("%s failed during %s: %s", tag, failed_stage, result.error)
        return EXIT_FAILURE
    if result.suspended:
        logging.error("%s stopped at %s: %s", tag, result.stage.value, result.error or "interrupted")
        return EXIT_FAILURE
    print(f"{tag}: {result.stage.value}")
    if result.output_dir is not None:
        print(f"outputs: {result.output_dir}")
    return EXIT_OK


def _watch(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    if args.watch_command == "stop":
        record = request_stop(settings)
        if record is None:
            print("No watcher is running.")
        else:
            print(f"Stop requested for watcher pid {record.pid}.")
        return EXIT_OK

    context = build_context(settings, multi_package=args.multi_package or None)
    check_signing_capability(context.config.gpg_key_id)
    Watcher(context).start(daemon=args.daemon)
    return EXIT_OK


def _clean(settings: RuntimeSettings) -> int:
    config = load_config(settings.config_file)
    report = GuixBuildExecutor(BuildWorkspace.from_config(config)).clean()
    for path in report.removed:
        print(f"removed {path}")
    for path, reason in report.failed.items():
        print(f"could not remove {path}: {reason}")
    if not report.removed and not report.failed:
        print("Nothing to clean.")
    return EXIT_OK if report.ok else EXIT_FAILURE


def _warmup(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    config = load_config(settings.config_file)
    executor = GuixBuildExecutor(BuildWorkspace.from_config(config))
    log_path = executor.warmup(config.hosts, _job_config(args, settings))
    print(f"Warmup build finished; log at {log_path}")
    return EXIT_OK


def _status(settings: RuntimeSettings) -> int:
    registry = TagRegistry(settings.registry_path, stale_after=float(settings.lock_stale_seconds))
    watcher = live_watcher(settings)
    print(f"watcher: {'running (pid %d)' % watcher.pid if watcher else 'not running'}")
    for entry in registry.entries():
        if entry.baseline:
            continue
        owner = registry.lock_owner(entry.tag) if registry.is_locked(entry.tag) else None
        line = f"{entry.tag:<14} {entry.stage.value:<20}"
        if owner:
            line += f" locked by {owner}"
        if entry.error:
            line += f" ({entry.error})"
        print(line.rstrip())
    return EXIT_OK


def dispatch(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    if args.command == "setup":
        config = run_setup(settings)
        print(f"Configuration written to {settings.config_file} for signer {config.signer_name}.")
        return EXIT_OK
    if args.command == "show-config":
        print(load_config(settings.config_file).render())
        return EXIT_OK
    if args.command in MANUAL_STAGES:
        return _run_stage(args, settings)
    if args.command == "watch":
        return _watch(args, settings)
    if args.command == "clean":
        return _clean(settings)
    if args.command == "warmup":
        return _warmup(args, settings)
    if args.command == "status":
        return _status(settings)
    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = RuntimeSettings.from_env()
        if args.log_level is not None:
            settings = dataclasses.replace(settings, log_level=args.log_level).normalized()
    except ValueError as exc:
        configure_logging(logging.INFO)
        logging.error("Invalid environment: %s", exc)
        return EXIT_CONFIG
    configure_logging(settings.log_level_number)

    try:
        return dispatch(args, settings)
    except ConfigError as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except AuthError as exc:
        logging.error("Authentication failed: %s", exc)
        return EXIT_AUTH
    except (LockContentionError, WatcherRunningError) as exc:
        logging.error("%s", exc)
        return EXIT_LOCKED
    except (BuildFailure, SigningError, CommandError, InvalidTransitionError) as exc:
        logging.error("%s", exc)
        return EXIT_FAILURE
    except ValueError as exc:
        logging.error("Unreadable state: %s", exc)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
