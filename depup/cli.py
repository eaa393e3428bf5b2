"""
Command-line interface for depup.
"""

import argparse
import json
import logging
import os
import sys
import traceback
from pathlib import Path

from .config import (
    DepUpConfig,
    create_default_config,
    get_auth_token,
    get_config_value,
    load_config,
    load_raw_config,
    merge_configs,
    config_path,
    set_config_value,
    DEFAULT_CONFIG,
)
from .errors import DepUpError
from .installer import PackageTester, SubprocessInstaller
from .ledger import IntegrityLedger
from .maintenance import fix_version_formats, repair_integrity_data
from .models import ItemState, PipelineOptions, RevisionKey, VoteDirection
from .orchestrator import (
    BatchOrchestrator,
    discover_worklist,
    pipeline_runner,
    sync_worklist,
)
from .pipeline import DepUpPipeline
from .publisher import NpmPublisher, PublishGate
from .reporting import (
    export_batch_summary_csv,
    export_worksheets,
    print_integrity_report,
    print_integrity_status,
    print_summary,
    print_system_status,
    save_report_csv,
)
from .resolvers import NpmRegistryResolver, ResolverCache, get_session


logger = logging.getLogger("depup")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--packages-dir",
        default=None,
        help="Directory holding processed packages. Default: packagesDir from config"
    )
    common.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging and tracebacks"
    )

    parser = argparse.ArgumentParser(
        prog="depup",
        description="Republish npm packages under a controlled scope with refreshed dependencies",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", parents=[common], help="Process one package")
    process.add_argument("package", help="npm package to process (e.g. lodash, express@5.0.0)")
    _add_pipeline_flags(process)

    vote = subparsers.add_parser("vote", parents=[common], help="Vote on a revision's integrity")
    vote.add_argument("package")
    vote.add_argument("version", help="Base version")
    vote.add_argument("revision", type=int, help="Revision index")
    vote.add_argument("vote", choices=[d.value for d in VoteDirection])
    vote.add_argument("description", nargs="*", help="Optional description")

    status = subparsers.add_parser("status", parents=[common], help="Show vote status for a package")
    status.add_argument("package")
    status.add_argument("version", nargs="?", default=None)

    report = subparsers.add_parser("report", parents=[common], help="Integrity report for a package")
    report.add_argument("package")
    report.add_argument(
        "--output-dir",
        default=None,
        help="Also write the report as CSV into this directory"
    )
    report.add_argument(
        "--get-worksheets",
        action="store_true",
        help="Export the report to an Excel file with one sheet per base version"
    )

    for name, help_text in (
        ("discover", "Process the latest versions of configured packages"),
        ("sync", "Re-process existing packages with new versions or dependencies"),
    ):
        batch = subparsers.add_parser(name, parents=[common], help=help_text)
        batch.add_argument("--limit", type=int, default=None, help="Limit number of packages")
        batch.add_argument(
            "--concurrency", type=int, default=None, help="Packages processed at once"
        )
        batch.add_argument(
            "--output-dir", default=None, help="Write a CSV summary of the batch here"
        )
        _add_pipeline_flags(batch, defaults_on=True)

    subparsers.add_parser("fix-versions", parents=[common], help="Rewrite legacy <version>_<n> versions")
    subparsers.add_parser(
        "heal", parents=[common], help="Rebuild missing or damaged integrity.json files"
    )
    subparsers.add_parser("monitor", parents=[common], help="Show system-wide integrity status")

    config = subparsers.add_parser("config", parents=[common], help="Manage depup.config.json")
    config.add_argument("action", choices=["init", "get", "set", "list"])
    config.add_argument("path", nargs="?", help="Dotted config path, e.g. publish.enabled")
    config.add_argument("value", nargs="?", help="Value to set (JSON literals are decoded)")

    return parser


def _add_pipeline_flags(parser: argparse.ArgumentParser, defaults_on: bool = False) -> None:
    if defaults_on:
        parser.add_argument("--no-bump-deps", dest="bump_deps", action="store_false")
        parser.add_argument("--no-test", dest="test", action="store_false")
        parser.add_argument("--no-publish", dest="publish", action="store_false")
        # Unset testing and publishing fall back to the config file.
        parser.set_defaults(bump_deps=True, test=None, publish=None)
    else:
        parser.add_argument(
            "-b", "--bump-deps", action="store_true",
            help="Update all dependencies to latest versions"
        )
        parser.add_argument(
            "-t", "--test", action="store_true",
            help="Test package functionality after processing"
        )
        parser.add_argument(
            "-p", "--publish", action="store_true",
            help="Publish package to npm (requires NPM_TOKEN)"
        )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Show what would be done without making changes"
    )
    parser.add_argument(
        "--timeout", type=int, default=None,
        help="Timeout for operations in milliseconds. Default: timeout from config"
    )


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s" if debug else "%(message)s",
    )


def _load_settings(args) -> DepUpConfig:
    config = load_config()
    if args.packages_dir:
        config.packages_dir = Path(args.packages_dir)
    return config


def _options(args, config: DepUpConfig) -> PipelineOptions:
    timeout = args.timeout / 1000 if args.timeout else config.timeout
    test = config.testing_enabled if args.test is None else args.test
    publish = config.publish_enabled if args.publish is None else args.publish
    return PipelineOptions(
        bump_deps=args.bump_deps,
        test=test,
        publish=publish and not args.dry_run,
        dry_run=args.dry_run,
        debug=args.debug,
        timeout=timeout,
    )


def build_pipeline(config: DepUpConfig, options: PipelineOptions) -> DepUpPipeline:
    session = get_session(retries=config.retry_attempts, backoff_factor=config.retry_delay)
    registry = NpmRegistryResolver(config.registry, cache=ResolverCache(session=session))
    ledger = IntegrityLedger(config.packages_dir)
    installer = SubprocessInstaller(stream_output=options.debug)
    tester = PackageTester(
        installer,
        timeout=options.timeout,
        install_methods=config.install_methods,
        harness_methods=config.harness_methods,
    )
    gate = PublishGate(
        # Publish output is always captured to detect a missing scope.
        NpmPublisher(
            SubprocessInstaller(),
            access=config.raw["publish"]["access"],
            prerelease_tag=config.prerelease_tag,
        ),
        auth_token=get_auth_token(required=options.publish),
        scope_prefix=config.scope_prefix,
    )
    return DepUpPipeline(config, registry, ledger, tester=tester, gate=gate)


def cmd_process(args, config: DepUpConfig) -> int:
    options = _options(args, config)
    if options.dry_run:
        logger.info("Dry run mode - no changes will be made")
    pipeline = build_pipeline(config, options)
    result = pipeline.process(args.package, options)
    print_summary(result)
    return 0


def cmd_batch(args, config: DepUpConfig) -> int:
    if args.command == "discover" and not config.raw["discovery"]["enabled"]:
        raise DepUpError("Discovery is disabled in the configuration")
    options = _options(args, config)
    pipeline = build_pipeline(config, options)
    if args.command == "discover":
        limit = args.limit or config.max_packages_per_discovery
        worklist = discover_worklist(
            pipeline.registry, config.discovery_packages, pipeline.ledger,
            limit=limit, timeout=options.timeout,
        )
    else:
        limit = args.limit or config.max_packages_per_run
        worklist = sync_worklist(
            pipeline.registry, pipeline.ledger, pipeline.allocator,
            limit=limit, timeout=options.timeout,
        )
    if not worklist:
        logger.info("Nothing to process")
        return 0

    orchestrator = BatchOrchestrator(
        pipeline_runner(pipeline, options),
        concurrency=args.concurrency or config.concurrency,
        pacing_delay=config.rate_limit_delay,
        show_progress=sys.stderr.isatty(),
    )
    items = orchestrator.run(worklist)
    done = [i.package_ref.spec for i in items if i.state is ItemState.SUCCEEDED]
    failed = [i for i in items if i.state is ItemState.FAILED]
    logger.info("Processed %d packages: %s", len(done), ", ".join(done) or "-")
    for item in failed:
        logger.error("  %s: %s", item.package_ref.spec, item.error)
    if args.output_dir:
        summary = export_batch_summary_csv(items, Path(args.output_dir), args.command)
        logger.info("Batch summary saved to: %s", summary)
    return 1 if failed else 0


def cmd_vote(args, config: DepUpConfig) -> int:
    ledger = IntegrityLedger(config.packages_dir)
    integrity = config.raw["integrity"]
    voting = integrity["voting"]
    if not integrity["enabled"] or not voting["enabled"]:
        raise DepUpError("Voting is disabled in the configuration")
    description = " ".join(args.description)
    if voting["requireDescription"] and not description:
        raise DepUpError("A description is required for votes")
    voter = os.environ.get("USER")
    if not voter and not voting["anonymous"]:
        raise DepUpError("Anonymous votes are disabled; set USER to identify the voter")
    key = RevisionKey(args.package, args.version, args.revision)
    ledger.record_vote(key, VoteDirection(args.vote), description, voter=voter)
    print_integrity_status(ledger, args.package, args.version)
    return 0


def cmd_status(args, config: DepUpConfig) -> int:
    print_integrity_status(IntegrityLedger(config.packages_dir), args.package, args.version)
    return 0


def cmd_report(args, config: DepUpConfig) -> int:
    frame = print_integrity_report(IntegrityLedger(config.packages_dir), args.package)
    if args.output_dir and not frame.empty:
        output_dir = Path(args.output_dir)
        logger.info("Report saved to: %s", save_report_csv(frame, output_dir, args.package))
        if args.get_worksheets:
            logger.info("Worksheets saved to: %s", export_worksheets(frame, output_dir, args.package))
    return 0


def cmd_fix_versions(args, config: DepUpConfig) -> int:
    fix_version_formats(config.packages_dir)
    return 0


def cmd_heal(args, config: DepUpConfig) -> int:
    repair_integrity_data(config.packages_dir)
    return 0


def cmd_monitor(args, config: DepUpConfig) -> int:
    print_system_status(IntegrityLedger(config.packages_dir))
    return 0


def cmd_config(args) -> int:
    if args.action == "init":
        create_default_config()
        logger.info("Default configuration written to %s", config_path())
    elif args.action == "list":
        print(json.dumps(merge_configs(DEFAULT_CONFIG, load_raw_config(config_path())), indent=2))
    elif not args.path:
        raise DepUpError(f"config {args.action} requires a path")
    elif args.action == "get":
        print(json.dumps(get_config_value(args.path), indent=2))
    else:
        path, value = args.path, args.value
        if value is None:
            # Also accept path=value.
            path, sep, value = path.partition("=")
            if not sep:
                raise DepUpError("Missing value. Use: depup config set <path> <value>")
        set_config_value(path, value)
        logger.info("Set %s = %s", path, value)
    return 0


COMMANDS = {
    "process": cmd_process,
    "discover": cmd_batch,
    "sync": cmd_batch,
    "vote": cmd_vote,
    "status": cmd_status,
    "report": cmd_report,
    "fix-versions": cmd_fix_versions,
    "heal": cmd_heal,
    "monitor": cmd_monitor,
}


def main(argv=None):
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    try:
        if args.command == "config":
            code = cmd_config(args)
        else:
            code = COMMANDS[args.command](args, _load_settings(args))
    except (DepUpError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.debug:
            traceback.print_exc()
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
