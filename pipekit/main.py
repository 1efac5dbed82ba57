import argparse
import logging
import re
import signal
import sys

from pipekit.adapters import FORMATS, LineSink, LineSource, open_sink, open_source
from pipekit.config import Settings, get_settings
from pipekit.context import CancelToken
from pipekit.database import build_session_factory
from pipekit.driver import ExecutionDriver
from pipekit.errors import ConfigError
from pipekit.pipeline import Pipeline
from pipekit.run_store import list_recent_runs
from pipekit.runner import PipelineRunner
from pipekit.scheduler import ScheduledJob, start_scheduler
from pipekit.sorting import Direction, SortKey, SortStage
from pipekit.stage_config import load_pipeline_file
from pipekit.stages import DedupeStage, MapStage


logger = logging.getLogger(__name__)

_INTERVAL_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(s|m|h)?\s*$")
_INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_interval(value: str) -> float:
    match = _INTERVAL_PATTERN.match(value)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid interval {value!r}, use e.g. 30s, 5m or 1h")
    seconds = float(match.group(1)) * _INTERVAL_UNITS[match.group(2) or "s"]
    if seconds <= 0:
        raise argparse.ArgumentTypeError("interval must be positive")
    return seconds


def _add_io_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--pipeline", required=True, help="Pipeline definition file (YAML or JSON)")
    parser.add_argument("--input", required=True, help="Input file, or - for stdin")
    parser.add_argument("--output", required=True, help="Output file, or - for stdout")
    parser.add_argument("--input-format", choices=FORMATS, help="Input format (default: from file extension)")
    parser.add_argument("--output-format", choices=FORMATS, help="Output format (default: from file extension)")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pipekit", description="Sort, filter and transform record streams")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Log more detail (-v for debug)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run a pipeline definition once")
    _add_io_arguments(run_parser)
    run_parser.add_argument("--run-key", required=False, help="Idempotency key for this run")

    sort_parser = subparsers.add_parser(
        "sort",
        help="sort the lines of a text file",
        description=(
            "Read a text file, drop blank lines and leading list numbering such as '3.', sort the lines "
            "and remove duplicates. Prints to stdout when no result file is given."
        ),
    )
    sort_parser.add_argument("-s", "--source-file", required=True, help="Path to the input file")
    sort_parser.add_argument("-r", "--result-file", required=False, help="Path to write the sorted lines to")
    sort_parser.add_argument("-i", "--case-insensitive", action="store_true", help="Lowercase lines before sorting")
    sort_parser.add_argument("--keep-duplicates", action="store_true", help="Keep repeated lines")
    sort_parser.add_argument("--descending", action="store_true", help="Sort in reverse order")

    history_parser = subparsers.add_parser("history", help="show recent pipeline runs")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of runs to show")

    schedule_parser = subparsers.add_parser("schedule", help="run a pipeline repeatedly on an interval")
    _add_io_arguments(schedule_parser)
    schedule_parser.add_argument("--interval", type=parse_interval, default=60.0, help="e.g. 30s, 5m, 1h (default 60s)")
    schedule_parser.add_argument("--max-runs", type=int, default=0, help="Stop after this many runs (0 = unlimited)")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args(argv)


def _install_cancel_handlers(token: CancelToken) -> None:
    def handle(signum, frame) -> None:
        logger.warning("received signal, cancelling run", extra={"signal": signum})
        token.cancel()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def _load_pipeline(settings: Settings, path: str) -> Pipeline:
    return load_pipeline_file(
        path,
        sort_memory_limit=settings.sort_memory_limit,
        workers=settings.pipeline_workers,
        batch_size=settings.worker_batch_size,
    )


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    try:
        pipeline = _load_pipeline(settings, args.pipeline)
    except ConfigError as exc:
        print(f"invalid pipeline: {exc}", file=sys.stderr)
        return 2

    token = CancelToken()
    _install_cancel_handlers(token)

    runner = PipelineRunner(settings, build_session_factory(settings.database_url))
    result = runner.run(
        pipeline,
        open_source(args.input, args.input_format),
        open_sink(args.output, args.output_format),
        run_key=args.run_key,
        cancel=token,
    )

    # Keep stdout clean when records are written there.
    summary_stream = sys.stderr if args.output == "-" else sys.stdout
    print(
        "run_id={run_id} run_key={run_key} pipeline={pipeline} status={status} in={records_in} out={records_out} "
        "dropped={dropped} errors={errors} reused={reused} report={report}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            pipeline=result.pipeline_name,
            status=result.status,
            records_in=result.records_in,
            records_out=result.records_out,
            dropped=result.records_dropped,
            errors=result.errors,
            reused=result.reused_existing_run,
            report=result.report_path,
        ),
        file=summary_stream,
    )
    if result.fatal_error:
        print(f"error: {result.fatal_error}", file=sys.stderr)
    if result.status == "failed":
        return 1
    if result.status == "cancelled":
        return 130
    return 0


def sort_command(args: argparse.Namespace, settings: Settings) -> int:
    ops: list[tuple[str, object]] = [("strip_numbering", ["line"])]
    if args.case_insensitive:
        ops.append(("lower", ["line"]))
    direction = Direction.DESC if args.descending else Direction.ASC

    stages = [
        MapStage(ops=ops, name="clean"),
        SortStage([SortKey("line", direction)], memory_limit=settings.sort_memory_limit),
    ]
    if not args.keep_duplicates:
        stages.append(DedupeStage(["line"]))
    pipeline = Pipeline(stages, name="sort")

    token = CancelToken()
    _install_cancel_handlers(token)

    sink = LineSink(args.result_file or sys.stdout)
    driver = ExecutionDriver(pipeline, temp_root=settings.temp_dir)
    report = driver.execute(LineSource(args.source_file), sink, cancel=token)
    sink.close()

    if report.fatal_error is not None:
        print(f"Application error: {report.fatal_error}", file=sys.stderr)
        return 1
    if report.cancelled:
        return 130
    logger.info("sorted lines", extra={"records_in": report.records_in, "records_out": report.records_out})
    return 0


def history_command(args: argparse.Namespace, settings: Settings) -> int:
    session_factory = build_session_factory(settings.database_url)
    with session_factory() as db:
        runs = list_recent_runs(db, limit=args.limit)

    for run in runs:
        print(
            f"run_id={run.id} run_key={run.run_key} pipeline={run.pipeline_name} trigger={run.trigger_source} "
            f"status={run.status} in={run.records_in} out={run.records_out} dropped={run.records_dropped} "
            f"errors={run.error_count} started={run.started_at.isoformat(timespec='seconds')}"
        )
    return 0


def schedule_command(args: argparse.Namespace, settings: Settings) -> int:
    try:
        _load_pipeline(settings, args.pipeline)
    except ConfigError as exc:
        print(f"invalid pipeline: {exc}", file=sys.stderr)
        return 2

    job = ScheduledJob(
        pipeline_path=args.pipeline,
        input_path=args.input,
        output_path=args.output,
        input_format=args.input_format,
        output_format=args.output_format,
    )
    start_scheduler(
        settings,
        build_session_factory(settings.database_url),
        job,
        interval_seconds=args.interval,
        run_now=args.run_now,
        max_runs=args.max_runs,
    )
    return 0


_COMMANDS = {
    "run": run_command,
    "sort": sort_command,
    "history": history_command,
    "schedule": schedule_command,
}


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    exit_code = _COMMANDS[args.command](args, settings)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
