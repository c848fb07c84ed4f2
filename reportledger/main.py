import argparse
from datetime import UTC, datetime
import logging
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from reportledger.config import get_settings, load_recording_config
from reportledger.database import build_session_factory
from reportledger.errors import ConfigurationError
from reportledger.pipeline import PipelineRunner
from reportledger.run_store import create_or_get_run, get_open_run, next_build_number
from reportledger.scheduler import start_scheduler
from reportledger.schemas import Verdict


def _timestamp(raw: str) -> datetime:
    try:
        moment = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {raw!r}") from exc
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC).replace(tzinfo=None)
    return moment


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert, record and judge test reports")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="open a run before its tests execute")
    start_parser.add_argument("--job", required=True, help="Job name")
    start_parser.add_argument("--build", type=int, required=False, help="Build number; defaults to the next one")

    record_parser = subparsers.add_parser("record", help="record the test reports of one run")
    record_parser.add_argument("--job", required=True, help="Job name")
    record_parser.add_argument(
        "--build",
        type=int,
        required=False,
        help="Build number; defaults to the run opened by 'start', else the next one",
    )
    record_parser.add_argument("--config", required=True, help="JSON file listing tools and thresholds")
    record_parser.add_argument("--workspace", required=False, help="Workspace root; defaults to WORKSPACE_DIR")
    record_parser.add_argument(
        "--started-at",
        type=_timestamp,
        required=False,
        help="When the tests started (ISO 8601, naive means UTC); used for a new run only",
    )
    record_parser.add_argument(
        "--result",
        required=False,
        choices=[verdict.name for verdict in Verdict],
        help="Result already set on the run by an earlier step",
    )

    schedule_parser = subparsers.add_parser("schedule", help="record a job every day")
    schedule_parser.add_argument("--job", required=True, help="Job name")
    schedule_parser.add_argument("--config", required=True, help="JSON file listing tools and thresholds")
    schedule_parser.add_argument("--workspace", required=False, help="Workspace root; defaults to WORKSPACE_DIR")
    schedule_parser.add_argument("--run-now", action="store_true", help="also record once immediately")

    return parser.parse_args()


def _start(session_factory: sessionmaker[Session], job_name: str, build_number: int | None) -> None:
    with session_factory() as db:
        if build_number is None:
            build_number = next_build_number(db, job_name)
        run, created = create_or_get_run(db, job_name=job_name, build_number=build_number, trigger_source="manual")
        print(f"run={run.run_key} started_at={run.started_at.isoformat()} created={str(created).lower()}")


def _record_build_number(session_factory: sessionmaker[Session], job_name: str) -> int:
    with session_factory() as db:
        open_run = get_open_run(db, job_name)
        if open_run is not None:
            return open_run.build_number
        return next_build_number(db, job_name)


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "start":
        _start(build_session_factory(settings.database_url), args.job, args.build)
        return

    try:
        recording = load_recording_config(Path(args.config))
    except ConfigurationError as exc:
        raise SystemExit(f"invalid configuration: {exc}") from exc

    workspace = Path(args.workspace or settings.workspace_dir).resolve()
    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, recording, job_name=args.job, workspace=workspace, run_now=args.run_now)
        return

    build_number = args.build
    if build_number is None:
        build_number = _record_build_number(session_factory, args.job)

    runner = PipelineRunner(settings, session_factory)
    result = runner.run(
        recording,
        job_name=args.job,
        build_number=build_number,
        workspace=workspace,
        started_at=args.started_at,
        existing_result=Verdict[args.result] if args.result else None,
        sink=print,
    )

    print(
        "run={run_key} status={status} verdict={verdict} processed={processed} passed={passed} failed={failed} skipped={skipped}".format(
            run_key=result.run_key,
            status=result.status,
            verdict=result.verdict.name if result.verdict else "-",
            processed=result.processed_reports,
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
        )
    )
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
