import logging
from pathlib import Path

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from reportledger.config import RecordingConfig, Settings
from reportledger.pipeline import PipelineRunner
from reportledger.run_store import next_build_number


logger = logging.getLogger(__name__)


def _record_nightly(
    settings: Settings,
    session_factory: sessionmaker[Session],
    recording: RecordingConfig,
    job_name: str,
    workspace: Path,
) -> None:
    with session_factory() as db:
        build_number = next_build_number(db, job_name)

    runner = PipelineRunner(settings, session_factory)
    result = runner.run(
        recording,
        job_name=job_name,
        build_number=build_number,
        workspace=workspace,
        trigger_source="scheduled",
    )
    if result.status == "failed":
        logger.error(
            "scheduled recording failed",
            extra={"run_key": result.run_key, "status": result.status, "error": result.error},
        )
        return
    logger.info(
        "scheduled recording completed",
        extra={
            "run_key": result.run_key,
            "status": result.status,
            "verdict": result.verdict.name if result.verdict else None,
        },
    )


def start_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    recording: RecordingConfig,
    *,
    job_name: str,
    workspace: Path,
    run_now: bool = False,
) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _record_nightly,
        "cron",
        args=[settings, session_factory, recording, job_name, workspace],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id=f"record_{job_name}",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "job_name": job_name,
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _record_nightly(settings, session_factory, recording, job_name, workspace)

    scheduler.start()
