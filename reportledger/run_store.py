from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reportledger.db_models import JobRun, TestCaseRecord, utc_now
from reportledger.errors import AggregateMergeError
from reportledger.results import CaseResult, TestResultAggregate
from reportledger.schemas import Verdict


def get_run(db: Session, run_id: int) -> JobRun | None:
    return db.get(JobRun, run_id)


def get_run_by_key(db: Session, job_name: str, build_number: int) -> JobRun | None:
    stmt = select(JobRun).where(JobRun.job_name == job_name, JobRun.build_number == build_number)
    return db.execute(stmt).scalar_one_or_none()


def next_build_number(db: Session, job_name: str) -> int:
    stmt = select(func.max(JobRun.build_number)).where(JobRun.job_name == job_name)
    current = db.execute(stmt).scalar_one_or_none()
    return (current or 0) + 1


def create_or_get_run(
    db: Session,
    *,
    job_name: str,
    build_number: int,
    trigger_source: str,
    started_at: datetime | None = None,
) -> tuple[JobRun, bool]:
    run = JobRun(
        job_name=job_name,
        build_number=build_number,
        trigger_source=trigger_source,
        started_at=started_at or utc_now(),
    )
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique (job, build) means a later recording step joins the same run.
        db.rollback()
        existing = get_run_by_key(db, job_name, build_number)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def get_open_run(db: Session, job_name: str) -> JobRun | None:
    stmt = (
        select(JobRun)
        .where(JobRun.job_name == job_name, JobRun.completed_at.is_(None))
        .order_by(JobRun.build_number.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def get_previous_completed_run(db: Session, run: JobRun) -> JobRun | None:
    stmt = (
        select(JobRun)
        .where(
            JobRun.job_name == run.job_name,
            JobRun.build_number < run.build_number,
            JobRun.completed_at.is_not(None),
        )
        .order_by(JobRun.build_number.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def load_aggregate(db: Session, run: JobRun) -> TestResultAggregate | None:
    if run.recorded_at is None:
        return None
    stmt = select(TestCaseRecord).where(TestCaseRecord.run_id == run.id).order_by(TestCaseRecord.id)
    cases = [
        CaseResult(
            suite=record.suite_name,
            name=record.case_name,
            class_name=record.class_name,
            status=record.status,
            duration=record.duration,
            message=record.message,
        )
        for record in db.execute(stmt).scalars().all()
    ]
    return TestResultAggregate(cases, recorded_at=run.recorded_at)


def load_previous_aggregate(db: Session, run: JobRun) -> TestResultAggregate | None:
    previous = get_previous_completed_run(db, run)
    if previous is None:
        return None
    return load_aggregate(db, previous)


def store_aggregate(db: Session, run: JobRun, aggregate: TestResultAggregate) -> None:
    try:
        db.execute(delete(TestCaseRecord).where(TestCaseRecord.run_id == run.id))
        for case in aggregate.cases:
            db.add(
                TestCaseRecord(
                    run_id=run.id,
                    suite_name=case.suite,
                    case_name=case.name,
                    class_name=case.class_name,
                    status=case.status,
                    duration=case.duration,
                    message=case.message,
                )
            )
        run.pass_count = aggregate.pass_count
        run.fail_count = aggregate.fail_count
        run.skip_count = aggregate.skip_count
        run.recorded_at = aggregate.recorded_at or utc_now()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise AggregateMergeError(f"Impossible to merge the test result into run {run.run_key}") from exc


def get_run_result(run: JobRun) -> Verdict | None:
    return Verdict.parse(run.result) if run.result else None


def set_run_result(db: Session, run: JobRun, verdict: Verdict) -> None:
    run.result = verdict.name
    db.commit()


def mark_run_completed(db: Session, run: JobRun) -> None:
    run.completed_at = utc_now()
    run.error = None
    db.commit()


def mark_run_failed(db: Session, run: JobRun, *, error: str) -> None:
    run.error = error
    run.completed_at = utc_now()
    db.commit()
