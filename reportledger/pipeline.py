from collections.abc import Callable, Sequence
from datetime import datetime
import logging
import os
from pathlib import Path
import uuid

from sqlalchemy.orm import Session, sessionmaker

from reportledger.cleanup import delete_outputs
from reportledger.config import RecordingConfig, Settings
from reportledger.converters import CONVERTERS, uses_builtin_stylesheet
from reportledger.db_models import JobRun
from reportledger.errors import ConfigurationError, ConversionError, NoTestFoundError, OldReportsError, ReportLedgerError
from reportledger.patterns import is_empty_pattern, resolve_pattern
from reportledger.remote import (
    Channel,
    ConversionRequest,
    LocalChannel,
    ReportScanRequest,
    request_params,
    to_epoch_ms,
    utc_now_ms,
)
from reportledger.results import TestResultAggregate
from reportledger.run_log import RunLog
from reportledger.run_store import (
    create_or_get_run,
    get_run,
    get_run_result,
    load_aggregate,
    load_previous_aggregate,
    mark_run_completed,
    mark_run_failed,
    set_run_result,
    store_aggregate,
)
from reportledger.schemas import ProcessResult, RunContext, ThresholdMode, ToolConfig, Verdict
from reportledger.stylesheets import resolve_custom_stylesheet, user_stylesheet
from reportledger.thresholds import Threshold, combine_verdicts, evaluate_thresholds


logger = logging.getLogger(__name__)


class ReportProcessor:
    """Converts, records and judges the test reports of one run.

    One instance owns one namespace; the canonical files it produces live under
    ``<workspace>/<generated_dir>/<namespace>/<tool>/``.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        tools: Sequence[ToolConfig] | None,
        thresholds: Sequence[Threshold] | None = None,
        threshold_mode: ThresholdMode = ThresholdMode.NUMBER,
    ) -> None:
        if tools is None:
            raise ConfigurationError("The tools section is required.")
        if settings is None:
            raise ConfigurationError("The settings are required.")
        for tool in tools:
            if tool.format not in CONVERTERS:
                raise ConfigurationError(f"unknown report format: {tool.format!r}")

        self.settings = settings
        self.session_factory = session_factory
        self.tools = tuple(tools)
        self.thresholds = tuple(thresholds or ())
        self.threshold_mode = threshold_mode
        self.namespace = uuid.uuid4().hex

    def process(self, context: RunContext, channel: Channel) -> ProcessResult:
        log = context.log
        log.info("Starting to record.")

        with self.session_factory() as db:
            run = get_run(db, context.run_id)
            if run is None:
                raise ConfigurationError(f"run {context.run_id} does not exist")

            processed = 0
            try:
                processed = self._process_reports(context, channel)
                if processed == 0:
                    log.info("Skipping tests recording.")
                    self._delete_outputs(channel, log)
                    return self._result(run, "skipped", processed, None)

                aggregate = self._record_test_result(db, run, context, channel)
                verdict = self._build_verdict(db, run, aggregate, log)
                self._delete_outputs(channel, log)

                log.info(f"Setting the build status to {verdict.name}")
                set_run_result(db, run, verdict)
                log.info("Stopping recording.")
                return self._result(run, "recorded", processed, aggregate)
            except ReportLedgerError as exc:
                # The run keeps whatever verdict it already had.
                log.error(str(exc))
                return self._result(run, "failed", processed, None, error=str(exc))
            except Exception as exc:
                logger.exception("recording step failed", extra={"run_key": context.run_key})
                message = f"{type(exc).__name__}: {exc}"
                log.error(message)
                return self._result(run, "failed", processed, None, error=message)

    def _process_reports(self, context: RunContext, channel: Channel) -> int:
        processed = 0
        for tool in self.tools:
            context.log.info(f"Processing {tool.format}")
            if is_empty_pattern(tool.pattern):
                context.log.info(f"The pattern of '{tool.format}' is empty, nothing to process.")
                continue

            request = self._conversion_request(tool, context, channel)
            try:
                processed += int(channel.call("convert", request_params(request), context.log))
            except NoTestFoundError as exc:
                if tool.skip_if_no_files:
                    context.log.info(str(exc))
                    continue
                if tool.stop_on_error:
                    raise
                context.log.error(str(exc))
            except (OldReportsError, ConversionError) as exc:
                if tool.stop_on_error:
                    raise
                context.log.error(str(exc))
        return processed

    def _conversion_request(self, tool: ToolConfig, context: RunContext, channel: Channel) -> ConversionRequest:
        if uses_builtin_stylesheet(tool.format):
            stylesheet = user_stylesheet(tool, context, self.settings)
        else:
            stylesheet = resolve_custom_stylesheet(tool, context, channel, self.settings)

        return ConversionRequest(
            format=tool.format,
            pattern=resolve_pattern(tool.pattern, context.environment),
            namespace=self.namespace,
            generated_dir=self.settings.generated_dir,
            stylesheet=stylesheet,
            fail_if_not_new=tool.fail_if_not_new,
            stop_on_error=tool.stop_on_error,
            build_time_ms=to_epoch_ms(context.started_at),
            test_time_margin_ms=self.settings.test_time_margin_ms,
        )

    def _record_test_result(
        self,
        db: Session,
        run: JobRun,
        context: RunContext,
        channel: Channel,
    ) -> TestResultAggregate:
        scan = ReportScanRequest(
            namespace=self.namespace,
            generated_dir=self.settings.generated_dir,
            build_time_ms=to_epoch_ms(context.started_at),
            coordinator_now_ms=utc_now_ms(),
        )
        payload = channel.call("parse_reports", request_params(scan), context.log)
        existing = load_aggregate(db, run)
        if payload is None:
            context.log.warning("No canonical report was produced, nothing new to record.")
            return existing or TestResultAggregate()

        current = TestResultAggregate.from_message(payload)
        merged = existing.merge(current) if existing is not None else current
        store_aggregate(db, run, merged)

        if merged.pass_count == 0 and merged.fail_count == 0:
            context.log.warning("Empty report: no passed or failed test was recorded. Check the report patterns.")
        return merged

    def _build_verdict(self, db: Session, run: JobRun, aggregate: TestResultAggregate, log: RunLog) -> Verdict:
        previous = load_previous_aggregate(db, run)
        candidate = evaluate_thresholds(self.thresholds, self.threshold_mode, aggregate, previous, log)
        return combine_verdicts(candidate, get_run_result(run))

    def _delete_outputs(self, channel: Channel, log: RunLog) -> None:
        delete_outputs(
            channel,
            self.tools,
            generated_dir=self.settings.generated_dir,
            namespace=self.namespace,
            log=log,
        )

    def _result(
        self,
        run: JobRun,
        status: str,
        processed: int,
        aggregate: TestResultAggregate | None,
        error: str | None = None,
    ) -> ProcessResult:
        return ProcessResult(
            run_id=run.id,
            run_key=run.run_key,
            status=status,
            verdict=get_run_result(run),
            processed_reports=processed,
            passed=aggregate.pass_count if aggregate else run.pass_count,
            failed=aggregate.fail_count if aggregate else run.fail_count,
            skipped=aggregate.skip_count if aggregate else run.skip_count,
            namespace=self.namespace,
            error=error,
        )


class PipelineRunner:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]) -> None:
        self.settings = settings
        self.session_factory = session_factory

    def run(
        self,
        recording: RecordingConfig,
        *,
        job_name: str,
        build_number: int,
        workspace: Path,
        trigger_source: str = "manual",
        started_at: datetime | None = None,
        existing_result: Verdict | None = None,
        sink: Callable[[str], None] | None = None,
        channel: Channel | None = None,
    ) -> ProcessResult:
        with self.session_factory() as db:
            run, created = create_or_get_run(
                db,
                job_name=job_name,
                build_number=build_number,
                trigger_source=trigger_source,
                started_at=started_at,
            )
            if not created:
                logger.info("recording joins existing run", extra={"run_key": run.run_key})
            if existing_result is not None:
                set_run_result(db, run, existing_result)
            run_id, run_key, started_at = run.id, run.run_key, run.started_at

        environment = dict(os.environ)
        environment.update(
            {"JOB_NAME": job_name, "BUILD_NUMBER": str(build_number), "WORKSPACE": str(workspace)}
        )
        context = RunContext(
            run_id=run_id,
            run_key=run_key,
            workspace=workspace,
            started_at=started_at,
            log=RunLog(sink, run_key=run_key),
            environment=environment,
        )

        processor = ReportProcessor(
            self.settings,
            self.session_factory,
            recording.tools,
            recording.thresholds,
            recording.threshold_mode,
        )
        result = processor.process(context, channel or LocalChannel.for_workspace(workspace))

        with self.session_factory() as db:
            run = get_run(db, run_id)
            if result.status == "failed":
                mark_run_failed(db, run, error=result.error or "recording failed")
                logger.error("recording failed", extra={"run_key": run_key, "error": result.error})
            else:
                mark_run_completed(db, run)
                logger.info("recording finished", extra={"run_key": run_key, "status": result.status})
        return result
