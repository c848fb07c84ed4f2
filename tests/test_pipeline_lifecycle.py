from datetime import timedelta
import os
from pathlib import Path
import time

import pytest
from sqlalchemy import select

from reportledger.config import RecordingConfig
from reportledger.db_models import TestCaseRecord, utc_now
from reportledger.errors import ConfigurationError
from reportledger.pipeline import ReportProcessor
from reportledger.run_store import get_run_by_key
from reportledger.schemas import ThresholdMode, ToolConfig, Verdict
from reportledger.thresholds import FailedThreshold
from tests.samples import (
    CPPUNIT_RUN,
    CUSTOM_RESULTS,
    CUSTOM_STYLESHEET,
    FIXED_SUITE,
    MIXED_SUITE,
    PASSING_SUITE,
    SKIPPED_SUITE,
    write_report,
)


def junit_tool(pattern: str = "reports/*.xml", **overrides) -> ToolConfig:
    overrides.setdefault("fail_if_not_new", False)
    return ToolConfig("junit", pattern, **overrides)


def recording(*tools: ToolConfig, thresholds=(FailedThreshold(failure=0),)) -> RecordingConfig:
    return RecordingConfig(tools=list(tools), thresholds=list(thresholds), threshold_mode=ThresholdMode.NUMBER)


def test_failed_case_over_threshold_fails_the_run(runner, session_factory, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)
    write_report(temp_workspace, "reports/TEST-div.xml", MIXED_SUITE)
    lines: list[str] = []

    result = runner.run(recording(junit_tool()), job_name="calc", build_number=1, workspace=temp_workspace, sink=lines.append)

    assert result.status == "recorded"
    assert result.verdict is Verdict.FAILURE
    assert result.processed_reports == 2
    assert (result.passed, result.failed, result.skipped) == (3, 1, 0)
    assert not (temp_workspace / "generatedJUnitFiles" / result.namespace).exists()
    assert lines[0] == "[reportledger] [INFO] - Starting to record."
    assert any("2 test report file(s) were found" in line for line in lines)

    with session_factory() as db:
        run = get_run_by_key(db, "calc", 1)
        assert run.result == "FAILURE"
        assert run.completed_at is not None
        assert (run.pass_count, run.fail_count, run.skip_count) == (3, 1, 0)
        cases = db.execute(select(TestCaseRecord).where(TestCaseRecord.run_id == run.id)).scalars().all()
        assert len(cases) == 4


def test_all_passing_run_succeeds(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)
    write_report(temp_workspace, "reports/TEST-div.xml", FIXED_SUITE)

    result = runner.run(recording(junit_tool()), job_name="calc", build_number=1, workspace=temp_workspace)

    assert result.verdict is Verdict.SUCCESS
    assert (result.passed, result.failed, result.skipped) == (4, 0, 0)


def test_existing_failure_is_not_improved(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)

    result = runner.run(
        recording(junit_tool()),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
        existing_result=Verdict.FAILURE,
    )

    assert result.status == "recorded"
    assert result.verdict is Verdict.FAILURE


def test_not_built_is_replaced_by_threshold_verdict(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)

    result = runner.run(
        recording(junit_tool()),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
        existing_result=Verdict.NOT_BUILT,
    )

    assert result.verdict is Verdict.SUCCESS


@pytest.mark.parametrize("existing", [None, Verdict.UNSTABLE])
def test_no_reports_anywhere_skips_recording(runner, temp_workspace: Path, existing: Verdict | None) -> None:
    tools = (
        junit_tool("unit/*.xml", skip_if_no_files=True),
        ToolConfig("cppunit", "cpp/*.xml", skip_if_no_files=True),
    )
    lines: list[str] = []

    result = runner.run(
        recording(*tools),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
        existing_result=existing,
        sink=lines.append,
    )

    assert result.status == "skipped"
    assert result.verdict is existing
    assert result.processed_reports == 0
    assert any("Skipping tests recording." in line for line in lines)
    assert not (temp_workspace / "generatedJUnitFiles" / result.namespace).exists()


def test_missing_reports_abort_when_not_skippable(runner, session_factory, temp_workspace: Path) -> None:
    write_report(temp_workspace, "cpp/cppunit.xml", CPPUNIT_RUN)
    tools = (junit_tool("unit/*.xml"), ToolConfig("cppunit", "cpp/*.xml", fail_if_not_new=False))

    result = runner.run(
        recording(*tools),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
        existing_result=Verdict.UNSTABLE,
    )

    assert result.status == "failed"
    assert result.verdict is Verdict.UNSTABLE
    assert "No test reports found" in result.error
    with session_factory() as db:
        run = get_run_by_key(db, "calc", 1)
        assert run.result == "UNSTABLE"
        assert run.recorded_at is None
        assert "No test reports found" in run.error


def test_missing_reports_only_skip_the_tool_when_processing_continues(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "cpp/cppunit.xml", CPPUNIT_RUN)
    tools = (
        junit_tool("unit/*.xml", stop_on_error=False),
        ToolConfig("cppunit", "cpp/*.xml", fail_if_not_new=False),
    )
    lines: list[str] = []

    result = runner.run(recording(*tools), job_name="calc", build_number=1, workspace=temp_workspace, sink=lines.append)

    assert result.status == "recorded"
    assert (result.passed, result.failed) == (1, 1)
    assert any("[ERROR]" in line and "No test reports found" in line for line in lines)


def test_second_recording_merges_into_the_same_run(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)
    write_report(temp_workspace, "reports/TEST-div.xml", MIXED_SUITE)
    config = recording(junit_tool())

    first = runner.run(config, job_name="calc", build_number=7, workspace=temp_workspace)
    again = runner.run(config, job_name="calc", build_number=7, workspace=temp_workspace)

    assert (first.passed, first.failed) == (3, 1)
    assert (again.passed, again.failed) == (3, 1)
    assert again.run_id == first.run_id

    # The flaky case passes on rerun; the run still cannot get better.
    write_report(temp_workspace, "reports/TEST-div.xml", FIXED_SUITE)
    rerun = runner.run(config, job_name="calc", build_number=7, workspace=temp_workspace)

    assert (rerun.passed, rerun.failed) == (4, 0)
    assert rerun.verdict is Verdict.FAILURE


def test_new_failure_limit_compares_with_previous_completed_run(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-div.xml", MIXED_SUITE)
    config = recording(junit_tool(), thresholds=(FailedThreshold(failure_new=0),))

    first = runner.run(config, job_name="calc", build_number=1, workspace=temp_workspace)
    second = runner.run(config, job_name="calc", build_number=2, workspace=temp_workspace)

    assert first.verdict is Verdict.FAILURE
    assert second.verdict is Verdict.SUCCESS


def test_opted_out_tool_keeps_canonical_reports(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)
    write_report(temp_workspace, "cpp/cppunit.xml", CPPUNIT_RUN)
    tools = (
        junit_tool(),
        ToolConfig("cppunit", "cpp/*.xml", fail_if_not_new=False, delete_output_files=False),
    )

    result = runner.run(recording(*tools), job_name="calc", build_number=1, workspace=temp_workspace)

    namespace_dir = temp_workspace / "generatedJUnitFiles" / result.namespace
    assert namespace_dir.exists()
    assert not (namespace_dir / "junit").exists()
    assert len(list((namespace_dir / "cppunit").glob("REPORT-*.xml"))) == 1


def test_custom_stylesheet_from_workspace(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "xsl/results-to-junit.xsl", CUSTOM_STYLESHEET)
    write_report(temp_workspace, "out/results.xml", CUSTOM_RESULTS)
    tool = ToolConfig("custom", "out/*.xml", stylesheet="xsl/results-to-junit.xsl", fail_if_not_new=False)

    result = runner.run(recording(tool), job_name="server", build_number=1, workspace=temp_workspace)

    assert result.status == "recorded"
    assert (result.passed, result.failed) == (1, 1)
    assert result.verdict is Verdict.FAILURE


def test_missing_custom_stylesheet_aborts(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "out/results.xml", CUSTOM_RESULTS)
    tool = ToolConfig("custom", "out/*.xml", stylesheet="xsl/missing.xsl", fail_if_not_new=False)

    result = runner.run(recording(tool), job_name="server", build_number=1, workspace=temp_workspace)

    assert result.status == "failed"
    assert result.verdict is None
    assert "xsl/missing.xsl" in result.error


def test_pattern_expands_run_environment(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "calc/build-3/TEST-add.xml", PASSING_SUITE)

    result = runner.run(
        recording(junit_tool("$JOB_NAME/build-${BUILD_NUMBER}/*.xml")),
        job_name="calc",
        build_number=3,
        workspace=temp_workspace,
    )

    assert result.status == "recorded"
    assert result.passed == 2


def test_only_skipped_tests_warns_about_empty_report(runner, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-pow.xml", SKIPPED_SUITE)
    lines: list[str] = []

    result = runner.run(recording(junit_tool()), job_name="calc", build_number=1, workspace=temp_workspace, sink=lines.append)

    assert result.verdict is Verdict.SUCCESS
    assert result.skipped == 1
    assert any("[WARNING]" in line and "Empty report" in line for line in lines)


def test_processor_requires_tools(test_settings, session_factory) -> None:
    with pytest.raises(ConfigurationError, match="tools section is required"):
        ReportProcessor(test_settings, session_factory, None)
    with pytest.raises(ConfigurationError, match="unknown report format"):
        ReportProcessor(test_settings, session_factory, [ToolConfig("nunit", "*.xml")])


def test_each_processor_gets_its_own_namespace(test_settings, session_factory) -> None:
    first = ReportProcessor(test_settings, session_factory, [junit_tool()])
    second = ReportProcessor(test_settings, session_factory, [junit_tool()])

    assert first.namespace != second.namespace


def test_pattern_rooted_at_workspace_variable(runner, session_factory, temp_workspace: Path) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)

    result = runner.run(
        recording(junit_tool("${WORKSPACE}/reports/*.xml")),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
    )

    assert result.status == "recorded"
    assert result.passed == 2
    with session_factory() as db:
        assert get_run_by_key(db, "calc", 1).completed_at is not None


def test_unexpected_error_is_logged_and_fails_the_run(runner, session_factory, temp_workspace: Path, monkeypatch) -> None:
    write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)

    def broken_thresholds(*args, **kwargs):
        raise RuntimeError("threshold store unavailable")

    monkeypatch.setattr("reportledger.pipeline.evaluate_thresholds", broken_thresholds)
    lines: list[str] = []

    result = runner.run(
        recording(junit_tool()),
        job_name="calc",
        build_number=1,
        workspace=temp_workspace,
        existing_result=Verdict.UNSTABLE,
        sink=lines.append,
    )

    assert result.status == "failed"
    assert result.verdict is Verdict.UNSTABLE
    assert "RuntimeError: threshold store unavailable" in result.error
    assert any("[ERROR]" in line and "threshold store unavailable" in line for line in lines)
    with session_factory() as db:
        run = get_run_by_key(db, "calc", 1)
        assert run.completed_at is not None
        assert "threshold store unavailable" in run.error


def test_default_tool_accepts_reports_written_after_run_start(runner, temp_workspace: Path) -> None:
    report = write_report(temp_workspace, "reports/TEST-add.xml", PASSING_SUITE)
    five_minutes_ago = time.time() - 300
    os.utime(report, (five_minutes_ago, five_minutes_ago))
    tool = ToolConfig("junit", "reports/*.xml")

    stale = runner.run(recording(tool), job_name="calc", build_number=1, workspace=temp_workspace)
    fresh = runner.run(
        recording(tool),
        job_name="calc",
        build_number=2,
        workspace=temp_workspace,
        started_at=utc_now() - timedelta(minutes=10),
    )

    assert stale.status == "failed"
    assert "not all of them are new" in stale.error
    assert fresh.status == "recorded"
    assert fresh.passed == 2
