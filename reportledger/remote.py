"""Work that has to run on the node holding the workspace.

The coordinator never touches the workspace directly. It sends a JSON request
through a channel, the node's ``NodeAgent`` does the file work and answers with
a JSON reply carrying either a value or an error, plus the log lines produced
while handling the request.
"""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
import shutil
from typing import Protocol
import uuid

from reportledger.converters import FormatConverter, build_converter
from reportledger.errors import REMOTE_ERRORS, ChannelError, ConversionError, NoTestFoundError, OldReportsError, ReportLedgerError
from reportledger.patterns import find_files
from reportledger.results import parse_reports
from reportledger.run_log import BufferedRunLog, RunLog


logger = logging.getLogger(__name__)

REPORT_PREFIX = "REPORT-"
REPORT_PATTERN = f"**/{REPORT_PREFIX}*.xml"


def utc_now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def to_epoch_ms(moment: datetime) -> int:
    # Run timestamps are stored as naive UTC.
    return int(moment.replace(tzinfo=UTC).timestamp() * 1000)


@dataclass(frozen=True)
class ConversionRequest:
    format: str
    pattern: str
    namespace: str
    generated_dir: str
    stylesheet: str | None
    fail_if_not_new: bool
    stop_on_error: bool
    build_time_ms: int
    test_time_margin_ms: int


@dataclass(frozen=True)
class ReportScanRequest:
    namespace: str
    generated_dir: str
    build_time_ms: int
    coordinator_now_ms: int
    pattern: str = REPORT_PATTERN


class NodeAgent:
    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    def handle(self, message: str) -> str:
        log = BufferedRunLog()
        try:
            request = json.loads(message)
            method = request["method"]
            params = request.get("params", {})
            handler = self._handlers().get(method)
            if handler is None:
                raise ChannelError(f"unknown node method: {method!r}")
            value = handler(params, log)
            reply: dict[str, object] = {"ok": True, "value": value}
        except ReportLedgerError as exc:
            reply = {"ok": False, "error": {"type": type(exc).__name__, "message": str(exc)}}
        except Exception as exc:
            logger.exception("node request failed")
            reply = {"ok": False, "error": {"type": ChannelError.__name__, "message": f"{type(exc).__name__}: {exc}"}}
        reply["log"] = log.lines
        return json.dumps(reply)

    def _handlers(self):
        return {
            "convert": lambda params, log: self.convert(ConversionRequest(**params), log),
            "parse_reports": lambda params, log: self.parse_reports(ReportScanRequest(**params)),
            "read_file": lambda params, log: self.read_file(params["path"], relative=params.get("relative", False)),
            "delete_tree": lambda params, log: self.delete_tree(params["path"]),
        }

    def convert(self, request: ConversionRequest, log: RunLog) -> int:
        converter = build_converter(request.format, log, stylesheet=request.stylesheet)
        output_dir = self.workspace / request.generated_dir / request.namespace / converter.tool_name
        output_dir.mkdir(parents=True, exist_ok=True)

        files = find_files(self.workspace, request.pattern)
        if not files:
            raise NoTestFoundError(
                f"No test reports found for the metric '{converter.tool_name}' with the resolved pattern "
                f"'{request.pattern}'. Configuration error?."
            )

        log.info(
            f"[{converter.tool_name}] - {len(files)} test report file(s) were found with the pattern "
            f"'{request.pattern}' relative to '{self.workspace}' for the testing framework '{converter.tool_name}'."
        )

        if request.fail_if_not_new:
            self._check_new_reports(files, request)

        processed = 0
        for path in files:
            if self._convert_file(converter, path, output_dir, stop_on_error=request.stop_on_error, log=log):
                processed += 1
        return processed

    def _check_new_reports(self, files: list[Path], request: ConversionRequest) -> None:
        oldest_allowed_ms = request.build_time_ms - request.test_time_margin_ms
        old_files = [path for path in files if path.stat().st_mtime * 1000 < oldest_allowed_ms]
        if old_files:
            listing = "\n".join(f"  * {path.relative_to(self.workspace)}" for path in old_files)
            raise OldReportsError(
                f"Test reports were found but not all of them are new. Did all the tests run?\n{listing}"
            )

    def _convert_file(
        self,
        converter: FormatConverter,
        path: Path,
        output_dir: Path,
        *,
        stop_on_error: bool,
        log: RunLog,
    ) -> bool:
        if not converter.validate_input_file(path):
            for error in converter.input_validation_errors:
                log.error(str(error))
            log.error(
                f"The result file '{path}' for the metric '{converter.tool_name}' is not valid. "
                "The result file has been skipped."
            )
            return False

        output_path = output_dir / f"{REPORT_PREFIX}{uuid.uuid4().hex}.xml"
        try:
            converter.convert(path, output_path)
        except ConversionError as exc:
            if stop_on_error:
                raise
            log.error(str(exc))
            return False

        if not converter.validate_output_file(output_path):
            # The invalid output is kept so it can be inspected.
            for error in converter.output_validation_errors:
                log.error(str(error))
            log.error(
                f"The converted file for the result file '{path}' (during conversion process for the metric "
                f"'{converter.tool_name}') is not valid. The report file has been kept."
            )
        return True

    def parse_reports(self, request: ReportScanRequest) -> dict[str, object] | None:
        node_now_ms = utc_now_ms()
        report_root = self.workspace / request.generated_dir / request.namespace
        report_root.mkdir(parents=True, exist_ok=True)

        files = find_files(report_root, request.pattern)
        if not files:
            return None

        corrected_ms = request.build_time_ms + (node_now_ms - request.coordinator_now_ms)
        recorded_at = datetime.fromtimestamp(corrected_ms / 1000, UTC).replace(tzinfo=None)
        return parse_reports(files, recorded_at=recorded_at).to_message()

    def read_file(self, path: str, *, relative: bool = False) -> str | None:
        candidate = self.workspace / path if relative else Path(path)
        if not relative and not candidate.is_absolute():
            return None
        if not candidate.is_file():
            return None
        return candidate.read_text(encoding="utf-8")

    def delete_tree(self, path: str) -> bool:
        target = self.workspace / path
        if not target.exists():
            return False
        shutil.rmtree(target)
        return True


class Channel(Protocol):
    def call(self, method: str, params: dict[str, object], log: RunLog) -> object: ...


class LocalChannel:
    """Channel to a node agent living in the same process.

    Requests and replies still go through JSON so nothing but plain data
    crosses the boundary.
    """

    def __init__(self, agent: NodeAgent) -> None:
        self.agent = agent

    @classmethod
    def for_workspace(cls, workspace: Path) -> "LocalChannel":
        return cls(NodeAgent(workspace))

    def call(self, method: str, params: dict[str, object], log: RunLog) -> object:
        reply = json.loads(self.agent.handle(json.dumps({"method": method, "params": params})))
        log.replay([(level, message) for level, message in reply.get("log", [])])
        if not reply["ok"]:
            error = reply["error"]
            raise REMOTE_ERRORS.get(error["type"], ChannelError)(error["message"])
        return reply["value"]


def request_params(request: ConversionRequest | ReportScanRequest) -> dict[str, object]:
    return asdict(request)
