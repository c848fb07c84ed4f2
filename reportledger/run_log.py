from collections.abc import Callable
import logging


logger = logging.getLogger(__name__)

_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class RunLog:
    """Human-readable log lines for one run.

    Every line goes to the run's sink (console, build log, test list) and is
    mirrored to the ``logging`` module with the run key as context.
    """

    prefix = "[reportledger]"

    def __init__(self, sink: Callable[[str], None] | None = None, run_key: str | None = None) -> None:
        self.sink = sink
        self.run_key = run_key

    def info(self, message: str) -> None:
        self._emit("INFO", message)

    def warning(self, message: str) -> None:
        self._emit("WARNING", message)

    def error(self, message: str) -> None:
        self._emit("ERROR", message)

    def replay(self, lines: list[tuple[str, str]]) -> None:
        # Lines collected on a node come back as (level, message) pairs.
        for level, message in lines:
            self._emit(level if level in _LEVELS else "INFO", message)

    def _emit(self, level: str, message: str) -> None:
        logger.log(_LEVELS[level], message, extra={"run_key": self.run_key})
        if self.sink is not None:
            self.sink(f"{self.prefix} [{level}] - {message}")


class BufferedRunLog(RunLog):
    def __init__(self) -> None:
        super().__init__(sink=None)
        self.lines: list[tuple[str, str]] = []

    def _emit(self, level: str, message: str) -> None:
        self.lines.append((level, message))
