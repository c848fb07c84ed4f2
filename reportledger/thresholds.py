from collections.abc import Sequence
from dataclasses import dataclass
from typing import ClassVar

from reportledger.errors import ConfigurationError
from reportledger.results import TestResultAggregate
from reportledger.run_log import RunLog
from reportledger.schemas import ThresholdMode, Verdict


@dataclass(frozen=True)
class Threshold:
    """Limits for one measured quantity; unset limits are not checked."""

    kind: ClassVar[str] = ""
    display_name: ClassVar[str] = ""

    unstable: float | None = None
    unstable_new: float | None = None
    failure: float | None = None
    failure_new: float | None = None

    def measure(self, aggregate: TestResultAggregate) -> int:
        raise NotImplementedError

    def evaluate(
        self,
        log: RunLog,
        mode: ThresholdMode,
        current: TestResultAggregate,
        previous: TestResultAggregate | None,
    ) -> Verdict:
        count = self.measure(current)
        new_count = count - self.measure(previous) if previous is not None else count

        if mode is ThresholdMode.PERCENT:
            total = current.total_count
            value = count * 100 / total if total else 0.0
            new_value = new_count * 100 / total if total else 0.0
            unit = "percent"
        else:
            value = count
            new_value = new_count
            unit = "number"

        checks = (
            (self.failure, value, Verdict.FAILURE, "failure"),
            (self.failure_new, new_value, Verdict.FAILURE, "new failure"),
            (self.unstable, value, Verdict.UNSTABLE, "unstable"),
            (self.unstable_new, new_value, Verdict.UNSTABLE, "new unstable"),
        )
        for limit, measured, verdict, label in checks:
            if limit is not None and measured > limit:
                log.info(
                    f"The {unit} of {self.kind} tests ({measured:g}) exceeds the '{label}' threshold value ({limit:g})."
                )
                return verdict
        return Verdict.SUCCESS


@dataclass(frozen=True)
class FailedThreshold(Threshold):
    kind: ClassVar[str] = "failed"
    display_name: ClassVar[str] = "Failed Tests"

    def measure(self, aggregate: TestResultAggregate) -> int:
        return aggregate.fail_count


@dataclass(frozen=True)
class SkippedThreshold(Threshold):
    kind: ClassVar[str] = "skipped"
    display_name: ClassVar[str] = "Skipped Tests"

    def measure(self, aggregate: TestResultAggregate) -> int:
        return aggregate.skip_count


THRESHOLD_TYPES: dict[str, type[Threshold]] = {
    FailedThreshold.kind: FailedThreshold,
    SkippedThreshold.kind: SkippedThreshold,
}


def _limit(raw: dict[str, object], key: str) -> float | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        limit = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"threshold '{key}' must be a number, got {value!r}") from exc
    if limit < 0:
        raise ConfigurationError(f"threshold '{key}' must not be negative")
    return limit


def build_threshold(raw: dict[str, object]) -> Threshold:
    kind = str(raw.get("kind", "")).strip().lower()
    threshold_type = THRESHOLD_TYPES.get(kind)
    if threshold_type is None:
        raise ConfigurationError(f"unknown threshold kind: {kind!r}")
    return threshold_type(
        unstable=_limit(raw, "unstable"),
        unstable_new=_limit(raw, "unstable_new"),
        failure=_limit(raw, "failure"),
        failure_new=_limit(raw, "failure_new"),
    )


def evaluate_thresholds(
    thresholds: Sequence[Threshold],
    mode: ThresholdMode,
    current: TestResultAggregate,
    previous: TestResultAggregate | None,
    log: RunLog,
) -> Verdict:
    for threshold in thresholds:
        log.info(f"Check '{threshold.display_name or threshold.kind}' threshold.")
        verdict = threshold.evaluate(log, mode, current, previous)
        if verdict.is_worse_than(Verdict.SUCCESS):
            return verdict
    return Verdict.SUCCESS


def combine_verdicts(candidate: Verdict, existing: Verdict | None) -> Verdict:
    # A run's verdict never improves across recordings, NOT_BUILT excepted.
    if existing is None or existing is Verdict.NOT_BUILT:
        return candidate
    if existing.is_worse_or_equal_to(candidate):
        return existing
    return candidate
