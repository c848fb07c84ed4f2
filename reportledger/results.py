from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from lxml import etree


PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class CaseResult:
    suite: str
    name: str
    class_name: str
    status: str
    duration: float = 0.0
    message: str | None = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.suite, self.name)


class TestResultAggregate:
    """All test cases recorded for a run, keyed by suite and case name.

    Counts are always derived from the case set, never stored, so merging the
    same reports twice cannot inflate them.
    """

    __test__ = False

    def __init__(self, cases: list[CaseResult] | None = None, recorded_at: datetime | None = None) -> None:
        self._cases: dict[tuple[str, str], CaseResult] = {}
        self.recorded_at = recorded_at
        for case in cases or []:
            self._cases[case.identity] = case

    @property
    def cases(self) -> list[CaseResult]:
        return list(self._cases.values())

    @property
    def suites(self) -> list[str]:
        return sorted({case.suite for case in self._cases.values()})

    @property
    def pass_count(self) -> int:
        return self._count(PASSED)

    @property
    def fail_count(self) -> int:
        return self._count(FAILED)

    @property
    def skip_count(self) -> int:
        return self._count(SKIPPED)

    @property
    def total_count(self) -> int:
        return len(self._cases)

    def case(self, suite: str, name: str) -> CaseResult | None:
        return self._cases.get((suite, name))

    def merge(self, other: "TestResultAggregate") -> "TestResultAggregate":
        # Cases from other replace cases with the same identity.
        merged = TestResultAggregate(self.cases, recorded_at=self.recorded_at)
        for case in other.cases:
            merged._cases[case.identity] = case
        if other.recorded_at is not None:
            merged.recorded_at = other.recorded_at
        return merged

    def _count(self, status: str) -> int:
        return sum(1 for case in self._cases.values() if case.status == status)

    def to_message(self) -> dict[str, object]:
        return {
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "cases": [
                {
                    "suite": case.suite,
                    "name": case.name,
                    "class_name": case.class_name,
                    "status": case.status,
                    "duration": case.duration,
                    "message": case.message,
                }
                for case in self._cases.values()
            ],
        }

    @classmethod
    def from_message(cls, payload: dict[str, object]) -> "TestResultAggregate":
        recorded_at = payload.get("recorded_at")
        return cls(
            [CaseResult(**raw) for raw in payload.get("cases", [])],
            recorded_at=datetime.fromisoformat(recorded_at) if recorded_at else None,
        )


def _parse_duration(raw: str | None) -> float:
    if not raw:
        return 0.0
    try:
        # Some tools write thousands separators, e.g. "1,234.5".
        return float(raw.replace(",", ""))
    except ValueError:
        return 0.0


def _case_status(element: etree._Element) -> tuple[str, str | None]:
    for child in element:
        tag = etree.QName(child).localname if isinstance(child.tag, str) else ""
        if tag in ("failure", "error"):
            return FAILED, child.get("message") or (child.text or "").strip() or None
        if tag == "skipped":
            return SKIPPED, child.get("message") or None
    return PASSED, None


def parse_report(path: Path) -> list[CaseResult]:
    tree = etree.parse(str(path))
    cases: list[CaseResult] = []
    for suite in tree.getroot().iter("testsuite"):
        suite_name = suite.get("name") or ""
        for element in suite.findall("testcase"):
            class_name = element.get("classname") or ""
            case_name = element.get("name") or ""
            status, message = _case_status(element)
            cases.append(
                CaseResult(
                    suite=suite_name,
                    name=f"{class_name}.{case_name}" if class_name else case_name,
                    class_name=class_name,
                    status=status,
                    duration=_parse_duration(element.get("time")),
                    message=message,
                )
            )
    return cases


def parse_reports(paths: list[Path], recorded_at: datetime | None = None) -> TestResultAggregate:
    aggregate = TestResultAggregate(recorded_at=recorded_at)
    for path in sorted(paths):
        aggregate = aggregate.merge(TestResultAggregate(parse_report(path)))
    aggregate.recorded_at = recorded_at
    return aggregate
