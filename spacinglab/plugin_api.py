"""Plugin API definitions for SpacingLab."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class TestResult:
    """Test result container.

    Observability fields:
      - time_ms: duration of the test execution in milliseconds (float or None)
      - bytes_processed: number of bytes the test consumed (int or None)
    """
    __test__ = False
    test_name: str
    passed: bool
    p_value: Optional[float]
    category: str = "diehard"
    p_values: Dict[str, float] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    evidence: Optional[str] = None

    time_ms: Optional[float] = None
    bytes_processed: Optional[int] = None

    def __post_init__(self):
        # None means no formal p-value (skipped run)
        if self.p_value is not None:
            if not (0.0 <= self.p_value <= 1.0):
                raise ValueError("p_value must be between 0 and 1 or None")
        if self.time_ms is not None:
            try:
                self.time_ms = float(self.time_ms)
            except (TypeError, ValueError):
                raise ValueError("time_ms must be a number (milliseconds) or None")
        if self.bytes_processed is not None:
            try:
                self.bytes_processed = int(self.bytes_processed)
            except (TypeError, ValueError):
                raise ValueError("bytes_processed must be an integer or None")


def serialize_testresult(result: TestResult) -> Dict[str, Any]:
    """Serialize a TestResult into a JSON-compatible dict.

    numpy scalars that may leak into `metrics` are converted to plain Python numbers.
    """
    metrics: Dict[str, Any] = {}
    for key, value in (result.metrics or {}).items():
        metrics[key] = value.item() if hasattr(value, "item") else value

    return {
        "test_name": result.test_name,
        "passed": result.passed,
        "p_value": result.p_value,
        "category": result.category,
        "p_values": result.p_values or {},
        "flags": result.flags or [],
        "metrics": metrics,
        "evidence": result.evidence,
        "time_ms": result.time_ms,
        "bytes_processed": result.bytes_processed,
    }


class BytesView:
    """Memory-efficient byte view wrapper."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        if isinstance(data, memoryview):
            self._view = data
        else:
            self._view = memoryview(bytes(data))

    def __len__(self) -> int:
        return len(self._view)

    def __getitem__(self, key):
        return self._view[key]

    def word_count(self, bits: int) -> int:
        """Number of complete `bits`-wide words held by the view."""
        return len(self._view) // (bits // 8)


class BasePlugin(ABC):
    """Base class for all plugins."""

    @abstractmethod
    def describe(self) -> str:
        """Return plugin description."""
        pass


class TestPlugin(BasePlugin):
    """Base class for statistical test plugins."""

    __test__ = False

    @abstractmethod
    def run(self, data: BytesView, params: Dict[str, Any]) -> TestResult:
        """Run statistical test."""
        pass

    def safe_run(self, data: BytesView, params: Dict[str, Any]):
        """Execute the test and convert unexpected exceptions into a structured error dict.

        Returns:
            TestResult when the test completes, or
            dict with keys {"status": "error", "reason": "..."} when an exception occurs.
        """
        try:
            return self.run(data, params)
        except Exception as e:
            return {"status": "error", "reason": str(e)}
