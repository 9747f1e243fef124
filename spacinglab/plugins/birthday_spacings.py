# -*- coding: utf-8 -*-
"""Birthday Spacings test (Marsaglia & Tsang, "Some difficult-to-pass tests of randomness").

Each trial draws ``n_birthdays`` integers ("birthdays") in ``[0, n)`` from a
generator, sorts them, and counts how many distinct spacing values occur more
than once among the sorted consecutive differences. Under the randomness null
hypothesis these duplicate counts are Poisson distributed with mean
``n_birthdays**3 / (4 n)``; the p-value is the chi-squared goodness-of-fit of
the observed duplicate-count histogram against that Poisson model.

A small p-value (< 0.05) indicates the generator is *not* random.
"""

import logging
import numbers
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from ..generators import ByteStreamGenerator
from ..plugin_api import BytesView, TestPlugin, TestResult

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05


class BirthdaySpacingsError(ValueError):
    """Base class for errors raised by the Birthday Spacings test."""


class SpacingsConfigError(BirthdaySpacingsError):
    """Invalid test configuration; raised before the generator is ever called."""


class DegenerateHistogramError(BirthdaySpacingsError):
    """The duplicate-count histogram has fewer than two bins, so no chi-squared test is possible."""


@dataclass
class SpacingsOutcome:
    """Full outcome of one Birthday Spacings run."""
    p_value: float
    lam: float
    chi_square: float
    degrees_of_freedom: int
    bins: List[str] = field(default_factory=list)
    observed: List[int] = field(default_factory=list)
    expected: List[float] = field(default_factory=list)
    observations: List[int] = field(default_factory=list)

    @property
    def max_duplicates(self) -> int:
        return max(self.observations) if self.observations else 0

    @property
    def mean_duplicates(self) -> float:
        if not self.observations:
            return 0.0
        return sum(self.observations) / len(self.observations)


def _require_int(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise SpacingsConfigError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise SpacingsConfigError(f"{name} must be >= {minimum}, got {value}")
    return int(value)


def poisson_lambda(n_birthdays: int, n: int) -> float:
    """Theoretical Poisson mean ``n_birthdays**3 / (4 n)``, rounded half up to an integer.

    The division is done on exact integers so no precision is lost before the
    final conversion to float.
    """
    numerator = n_birthdays ** 3
    denominator = 4 * n
    quotient, remainder = divmod(numerator, denominator)
    if 2 * remainder >= denominator:
        quotient += 1
    return float(quotient)


def spacings(sample: Sequence[int]) -> List[int]:
    """Differences between consecutive values of the sample sorted ascending."""
    ordered = sorted(sample)
    return [b - a for a, b in zip(ordered, ordered[1:])]


def count_duplicate_spacings(values: Sequence[int]) -> int:
    """Number of distinct values occurring more than once.

    A run of k >= 2 equal values contributes exactly 1, so ``[1, 1, 1, 2, 3, 3]`` gives 2.
    """
    ordered = sorted(values)
    duplicates = 0
    run_counted = False
    for previous, current in zip(ordered, ordered[1:]):
        if current == previous:
            if not run_counted:
                duplicates += 1
                run_counted = True
        else:
            run_counted = False
    return duplicates


def build_histograms(observations: Sequence[int], lam: float) -> Tuple[List[str], np.ndarray, np.ndarray]:
    """Observed and expected duplicate-count histograms over bins ``0..max`` inclusive.

    The maximum observed duplicate count gets its own bin. Probabilities that
    underflow far in the Poisson tail are floored at the smallest normal float,
    so such counts drive the p-value to 0 instead of failing the positivity check.
    """
    counts = np.asarray(observations, dtype=np.int64)
    top = int(counts.max())
    ks = np.arange(top + 1)
    observed = np.bincount(counts, minlength=top + 1)
    expected = np.maximum(stats.poisson.pmf(ks, lam) * len(counts), np.finfo(float).tiny)
    return [str(k) for k in ks], observed, expected


def merge_low_expected(bins: Sequence[str], observed: np.ndarray, expected: np.ndarray,
                       min_expected: float) -> Tuple[List[str], np.ndarray, np.ndarray]:
    """Pool adjacent bins until each pooled bin expects at least ``min_expected`` trials.

    A trailing remainder that never reaches the threshold is folded into the last
    pooled bin. Totals of both histograms are preserved.
    """
    merged_bins: List[str] = []
    merged_obs: List[int] = []
    merged_exp: List[float] = []
    first = None
    current_obs = 0
    current_exp = 0.0

    for label, obs, exp in zip(bins, observed, expected):
        if first is None:
            first = label
        current_obs += int(obs)
        current_exp += float(exp)
        if current_exp >= min_expected:
            merged_bins.append(first if first == label else f"{first}-{label}")
            merged_obs.append(current_obs)
            merged_exp.append(current_exp)
            first = None
            current_obs = 0
            current_exp = 0.0

    if first is not None:
        last = bins[-1]
        if merged_bins:
            head = merged_bins[-1].split("-")[0]
            merged_bins[-1] = f"{head}-{last}"
            merged_obs[-1] += current_obs
            merged_exp[-1] += current_exp
        else:
            merged_bins.append(first if first == last else f"{first}-{last}")
            merged_obs.append(current_obs)
            merged_exp.append(current_exp)

    return merged_bins, np.asarray(merged_obs, dtype=np.int64), np.asarray(merged_exp, dtype=float)


def chi_square_test(expected: Sequence[float], observed: Sequence[float]) -> Tuple[float, float]:
    """Chi-squared goodness-of-fit of ``observed`` against ``expected``.

    Expected frequencies are rescaled to the observed total before testing.
    Degrees of freedom are ``len(expected) - 1``.

    Returns:
        (statistic, p_value)
    """
    exp = np.asarray(expected, dtype=float)
    obs = np.asarray(observed, dtype=float)
    if exp.shape != obs.shape:
        raise ValueError(f"expected and observed lengths differ: {exp.size} != {obs.size}")
    if exp.size < 2:
        raise ValueError(f"chi-squared test needs at least 2 bins, got {exp.size}")
    if np.any(exp <= 0.0):
        raise ValueError("expected frequencies must be strictly positive")
    if np.any(obs < 0.0):
        raise ValueError("observed counts must be non-negative")
    total = obs.sum()
    if total <= 0.0:
        raise ValueError("observed counts sum to zero")

    result = stats.chisquare(f_obs=obs, f_exp=exp * (total / exp.sum()))
    return float(result.statistic), float(result.pvalue)


class BirthdaySpacingsTest:
    """Birthday Spacings test over a generator of integers in ``[0, n)``.

    Args:
        generator: zero-argument callable returning an ``int`` in ``[0, n)``.
        n: exclusive upper bound of the generator output ("days in the year").
        min_expected: when set, adjacent histogram bins are pooled until each
            expects at least this many trials (see ``merge_low_expected``).
    """

    __test__ = False

    def __init__(self, generator: Callable[[], int], n: int, min_expected: Optional[float] = None):
        if not callable(generator):
            raise SpacingsConfigError("generator must be a zero-argument callable")
        self._generator = generator
        self.n = _require_int("n", n, 1)
        if min_expected is not None:
            min_expected = float(min_expected)
            if not min_expected > 0.0:
                raise SpacingsConfigError(f"min_expected must be positive, got {min_expected}")
        self.min_expected = min_expected

    def test(self, n_birthdays: int, observations: int) -> float:
        """p-value of the test with ``n_birthdays`` birthdays per trial over ``observations`` trials."""
        return self.evaluate(n_birthdays, observations).p_value

    def evaluate(self, n_birthdays: int, observations: int) -> SpacingsOutcome:
        """Run the test and return the p-value together with histograms and statistic."""
        n_birthdays = _require_int("n_birthdays", n_birthdays, 2)
        observations = _require_int("observations", observations, 1)
        lam = poisson_lambda(n_birthdays, self.n)
        if lam <= 0.0:
            raise SpacingsConfigError(
                f"Poisson mean rounds to zero for n_birthdays={n_birthdays}, n={self.n}; "
                "increase n_birthdays or reduce n"
            )
        logger.debug("birthday_spacings start: n_birthdays=%d observations=%d n=%d lambda=%s",
                     n_birthdays, observations, self.n, lam)

        draw = self._generator
        counts: List[int] = []
        for _ in range(observations):
            sample = [draw() for _ in range(n_birthdays)]
            counts.append(count_duplicate_spacings(spacings(sample)))

        bins, observed, expected = build_histograms(counts, lam)
        if self.min_expected is not None:
            bins, observed, expected = merge_low_expected(bins, observed, expected, self.min_expected)
        if len(bins) < 2:
            raise DegenerateHistogramError(
                f"duplicate-count histogram has {len(bins)} bin(s) (max duplicates = {max(counts)}); "
                "at least 2 are required for a chi-squared test"
            )

        statistic, p_value = chi_square_test(expected, observed)
        logger.debug("birthday_spacings done: bins=%d chi2=%.6g p=%.6g", len(bins), statistic, p_value)
        return SpacingsOutcome(
            p_value=p_value,
            lam=lam,
            chi_square=statistic,
            degrees_of_freedom=len(bins) - 1,
            bins=bins,
            observed=[int(o) for o in observed],
            expected=[float(e) for e in expected],
            observations=counts,
        )


def outcome_to_result(outcome: SpacingsOutcome, params: Dict[str, Any], n_birthdays: int, n: int,
                      start: float, bytes_processed: Optional[int] = None) -> TestResult:
    """Wrap a SpacingsOutcome into the canonical TestResult."""
    alpha = float(params.get("alpha", DEFAULT_ALPHA))
    return TestResult(
        test_name=params.get("name", "birthday_spacings"),
        passed=outcome.p_value >= alpha,
        p_value=outcome.p_value,
        category="diehard",
        p_values={"birthday_spacings": outcome.p_value},
        metrics={
            "lambda": outcome.lam,
            "n": n,
            "birthdays": n_birthdays,
            "observations": len(outcome.observations),
            "chi_square_statistic": outcome.chi_square,
            "degrees_of_freedom": outcome.degrees_of_freedom,
            "bins": outcome.bins,
            "observed": outcome.observed,
            "expected": outcome.expected,
            "max_duplicates": outcome.max_duplicates,
            "mean_duplicates": outcome.mean_duplicates,
        },
        time_ms=(time.time() - start) * 1000.0,
        bytes_processed=bytes_processed,
    )


class BirthdaySpacingsPlugin(TestPlugin):
    """Birthday Spacings over fixed-width words read from a byte stream.

    Streaming supported via update()/finalize().
    Parameters:
      - bits: word width in bits, multiple of 8 (default: 24, a 2**24-day year)
      - byteorder: "little" or "big" (default: "little")
      - birthdays: birthdays per trial (default: 512)
      - observations: trials to run (default: as many as the data holds)
      - min_expected: pool histogram bins below this expected count (default: off)
      - alpha: significance level (default: 0.05)
    """

    def __init__(self):
        self._buf = bytearray()
        self._start = None

    def describe(self) -> str:
        return "Birthday Spacings test (Marsaglia & Tsang)"

    def _skipped(self, params: Dict[str, Any], status: str, start: float, nbytes: int,
                 **metrics: Any) -> TestResult:
        metrics["status"] = status
        return TestResult(
            test_name=params.get("name", "birthday_spacings"),
            passed=True,
            p_value=None,
            category="diehard",
            metrics=metrics,
            time_ms=(time.time() - start) * 1000.0,
            bytes_processed=nbytes,
        )

    def _evaluate(self, data: BytesView, params: Dict[str, Any], start: float) -> TestResult:
        bits = int(params.get("bits", 24))
        n_birthdays = _require_int("birthdays", params.get("birthdays", 512), 2)
        source = ByteStreamGenerator(data, bits=bits, byteorder=params.get("byteorder", "little"))
        test = BirthdaySpacingsTest(source, source.n, min_expected=params.get("min_expected"))

        available = source.available() // n_birthdays
        requested = params.get("observations")
        observations = available if requested is None else _require_int("observations", requested, 1)
        if available < 1 or observations > available:
            log = getattr(self, "logger", logger)
            log.debug("birthday_spacings skipped: %d trial(s) available, %d requested", available, observations)
            return self._skipped(params, "skipped_insufficient_data", start, len(data),
                                 available_trials=available, requested_trials=observations,
                                 birthdays=n_birthdays, bits=bits)
        try:
            outcome = test.evaluate(n_birthdays, observations)
        except DegenerateHistogramError as e:
            return self._skipped(params, "skipped_degenerate_histogram", start, len(data),
                                 reason=str(e), birthdays=n_birthdays, observations=observations, bits=bits)

        result = outcome_to_result(outcome, params, n_birthdays, source.n, start, len(data))
        result.metrics["bits"] = bits
        return result

    def run(self, data: BytesView, params: Dict[str, Any]) -> TestResult:
        return self._evaluate(data, params, time.time())

    def update(self, chunk: bytes, params: Dict[str, Any]) -> None:
        if self._start is None:
            self._start = time.time()
        self._buf.extend(chunk)

    def finalize(self, params: Dict[str, Any]) -> TestResult:
        data = BytesView(bytes(self._buf))
        start = self._start or time.time()
        # reset for re-use
        self._buf = bytearray()
        self._start = None
        return self._evaluate(data, params, start)
