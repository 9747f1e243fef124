"""SpacingLab analysis engine."""

import datetime
import json
import logging
import statistics
import time
import traceback
from typing import Any, Dict, Iterable, List

from scipy import stats

from .generators import build_generator
from .plugin_api import BytesView, TestPlugin, TestResult, serialize_testresult
from .plugins.birthday_spacings import DEFAULT_ALPHA, BirthdaySpacingsTest, outcome_to_result


class _JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record):
        rec = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            rec["exc"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(rec, ensure_ascii=False)


class Engine:
    """Main analysis engine for SpacingLab."""

    def __init__(self):
        self._tests: Dict[str, TestPlugin] = {}
        # Map of configured log_path -> handler to avoid duplicate handlers across calls
        self._log_handlers: Dict[str, logging.Handler] = {}
        self._logger = logging.getLogger("spacinglab.engine")
        self._discover_plugins()

    def _discover_plugins(self):
        """Register the bundled test and any plugins published via entry points."""
        from .plugins.birthday_spacings import BirthdaySpacingsPlugin

        self.register_test("birthday_spacings", BirthdaySpacingsPlugin())

        import importlib.metadata as im
        for ep in im.entry_points(group="spacinglab.plugins"):
            cls = ep.load()
            if issubclass(cls, TestPlugin):
                self.register_test(ep.name, cls())

    def register_test(self, name: str, plugin: TestPlugin):
        """Register a test plugin and inject a logger for observability."""
        plugin.logger = logging.getLogger(f"spacinglab.plugins.{name}")
        self._tests[name] = plugin

    def get_available_tests(self) -> List[str]:
        return list(self._tests.keys())

    def _configure_logging(self, config: Dict[str, Any]) -> None:
        """Configure logging based on config options.

        - Respect 'log_level' in config (default INFO).
        - If config contains 'log_path', attach a FileHandler writing JSONL records.
          Repeated calls with the same path reuse the existing handler.
        """
        level_no = getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)
        pkg_logger = logging.getLogger("spacinglab")
        pkg_logger.setLevel(level_no)

        log_path = config.get("log_path")
        if not log_path:
            return

        existing = self._log_handlers.get(log_path)
        if existing:
            existing.setLevel(level_no)
            return

        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setLevel(level_no)
        fh.setFormatter(_JSONFormatter())
        pkg_logger.addHandler(fh)
        self._log_handlers[log_path] = fh

    def close(self) -> None:
        """Detach and close file handlers attached by `_configure_logging`."""
        pkg_logger = logging.getLogger("spacinglab")
        for handler in self._log_handlers.values():
            pkg_logger.removeHandler(handler)
            handler.close()
        self._log_handlers.clear()

    def _pvalue_stats(self, p_values: List[float]) -> Dict[str, Any]:
        """Return simple statistics and a small histogram for p-values distribution."""
        if not p_values:
            return {"count": 0, "mean": None, "median": None, "stdev": None, "histogram": {}}
        buckets = {"0-0.01": 0, "0.01-0.05": 0, "0.05-0.1": 0, "0.1-1.0": 0}
        for p in p_values:
            if p < 0.01:
                buckets["0-0.01"] += 1
            elif p < 0.05:
                buckets["0.01-0.05"] += 1
            elif p < 0.1:
                buckets["0.05-0.1"] += 1
            else:
                buckets["0.1-1.0"] += 1
        return {
            "count": len(p_values),
            "mean": statistics.mean(p_values),
            "median": statistics.median(p_values),
            "stdev": statistics.pstdev(p_values) if len(p_values) > 1 else 0.0,
            "histogram": buckets,
        }

    def _scorecard(self, results: List[Dict[str, Any]]) -> Dict[str, Any]:
        p_values = [r["p_value"] for r in results if r.get("p_value") is not None]
        return {
            "total_tests": len(results),
            "failed_tests": sum(1 for r in results if r.get("passed") is False),
            "skipped_tests": sum(1 for r in results if r.get("status") == "skipped"
                                 or str(r.get("metrics", {}).get("status", "")).startswith("skipped")),
            "errors": sum(1 for r in results if r.get("status") == "error"),
            "p_value_distribution": self._pvalue_stats(p_values),
        }

    def _tests_conf(self, config: Dict[str, Any]) -> List[Dict[str, Any]]:
        return config.get("tests") or [{"name": n, "params": {}} for n in self.get_available_tests()]

    def _not_registered(self, name: str) -> Dict[str, Any]:
        return {"test_name": name, "status": "skipped", "reason": "test_not_registered"}

    def _serialize(self, name: str, res: Any) -> Dict[str, Any]:
        if isinstance(res, TestResult):
            return serialize_testresult(res)
        # safe_run error dict
        out = dict(res)
        out.setdefault("test_name", name)
        return out

    def analyze(self, input_bytes: bytes, config: Dict[str, Any]) -> Dict[str, Any]:
        """Run configured tests over a byte buffer.

        config format:
        {
            'tests': [{'name': 'birthday_spacings', 'params': {'bits': 24, 'birthdays': 512}}],
            'log_level': 'INFO',     # optional
            'log_path': 'run.jsonl'  # optional
        }

        Returns a dict with 'results' (serialized) and 'scorecard'.
        """
        self._configure_logging(config)
        data = BytesView(input_bytes)
        results: List[Dict[str, Any]] = []
        for c in self._tests_conf(config):
            # unregistered names are reported as skipped
            tp = self._tests.get(c["name"])
            if tp is None:
                self._logger.warning("test_not_registered %s", c["name"])
                results.append(self._not_registered(c["name"]))
                continue
            self._logger.debug("starting_test %s (%d bytes)", c["name"], len(data))
            start = time.perf_counter()
            res = tp.safe_run(data, c.get("params", {}))
            if isinstance(res, dict):
                self._logger.warning("test_error %s: %s", c["name"], res.get("reason"))
            self._logger.debug("finished_test %s in %.3f ms", c["name"], (time.perf_counter() - start) * 1000.0)
            results.append(self._serialize(c["name"], res))
        return {"results": results, "scorecard": self._scorecard(results)}

    def analyze_stream(self, chunks: Iterable[bytes], config: Dict[str, Any]) -> Dict[str, Any]:
        """Streaming counterpart of `analyze`: feeds chunks through update()/finalize()."""
        self._configure_logging(config)
        tests_conf = self._tests_conf(config)
        # plugins without update()/finalize() get the whole buffer through run()
        buffered = bytearray()
        for chunk in chunks:
            buffered.extend(chunk)
            for c in tests_conf:
                tp = self._tests.get(c["name"])
                if tp is not None and hasattr(tp, "update"):
                    tp.update(chunk, c.get("params", {}))

        results: List[Dict[str, Any]] = []
        for c in tests_conf:
            tp = self._tests.get(c["name"])
            if tp is None:
                self._logger.warning("test_not_registered %s", c["name"])
                results.append(self._not_registered(c["name"]))
                continue
            try:
                if hasattr(tp, "finalize"):
                    res = tp.finalize(c.get("params", {}))
                else:
                    res = tp.run(BytesView(bytes(buffered)), c.get("params", {}))
            except Exception as e:
                self._logger.warning("test_error %s: %s", c["name"], e)
                res = {"status": "error", "reason": str(e)}
            results.append(self._serialize(c["name"], res))
        return {"results": results, "scorecard": self._scorecard(results)}

    def evaluate(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Run the Birthday Spacings test directly against a bundled generator.

        config format:
        {
            'generator': {'type': 'lcg', 'seed': 1},  # see generators.build_generator
            'n': 4294967296,         # optional, defaults to the generator's range
            'birthdays': 4096,
            'observations': 5000,
            'repeats': 1,            # >1 adds a KS uniformity check of the p-values
            'min_expected': None,    # optional tail pooling threshold
            'alpha': 0.05,
        }

        Configuration, degenerate-histogram and generator errors propagate.
        """
        self._configure_logging(config)
        generator = build_generator(config.get("generator") or {})
        n = int(config.get("n") or generator.n)
        n_birthdays = config.get("birthdays", 4096)
        observations = config.get("observations", 5000)
        repeats = int(config.get("repeats", 1))
        if repeats < 1:
            raise ValueError(f"repeats must be >= 1, got {repeats}")
        params = {"alpha": config.get("alpha", DEFAULT_ALPHA), "name": config.get("name", "birthday_spacings")}

        test = BirthdaySpacingsTest(generator, n, min_expected=config.get("min_expected"))
        results: List[Dict[str, Any]] = []
        for i in range(repeats):
            start = time.time()
            outcome = test.evaluate(n_birthdays, observations)
            result = outcome_to_result(outcome, params, n_birthdays, n, start)
            result.metrics["repeat"] = i
            self._logger.info("repeat %d/%d: p=%.6g", i + 1, repeats, outcome.p_value)
            results.append(serialize_testresult(result))

        out: Dict[str, Any] = {
            "generator": dict(config.get("generator") or {}),
            "results": results,
            "scorecard": self._scorecard(results),
        }
        if repeats > 1:
            ks = stats.kstest([r["p_value"] for r in results], "uniform")
            out["ks"] = {"statistic": float(ks.statistic), "p_value": float(ks.pvalue)}
        return out
