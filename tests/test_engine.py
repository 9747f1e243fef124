import json
import logging
import math
import random

import pytest

from spacinglab.engine import Engine
from spacinglab.plugin_api import TestPlugin, TestResult
from spacinglab.plugins.birthday_spacings import DegenerateHistogramError, SpacingsConfigError


class BadTest(TestPlugin):
    def describe(self):
        return "Test that always raises"

    def run(self, data, params):
        raise RuntimeError("boom test")


class WholeBufferTest(TestPlugin):
    """Plugin without update()/finalize(), reports the buffer length."""

    def describe(self):
        return "Whole buffer test"

    def run(self, data, params):
        return TestResult(test_name="whole", passed=True, p_value=None, metrics={"length": len(data)})


def _chunks(data, size):
    for i in range(0, len(data), size):
        yield data[i:i + size]


@pytest.fixture
def data():
    return random.Random(77).randbytes(1536 * 80)


@pytest.fixture
def engine():
    eng = Engine()
    yield eng
    eng.close()


def test_bundled_test_registered(engine):
    assert "birthday_spacings" in engine.get_available_tests()
    assert engine._tests["birthday_spacings"].logger.name == "spacinglab.plugins.birthday_spacings"


def test_analyze_defaults_to_all_tests(engine, data):
    out = engine.analyze(data, {})

    assert set(out) == {"results", "scorecard"}
    assert len(out["results"]) == 1
    r = out["results"][0]
    assert r["test_name"] == "birthday_spacings"
    assert 0.0 <= r["p_value"] <= 1.0
    assert r["metrics"]["observations"] == 80
    sc = out["scorecard"]
    assert sc["total_tests"] == 1
    assert sc["p_value_distribution"]["count"] == 1
    json.dumps(out)


def test_analyze_reports_plugin_errors(engine, data):
    engine.register_test("bad", BadTest())
    out = engine.analyze(data, {"tests": [{"name": "bad", "params": {}},
                                          {"name": "birthday_spacings", "params": {}}]})

    err = out["results"][0]
    assert err["test_name"] == "bad"
    assert err["status"] == "error"
    assert "boom test" in err["reason"]
    assert out["results"][1]["p_value"] is not None
    assert out["scorecard"]["errors"] == 1


def test_analyze_counts_skipped(engine):
    out = engine.analyze(b"\x01\x02\x03", {"tests": [{"name": "birthday_spacings", "params": {}}]})
    assert out["results"][0]["metrics"]["status"] == "skipped_insufficient_data"
    assert out["scorecard"]["skipped_tests"] == 1
    assert out["scorecard"]["failed_tests"] == 0


def test_analyze_skips_unregistered_test(engine, data):
    out = engine.analyze(data, {"tests": [{"name": "nope", "params": {}},
                                          {"name": "birthday_spacings", "params": {}}]})

    assert out["results"][0] == {"test_name": "nope", "status": "skipped", "reason": "test_not_registered"}
    assert out["results"][1]["p_value"] is not None
    assert out["scorecard"]["skipped_tests"] == 1
    assert out["scorecard"]["errors"] == 0


def test_analyze_stream_skips_unregistered_test(engine, data):
    config = {"tests": [{"name": "birthday_spacings", "params": {}}, {"name": "nope", "params": {}}]}
    out = engine.analyze_stream(_chunks(data, 4096), config)

    assert out["results"][0]["p_value"] is not None
    assert out["results"][1]["status"] == "skipped"
    assert out["results"][1]["reason"] == "test_not_registered"
    assert out["scorecard"]["skipped_tests"] == 1


def test_default_test_list_follows_registry(engine, data):
    engine.register_test("whole", WholeBufferTest())
    out = engine.analyze(data, {})
    assert [r["test_name"] for r in out["results"]] == ["birthday_spacings", "whole"]


def test_analyze_stream_matches_batch(engine, data):
    config = {"tests": [{"name": "birthday_spacings", "params": {"min_expected": 5.0}}]}
    batch = engine.analyze(data, config)
    stream = engine.analyze_stream(_chunks(data, 4096), config)

    b = batch["results"][0]
    s = stream["results"][0]
    assert math.isclose(b["p_value"], s["p_value"], rel_tol=1e-12)
    assert b["metrics"]["observed"] == s["metrics"]["observed"]


def test_analyze_stream_buffers_for_plugins_without_update(engine, data):
    engine.register_test("whole", WholeBufferTest())
    out = engine.analyze_stream(_chunks(data, 1000), {"tests": [{"name": "whole", "params": {}}]})
    assert out["results"][0]["metrics"]["length"] == len(data)


def test_evaluate_single_run(engine):
    out = engine.evaluate({
        "generator": {"type": "hash_ctr", "bits": 16, "seed": 1},
        "birthdays": 64,
        "observations": 150,
    })
    assert out["generator"]["type"] == "hash_ctr"
    assert len(out["results"]) == 1
    r = out["results"][0]
    assert 0.0 <= r["p_value"] <= 1.0
    assert r["metrics"]["lambda"] == 1.0
    assert r["metrics"]["n"] == 1 << 16
    assert "ks" not in out


def test_evaluate_repeats_adds_ks_summary(engine):
    out = engine.evaluate({
        "generator": {"type": "python", "bits": 16, "seed": 5},
        "birthdays": 64,
        "observations": 100,
        "repeats": 4,
    })
    assert [r["metrics"]["repeat"] for r in out["results"]] == [0, 1, 2, 3]
    # repeats draw successive, distinct samples
    assert len({r["p_value"] for r in out["results"]}) > 1
    assert 0.0 <= out["ks"]["statistic"] <= 1.0
    assert 0.0 <= out["ks"]["p_value"] <= 1.0
    assert out["scorecard"]["total_tests"] == 4


def test_evaluate_is_deterministic_for_seeded_generators(engine):
    config = {"generator": {"type": "python", "bits": 16, "seed": 9}, "birthdays": 64, "observations": 100}
    assert engine.evaluate(config)["results"][0]["p_value"] == engine.evaluate(config)["results"][0]["p_value"]


def test_evaluate_propagates_config_errors(engine):
    with pytest.raises(SpacingsConfigError):
        engine.evaluate({"generator": {"type": "lcg"}, "birthdays": 1, "observations": 10})
    with pytest.raises(ValueError):
        engine.evaluate({"generator": {"type": "lcg"}, "repeats": 0})


def test_evaluate_propagates_degenerate_histogram(engine):
    with pytest.raises(DegenerateHistogramError):
        engine.evaluate({"generator": {"type": "python", "bits": 1, "seed": 1}, "birthdays": 2, "observations": 10})


def test_log_path_writes_jsonl_without_duplicate_handlers(engine, data, tmp_path):
    log_path = str(tmp_path / "run.jsonl")
    config = {"log_level": "DEBUG", "log_path": log_path}
    engine.analyze(data, config)
    engine.analyze(data, config)

    pkg_logger = logging.getLogger("spacinglab")
    attached = [h for h in pkg_logger.handlers if isinstance(h, logging.FileHandler)]
    assert len(attached) == 1

    engine.close()
    lines = [json.loads(line) for line in open(log_path, encoding="utf-8") if line.strip()]
    assert lines
    assert {"timestamp", "level", "logger", "message"} <= set(lines[0])
    assert any(rec["logger"].startswith("spacinglab") for rec in lines)
    assert not [h for h in pkg_logger.handlers if isinstance(h, logging.FileHandler)]
