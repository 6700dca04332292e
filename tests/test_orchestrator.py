"""
End-to-end behaviour of DependencyOrchestrator against a fake session,
tmp_path bundled files and a real cache worker.

Run: pytest tests/test_orchestrator.py -q
"""
import threading
import time

import pytest
import requests

from asset_loader.core import (
    AggregateSourceFailure, CacheProtocolError, CancelToken, ConfigError, DependencyOrchestrator,
    LoadCancelled, StaleDependencyError, load_assets,
)
from asset_loader.core import orchestrator
from asset_loader.core.models import SourceTier

from conftest import (
    RUNTIME_URL, FakeClock, FakeResponse, model_entry, model_urls, runtime_entry, write_local,
)

WEIGHTS = b"\x08onnx-weights" * 100

def test_single_flight_fetches_once(make_orch, session):
    gate = threading.Event()
    url = model_urls("yolov10n")[0]

    def slow(u):
        gate.wait(5)
        return FakeResponse(200, WEIGHTS)

    session.routes[url] = slow
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    results, errors = [], []

    def worker():
        try:
            results.append(orch.ensure_loaded("yolov10n"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    deadline = time.monotonic() + 5
    while session.count(url) < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.05)
    gate.set()
    for t in threads:
        t.join(5)
    assert errors == []
    assert results == [WEIGHTS] * 6
    assert session.count(url) == 1
    assert session.count(RUNTIME_URL) == 1
    assert orch.get_status()["active_loads"] == {}

def test_loaded_assets_are_served_from_memory(make_orch, session):
    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    calls = len(session.calls)
    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    assert orch.ensure_loaded("onnxruntime") == b"// ort runtime"
    assert len(session.calls) == calls

def test_fallback_order_primary_secondary_local(make_orch, session, tmp_path):
    primary, secondary, local = model_urls("yolov10n")
    session.routes[primary] = 404
    session.routes[secondary] = requests.Timeout("read timed out")
    write_local(tmp_path, "models/yolov10n.onnx", WEIGHTS)
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])

    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    attempts = orch.attempts("yolov10n")
    assert [a.url for a in attempts] == [primary, secondary, local]
    assert [a.tier for a in attempts] == [SourceTier.PRIMARY, SourceTier.SECONDARY, SourceTier.LOCAL]
    assert [a.outcome for a in attempts] == ["failure", "failure", "success"]
    assert [a.error_kind for a in attempts] == ["http", "timeout", None]
    assert orch.get_status()["sources"]["yolov10n"] == "local"

def test_disallowed_and_traversal_urls_never_fetched(make_orch, session, tmp_path):
    evil = "https://evil.example/yolov10n.onnx"
    sneaky = "./../../etc/passwd"
    good = "./models/yolov10n.onnx"
    write_local(tmp_path, "models/yolov10n.onnx", WEIGHTS)
    session.routes[evil] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS), urls=[evil, sneaky, good])])

    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    assert session.count(evil) == 0
    kinds = [(a.url, a.error_kind) for a in orch.attempts("yolov10n")]
    assert kinds == [(evil, "integrity"), (sneaky, "integrity"), (good, None)]

def test_progress_is_monotonic_and_ends_at_100(make_orch, session):
    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    orch.downloader.chunk_size = 100
    seen = []
    orch.subscribe_progress(lambda pct, msg: seen.append((pct, msg)))
    orch.ensure_loaded("yolov10n")
    values = [p for p, _ in seen]
    assert values == sorted(values)
    assert all(0 <= v <= 100 for v in values)
    assert pytest.approx(20.0) in values
    assert values[-1] == pytest.approx(100.0)
    assert any(m.startswith("Downloading model...") for _, m in seen)

def test_remote_size_mismatch_falls_back_to_local(make_orch, session, tmp_path):
    primary, secondary, local = model_urls("yolov10n")
    session.routes[primary] = b"x" * 500
    session.routes[secondary] = b"x" * 1050
    write_local(tmp_path, "models/yolov10n.onnx", b"y" * 500)
    orch = make_orch([runtime_entry(), model_entry("yolov10n", 1000)])
    assert orch.ensure_loaded("yolov10n") == b"x" * 1050
    assert orch.attempts("yolov10n")[0].error_kind == "size"

    session.routes[secondary] = 503
    other = make_orch([runtime_entry(), model_entry("yolov10n", 1000)])
    assert other.ensure_loaded("yolov10n") == b"y" * 500

def test_model_substitution(make_orch, session, tmp_path):
    small = b"s" * 300
    session.routes[model_urls("tiny")[0]] = small
    orch = make_orch([runtime_entry(), model_entry("yolov10n", 1000), model_entry("tiny", 300)])
    assert orch.ensure_loaded("yolov10n") == small
    assert orch.resolved_key("yolov10n") == "tiny"
    assert orch.get_status()["substitutions"] == {"yolov10n": "tiny"}

def test_substitution_happens_once_then_fails(make_orch, session):
    orch = make_orch([runtime_entry(), model_entry("yolov10n", 1000), model_entry("tiny", 300)])
    with pytest.raises(AggregateSourceFailure) as ei:
        orch.ensure_loaded("yolov10n")
    urls = [a.url for a in ei.value.attempts]
    assert urls == model_urls("yolov10n") + model_urls("tiny")
    assert orch.resolved_key("yolov10n") == "yolov10n"

def test_concurrent_failing_models_do_not_deadlock(make_orch):
    orch = make_orch([runtime_entry(), model_entry("a", 1000), model_entry("b", 900)])
    outcomes = {}

    def load(key):
        try:
            orch.ensure_loaded(key)
            outcomes[key] = "ok"
        except AggregateSourceFailure:
            outcomes[key] = "failed"

    threads = [threading.Thread(target=load, args=(k,)) for k in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert not any(t.is_alive() for t in threads)
    assert outcomes == {"a": "failed", "b": "failed"}

def test_runtime_never_substitutes(make_orch, session):
    session.routes[RUNTIME_URL] = 500
    orch = make_orch([runtime_entry(), model_entry("yolov10n", 1000)])
    with pytest.raises(AggregateSourceFailure) as ei:
        orch.ensure_loaded("onnxruntime")
    assert ei.value.key == "onnxruntime"
    assert len(ei.value.attempts) == 2

def test_stale_asset_is_refetched_once(make_orch, session):
    url = model_urls("yolov10n")[0]
    session.routes[url] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))], use_cache=True)
    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    orch.register_health_check("yolov10n", lambda data: False)

    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    assert session.count(url) == 2
    with pytest.raises(StaleDependencyError):
        orch.ensure_loaded("yolov10n")
    assert session.count(url) == 2

def test_healthy_check_keeps_asset(make_orch, session):
    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    orch.register_health_check("yolov10n", lambda data: data.startswith(b"\x08onnx"))
    orch.ensure_loaded("yolov10n")
    orch.ensure_loaded("yolov10n")
    assert session.count(model_urls("yolov10n")[0]) == 1
    with pytest.raises(ConfigError):
        orch.register_health_check("missing", lambda data: True)

def test_failed_candidate_is_skipped_within_ttl(make_orch, session, tmp_path):
    primary, secondary, local = model_urls("yolov10n")
    session.routes[primary] = 404
    session.routes[secondary] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    orch.ensure_loaded("yolov10n")
    orch.register_health_check("yolov10n", lambda data: False)
    orch.ensure_loaded("yolov10n")
    assert session.count(primary) == 1
    assert [a.error_kind for a in orch.attempts("yolov10n")] == ["http", None, "unavailable", None]

def test_cache_hit_across_instances_and_generation_bump(make_orch, session):
    url = model_urls("yolov10n")[0]
    session.routes[url] = WEIGHTS
    entries = [runtime_entry(), model_entry("yolov10n", len(WEIGHTS))]

    first = make_orch(entries, use_cache=True)
    first.ensure_loaded("yolov10n")
    first.close()

    second = make_orch(entries, use_cache=True)
    assert second.ensure_loaded("yolov10n") == WEIGHTS
    assert session.count(url) == 1
    assert second.attempts("yolov10n")[0].cached is True
    assert second.stats()["cache_hits"] == 2
    second.close()

    third = make_orch(entries, use_cache=True, cache_generation="v1.3.0")
    assert third.ensure_loaded("yolov10n") == WEIGHTS
    assert session.count(url) == 2
    assert third.cache_summary()["generation"] == "v1.3.0"

def test_clear_cache_keeps_session_markers(make_orch, session):
    url = model_urls("yolov10n")[0]
    session.routes[url] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))], use_cache=True)
    orch.ensure_loaded("yolov10n")
    assert orch.clear_cache("models") == 1
    assert orch.cache_summary()["model_count"] == 0
    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    assert session.count(url) == 1
    assert set(orch.get_status()["loaded_keys"]) == {"onnxruntime", "yolov10n"}

def test_cache_store_failures_are_absorbed(make_orch, session, settings):
    class BrokenCache:
        stores = 0

        def lookup(self, url, token=None):
            raise CacheProtocolError("no reply")

        def store(self, url, data, kind="static", token=None):
            BrokenCache.stores += 1
            raise CacheProtocolError("no reply")

        def close(self):
            pass

    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = DependencyOrchestrator(
        load_assets({"assets": [runtime_entry(), model_entry("yolov10n", len(WEIGHTS))]}),
        settings, session=session, cache=BrokenCache(),
    )
    assert orch.ensure_loaded("yolov10n") == WEIGHTS
    assert BrokenCache.stores == 4  # two assets, two tries each

def test_abort_all_cancels_in_flight_download(make_orch, session):
    primary, secondary, _ = model_urls("yolov10n")
    started, gate = threading.Event(), threading.Event()

    def chunks():
        yield WEIGHTS[:100]
        started.set()
        gate.wait(5)
        yield WEIGHTS[100:]

    session.routes[primary] = lambda u: FakeResponse(200, chunks=chunks())
    session.routes[secondary] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    caught = []

    def load():
        try:
            orch.ensure_loaded("yolov10n")
        except LoadCancelled as e:
            caught.append(e)

    t = threading.Thread(target=load)
    t.start()
    assert started.wait(5)
    assert orch.abort_all() == 1
    gate.set()
    t.join(5)
    assert len(caught) == 1
    assert session.count(secondary) == 0
    assert orch.attempts("yolov10n")[-1].error_kind == "cancelled"
    assert "yolov10n" not in orch.get_status()["loaded_keys"]

def test_caller_token_cancels_before_network(make_orch, session):
    token = CancelToken()
    token.cancel()
    orch = make_orch([runtime_entry()])
    with pytest.raises(LoadCancelled):
        orch.ensure_loaded("onnxruntime", token=token)
    assert session.calls == []

def test_preload_reports_without_raising(make_orch, session, tmp_path):
    session.routes[model_urls("tiny")[0]] = b"t" * 300
    orch = make_orch([runtime_entry(), model_entry("tiny", 300), model_entry("broken", 1000, urls=[
        "https://example-cdn.com/models/broken.onnx"])])
    results = {r["key"]: r for r in orch.preload(["onnxruntime", "tiny", "nope"])}
    assert results["onnxruntime"]["success"] is True
    assert results["onnxruntime"]["source"] == "remote-primary"
    assert results["tiny"]["size"] == 300
    assert results["nope"]["success"] is False

def test_check_sources_reports_each_candidate(make_orch, session, tmp_path):
    orch = make_orch([runtime_entry(), model_entry("yolov10n", 1000, urls=[
        "https://evil.example/m.onnx", model_urls("yolov10n")[0], "./models/yolov10n.onnx"])])
    session.routes[model_urls("yolov10n")[0]] = 404
    result = [(c.url, ok) for c, ok in orch.check_sources("yolov10n")]
    assert result == [
        ("https://evil.example/m.onnx", False),
        (model_urls("yolov10n")[0], False),
        ("./models/yolov10n.onnx", True),
    ]
    assert session.count("https://evil.example/m.onnx", "HEAD") == 0

def test_status_shape(make_orch, session):
    orch = make_orch([runtime_entry()], use_cache=True)
    orch.ensure_loaded("onnxruntime")
    status = orch.get_status()
    assert status["loaded_keys"] == ["onnxruntime"]
    assert status["active_loads"] == {}
    assert status["cache_summary"]["static_asset_count"] == 1
    assert status["stats"] == {"total": 1, "remote_success": 1, "local_success": 0,
                               "cache_hits": 0, "failures": 0}
    with pytest.raises(ConfigError):
        orch.ensure_loaded("nope")

def test_top_level_runtime_load_ends_at_100(make_orch, session):
    orch = make_orch([runtime_entry()])
    seen = []
    orch.subscribe_progress(lambda pct, msg: seen.append((pct, msg)), asset_key="onnxruntime")
    orch.ensure_loaded("onnxruntime")
    assert seen[-1] == (100.0, "ort.min.js ready")
    assert [p for p, _ in seen] == sorted(p for p, _ in seen)

def test_runtime_loaded_for_a_model_stops_at_its_weight(make_orch, session):
    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    runtime, model = [], []
    orch.subscribe_progress(lambda pct, msg: runtime.append(pct), asset_key="onnxruntime")
    orch.subscribe_progress(lambda pct, msg: model.append(pct), asset_key="yolov10n")
    orch.ensure_loaded("yolov10n")
    assert runtime[-1] == pytest.approx(20.0)
    assert model[-1] == pytest.approx(100.0)

def test_attempt_log_drops_entries_older_than_max_age(make_orch, session):
    clock = FakeClock()
    session.routes[model_urls("yolov10n")[0]] = WEIGHTS
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))],
                     clock=clock, attempt_max_age=60.0)
    orch.ensure_loaded("yolov10n")
    assert [a.asset_key for a in orch.attempts()] == ["onnxruntime", "yolov10n"]
    clock.advance(30)
    assert len(orch.attempts()) == 2
    clock.advance(31)
    assert orch.attempts() == []
    assert orch.stats()["total"] == 0
    assert orch.get_status()["sources"] == {"onnxruntime": "remote-primary", "yolov10n": "remote-primary"}

def test_attempt_log_is_capped(make_orch, session, tmp_path, monkeypatch):
    monkeypatch.setattr(orchestrator, "MAX_ATTEMPTS", 3)
    primary, secondary, local = model_urls("yolov10n")
    session.routes[primary] = 404
    session.routes[secondary] = 503
    write_local(tmp_path, "models/yolov10n.onnx", WEIGHTS)
    orch = make_orch([runtime_entry(), model_entry("yolov10n", len(WEIGHTS))])
    orch.ensure_loaded("yolov10n")
    assert [a.url for a in orch.attempts()] == [primary, secondary, local]
