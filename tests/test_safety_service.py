import json
from datetime import timedelta
from unittest.mock import patch

import numpy as np
import pytest

import scoring
from conftest import MIDNIGHT, NOON, ORIGIN_LAT, ORIGIN_LNG, RecordingExecutor, cluster, make_report
from models import SafetyReport
from report_store import InMemoryReportStore
from safety_service import ServiceState, categorize


class BrokenStore:
    def find_nearby(self, lat, lng, radius_km):
        raise ConnectionError("store unavailable")

    def find_recent(self, limit):
        raise ConnectionError("store unavailable")

    def save(self, report):
        raise ConnectionError("store unavailable")


def assert_valid(prediction):
    assert 0.1 <= prediction.score <= 0.9
    assert 0.0 <= prediction.confidence <= 1.0


# ─────────────────────────── Prediction ──────────────────────────

def test_predict_without_reports_uses_heuristic(service):
    p = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert_valid(p)
    assert p.confidence == 0.5


def test_predict_survives_a_broken_store(make_service):
    service = make_service(BrokenStore())
    for lat, lng in [(0.0, 0.0), (ORIGIN_LAT, ORIGIN_LNG), (89.0, 179.0)]:
        assert_valid(service.predict_safety(lat, lng))


def test_predict_range_at_night(make_service, store):
    for r in cluster(20, type="incident", severity=5):
        store.save(r)
    service = make_service(store, clock=lambda: MIDNIGHT)
    assert service.train_model()
    p = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert_valid(p)
    assert p.score == pytest.approx(0.1)


def test_predict_falls_back_when_inference_fails(service, store, monkeypatch):
    for r in cluster(20):
        store.save(r)
    assert service.train_model()

    def boom(X):
        raise RuntimeError("inference exploded")

    monkeypatch.setattr(service.model, "predict", boom)
    p = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert_valid(p)
    assert p.confidence == 0.5


def test_predict_falls_back_on_non_finite_output(service, store, monkeypatch):
    for r in cluster(20):
        store.save(r)
    assert service.train_model()
    monkeypatch.setattr(service.model, "predict", lambda X: np.array([np.nan]))
    p = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert_valid(p)
    assert p.confidence == 0.5


def test_trained_model_prediction_uses_neighbourhood(service, store):
    for r in cluster(20):
        store.save(r)
    assert service.train_model()
    p = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert p.score > 0.7
    assert p.confidence == pytest.approx(1.0, abs=1e-3)


def test_recent_incidents_pull_the_score_down(service, store):
    for r in cluster(20):
        store.save(r)
    assert service.train_model()
    before = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG, use_cache=False).score

    store.save(make_report(type="incident", severity=2, age=timedelta(hours=1)))
    store.save(make_report(type="incident", severity=2, age=timedelta(hours=2)))
    after = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG, use_cache=False).score
    assert after < before


# ─────────────────────────── Cache ───────────────────────────────

def test_repeat_predictions_within_ttl_are_identical(service):
    first = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    second = service.predict_safety(ORIGIN_LAT + 1e-7, ORIGIN_LNG)
    assert first == second
    assert len(service.prediction_cache) == 1


def test_schedule_training_clears_the_cache(service):
    service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    service.predict_safety(1.0, 1.0)
    assert len(service.prediction_cache) == 2
    service.schedule_training()
    assert len(service.prediction_cache) == 0


def test_new_model_version_invalidates_cached_predictions(service, store):
    before = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert before.confidence == 0.5
    version = service.model_version

    for r in cluster(20):
        store.save(r)
    assert service.train_model()
    assert service.model_version == version + 1

    after = service.predict_safety(ORIGIN_LAT, ORIGIN_LNG)
    assert after.confidence > 0.5


def test_use_cache_false_skips_lookup_but_writes(service):
    with patch.object(service.prediction_cache, "get") as get:
        service.predict_safety(1.0, 1.0, use_cache=False)
    get.assert_not_called()
    assert len(service.prediction_cache) == 1


# ─────────────────────────── Training ────────────────────────────

def test_training_with_too_few_reports_is_a_noop(service, store):
    for r in cluster(9):
        store.save(r)
    assert service.train_model() is False
    assert service.model_loss is None
    assert service.last_trained_at is None
    assert service.model_version == 0
    assert not service.model.is_trained


def test_training_records_metadata(service, store):
    for r in cluster(25, type="unsafe", severity=4):
        store.save(r)
    assert service.train_model() is True
    assert service.model.is_trained
    assert service.model_loss is not None and service.model_loss >= 0
    assert service.last_trained_at == NOON
    assert service.last_sample_size == 25


def test_malformed_reports_are_skipped_individually(make_service):
    good = [r.model_dump() for r in cluster(12)]
    bad = [
        {"location": {"lat": 500, "lng": 0}, "type": "unsafe", "timestamp": NOON.isoformat()},
        {"type": "unsafe"},
        {"location": {"lat": 1, "lng": 1}, "type": "bogus", "severity": 2, "timestamp": NOON.isoformat()},
    ]

    class RawStore:
        def find_nearby(self, lat, lng, radius_km):
            return good + bad

        def find_recent(self, limit):
            return bad + good

        def save(self, report):
            return report

    service = make_service(RawStore())
    assert service.train_model() is True
    assert service.last_sample_size == 12


def test_sample_size_counts_rows_actually_trained(service, store, monkeypatch):
    for r in cluster(14):
        store.save(r)
    build = scoring.build_training_set
    # Pretend two reports could not be turned into feature rows
    monkeypatch.setattr(scoring, "build_training_set", lambda reports, now: build(reports[2:], now))

    assert service.train_model() is True
    assert service.last_sample_size == 12
    assert service.get_status().sampleSize == 12


def test_failed_training_keeps_previous_model(service, store):
    for r in cluster(20):
        store.save(r)
    assert service.train_model()
    model, version = service.model, service.model_version

    with patch("safety_service.SafetyRegressor.fit", side_effect=RuntimeError("boom")):
        service.schedule_training()
    assert service.model is model
    assert service.model_version == version
    assert service.state == ServiceState.READY
    assert not service.is_training


def test_training_is_single_flight(service):
    with patch.object(service, "train_model", return_value=False) as train:
        service._training_lock.acquire()
        try:
            for _ in range(3):
                service.schedule_training()
            status = service.get_status()
            assert status.isTraining
            assert status.queueLength == 3
            service.process_training_queue()  # a second pass cannot start
            train.assert_not_called()
        finally:
            service._training_lock.release()

        service.process_training_queue()
        assert train.call_count == 1
        assert service.get_status().queueLength == 0


def test_triggers_during_a_pass_are_rescheduled(make_service, store):
    executor = RecordingExecutor()
    service = make_service(store, training_executor=executor, retrain_delay=0.0)
    service.schedule_training()
    assert len(executor.submitted) == 1

    def train_and_receive_trigger():
        service.schedule_training()  # arrives mid-pass, must not submit
        return False

    with patch.object(service, "train_model", side_effect=train_and_receive_trigger):
        with patch("safety_service.threading.Timer") as timer:
            service.process_training_queue()
    assert len(executor.submitted) == 1
    timer.assert_called_once()
    assert service.get_status().queueLength == 1


def test_full_queue_coalesces_triggers(make_service, store):
    service = make_service(store, training_executor=RecordingExecutor(), queue_size=2)
    for _ in range(5):
        service.schedule_training()
    assert service.get_status().queueLength == 2


# ─────────────────────────── Persistence ─────────────────────────

def test_training_pass_persists_model_and_metadata(make_service, store, tmp_path):
    for r in cluster(20):
        store.save(r)
    model_dir = tmp_path / "persisted"
    service = make_service(store, model_dir=model_dir)
    service.schedule_training()

    assert (model_dir / "safety_model_xgb.ubj").exists()
    metadata = json.loads((model_dir / "metadata.json").read_text())
    assert metadata["sampleSize"] == 20
    assert metadata["loss"] == pytest.approx(service.model_loss)
    assert metadata["lastTrainedAt"] == NOON.isoformat()

    reloaded = make_service(InMemoryReportStore(), model_dir=model_dir)
    reloaded.initialize()
    assert reloaded.state == ServiceState.READY
    assert reloaded.model.is_trained
    assert reloaded.model_loss == pytest.approx(service.model_loss)
    assert reloaded.last_sample_size == 20
    assert reloaded.last_trained_at == NOON


def test_initialize_without_model_schedules_training(make_service, store, inline_executor):
    service = make_service(store)
    with patch.object(service, "schedule_training") as schedule:
        service.initialize()
    schedule.assert_called_once()
    assert service.state == ServiceState.READY
    assert not service.model.is_trained


def test_corrupt_model_file_starts_fresh(make_service, store, tmp_path):
    model_dir = tmp_path / "corrupt"
    model_dir.mkdir()
    (model_dir / "safety_model_xgb.ubj").write_bytes(b"not a model")
    service = make_service(store, model_dir=model_dir)
    service.initialize()
    assert service.state == ServiceState.READY
    assert not service.model.is_trained


def test_save_failure_is_not_fatal(service, store):
    for r in cluster(20):
        store.save(r)
    with patch.object(service, "save_model", side_effect=OSError("disk full")):
        service.schedule_training()
    assert service.model.is_trained
    assert len(service.predicted_hotspots) > 0


# ─────────────────────────── Hotspots ────────────────────────────

@pytest.mark.parametrize("score,category", [(0.85, "safe"), (0.7, "moderate"), (0.4, "moderate"), (0.2, "unsafe")])
def test_categorize(score, category):
    assert categorize(score) == category


def test_no_hotspots_without_dense_neighbourhoods(service, store):
    for i in range(3):
        store.save(make_report(lat=ORIGIN_LAT + i * 0.1, lng=ORIGIN_LNG))
    store.save(make_report(lat=ORIGIN_LAT + 0.005, lng=ORIGIN_LNG))
    assert service.identify_hotspots() == []
    assert service.predicted_hotspots == ()


def test_safe_cluster_becomes_a_safe_hotspot(service, store):
    for r in cluster(20, type="safe", severity=1):
        store.save(r)
    assert service.train_model()
    hotspots = service.identify_hotspots()

    assert hotspots
    for h in hotspots:
        assert h.category == "safe"
        assert h.safetyScore > 0.7
        assert h.reportCount == 20
        assert abs(h.location.lat - ORIGIN_LAT) < 0.003
        assert abs(h.location.lng - ORIGIN_LNG) < 0.003


def test_hotspot_selection_is_bounded_and_unique(service, store):
    # Twelve separate dense clusters, 5 km apart
    for c in range(12):
        for r in cluster(4, type="unsafe" if c % 2 else "safe", lat=ORIGIN_LAT + c * 0.05):
            store.save(r)
    hotspots = service.identify_hotspots()
    keys = {(round(h.location.lat, 5), round(h.location.lng, 5)) for h in hotspots}
    assert len(keys) == len(hotspots)
    assert 0 < len(hotspots) <= 15
    assert service.predicted_hotspots == tuple(hotspots)


def test_nearby_hotspots_summary(service, store):
    for r in cluster(20, type="safe", severity=1):
        store.save(r)
    assert service.train_model()
    summary = service.get_nearby_hotspots(ORIGIN_LAT, ORIGIN_LNG, radius_km=2)
    assert summary.totalCount == len(summary.hotspots) > 0
    assert summary.safeCount == summary.totalCount
    assert summary.unsafeCount == summary.moderateCount == 0

    far = service.get_nearby_hotspots(0.0, 0.0, radius_km=2)
    assert far.totalCount == 0


# ─────────────────────────── Status ──────────────────────────────

def test_status_reports_service_state(service, store):
    status = service.get_status()
    assert status.state == "uninitialized"
    assert not status.isReady
    assert status.modelLoss is None
    assert status.lastTrainedAt is None

    for r in cluster(20):
        store.save(r)
    service.initialize()  # no model on disk: trains inline
    status = service.get_status()
    assert status.isReady
    assert not status.isTraining
    assert status.sampleSize == 20
    assert status.modelVersion == 1
    assert status.lastTrainedAt == NOON.isoformat()
    assert 0 < len(status.predictedHotspots) <= 10


def test_cleanup_cache(service):
    service.predict_safety(1.0, 1.0)
    assert service.cleanup_cache() == 0
    assert len(service.prediction_cache) == 1


def test_reports_are_pydantic_models(store):
    saved = store.save(make_report())
    assert isinstance(saved, SafetyReport)
    assert saved.id
