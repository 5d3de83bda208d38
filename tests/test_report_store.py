from conftest import ORIGIN_LAT, ORIGIN_LNG, cluster, make_report
from report_store import InMemoryReportStore, load_reports


def test_save_assigns_ids_and_keeps_given_ones(store):
    fresh = store.save(make_report())
    kept = store.save(make_report(id="abc"))
    assert len(fresh.id) == 12
    assert kept.id == "abc"
    assert len(store) == 2


def test_find_nearby_uses_great_circle_radius(store):
    store.save(make_report(lat=ORIGIN_LAT, lng=ORIGIN_LNG))
    # ~0.45 km north
    store.save(make_report(lat=ORIGIN_LAT + 0.004, lng=ORIGIN_LNG))
    # ~1.1 km north
    store.save(make_report(lat=ORIGIN_LAT + 0.01, lng=ORIGIN_LNG))
    assert len(store.find_nearby(ORIGIN_LAT, ORIGIN_LNG, 0.5)) == 2
    assert len(store.find_nearby(ORIGIN_LAT, ORIGIN_LNG, 2.0)) == 3


def test_find_recent_is_newest_first():
    store = InMemoryReportStore(cluster(6))
    recent = store.find_recent(3)
    assert [r.id for r in recent] == ["r0", "r1", "r2"]


def test_journal_is_replayed(tmp_path):
    path = tmp_path / "reports.jsonl"
    first = InMemoryReportStore(path=path)
    for r in cluster(4):
        first.save(r)

    second = InMemoryReportStore(path=path)
    assert len(second) == 4
    assert {r.id for r in second.find_recent(10)} == {"r0", "r1", "r2", "r3"}


def test_malformed_journal_lines_are_skipped(tmp_path):
    path = tmp_path / "reports.jsonl"
    good = make_report(id="good").model_dump_json()
    path.write_text("\n".join([good, "{not json", '{"id": "x"}', "", good]) + "\n")
    reports = load_reports(path)
    assert [r.id for r in reports] == ["good", "good"]
