import json

from rtl_auditor.models.schemas import HistoryItem
from rtl_auditor.services.history_store import HistoryStore


def _item(item_id, status, analysis=None):
    return HistoryItem(id=item_id, timestamp=int(item_id), image="data:image/jpeg;base64,AAAA", status=status, analysis=analysis)


def test_missing_file_loads_empty_history(tmp_path):
    assert HistoryStore(str(tmp_path)).load() == []


def test_processing_items_reload_as_pending(tmp_path, sample_result):
    store = HistoryStore(str(tmp_path))
    items = [
        _item("3", "processing"),
        _item("2", "completed", sample_result),
        _item("1", "failed"),
    ]
    store.save(items)

    reloaded = store.load()
    assert [item.status for item in reloaded] == ["pending", "completed", "failed"]
    assert reloaded[1] == items[1]
    assert reloaded[2] == items[2]


def test_history_is_one_json_array_with_wire_names(tmp_path, sample_result):
    store = HistoryStore(str(tmp_path))
    store.save([_item("1", "completed", sample_result)])

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert store.path.name == "rtl_audit_history.json"
    assert isinstance(raw, list)
    analysis = raw[0]["analysis"]
    assert analysis["overallSummary"] == sample_result.overall_summary
    assert analysis["displayErrors"][0]["type"] == "前端实现错误"
    assert analysis["displayErrors"][0]["location"] == {"x": 100.0, "y": 100.0, "width": 200.0, "height": 50.0}


def test_corrupt_file_is_moved_aside(tmp_path):
    store = HistoryStore(str(tmp_path))
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text("{not json", encoding="utf-8")

    assert store.load() == []
    assert not store.path.exists()
    assert (tmp_path / "rtl_audit_history.corrupt.json").exists()


def test_invalid_records_are_skipped(tmp_path):
    store = HistoryStore(str(tmp_path))
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(
        json.dumps(
            [
                {"id": "1", "timestamp": 1, "image": "data:image/jpeg;base64,AAAA", "status": "pending"},
                {"id": "2", "timestamp": 2, "status": "exploded"},
            ]
        ),
        encoding="utf-8",
    )

    items = store.load()
    assert [item.id for item in items] == ["1"]
