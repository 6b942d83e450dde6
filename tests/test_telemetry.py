import json

import pytest

from taskforce.telemetry import TelemetryRecorder, estimate_tokens


def _recorder():
    recorder = TelemetryRecorder()
    recorder.record_llm_call("Writer", 10, 5.0, "llama3")
    recorder.record_llm_call("Writer", 20, 7.5, "mistral")
    recorder.record_llm_call("Editor", 4, 1.0, "llama3")
    return recorder


def test_export_groups_by_agent_and_model():
    stats = _recorder().export()

    writer = stats["Writer"]
    assert writer["call_count"] == 2
    assert writer["total_tokens"] == 30
    assert writer["total_time_ms"] == 12.5
    assert [entry["model"] for entry in writer["models"]] == ["llama3", "mistral"]
    assert writer["last_call"]["model"] == "mistral"
    assert stats["Editor"]["call_count"] == 1


def test_estimate_tokens():
    assert estimate_tokens("abcd" * 10) == 10
    assert estimate_tokens("") == 0


def test_save_appends_to_existing_counts(tmp_path):
    path = tmp_path / "stats" / "telemetry.json"
    _recorder().save(path)
    _recorder().save(path)

    saved = json.loads(path.read_text())
    assert saved["Writer"]["call_count"] == 4
    assert saved["Writer"]["total_tokens"] == 60
    assert {entry["model"]: entry["total_tokens"] for entry in saved["Writer"]["models"]} == {
        "llama3": 20,
        "mistral": 40,
    }


def test_save_overwrite_and_corrupt_file(tmp_path):
    path = tmp_path / "telemetry.json"
    path.write_text("not json")
    _recorder().save(path)
    assert json.loads(path.read_text())["Editor"]["call_count"] == 1

    _recorder().save(path, mode="overwrite")
    assert json.loads(path.read_text())["Writer"]["call_count"] == 2


def test_save_rejects_unknown_mode(tmp_path):
    with pytest.raises(ValueError, match="Unknown telemetry mode"):
        TelemetryRecorder().save(tmp_path / "t.json", mode="merge")


def test_reset():
    recorder = _recorder()
    recorder.reset()
    assert recorder.export() == {}
