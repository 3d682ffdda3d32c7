"""
System-level tests for HabitLog.

These tests run complete coaching workflows across the store, the voice pipeline, the
reports and the command line, against encrypted files in a temporary directory, and
check the state of the system after each series of operations.
"""
import json
from datetime import datetime, timezone

import pytest

import main as cli
from conftest import FakeModel, make_habits
from habitlog import config
from habitlog import gemini as gemini_module
from habitlog.store import HabitStore


class _SpeechResponse:
    def __init__(self, text):
        self._text = text

    def raise_for_status(self):
        pass

    def json(self):
        return {"text": self._text, "language": "en"}


@pytest.fixture
def configured(monkeypatch, tmp_path):
    """Points the configuration at a temporary data directory and key file."""
    monkeypatch.setattr(config, "DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr(config, "KEY_FILE", str(tmp_path / "secret.key"))
    monkeypatch.setattr(config, "SEED_PASSWORD", "demo-pass")
    return tmp_path


def test_end_to_end_coaching_workflow(file_backend, file_store, clock):
    """
    Tests a full coaching workflow from registration to reporting.

    This covers: client registration and login, assignment to a coach, a week of habit
    logging by the client with one edit by the coach, a bloodwork upload, the coach's
    dashboard, incremental sync from the client's device, and a restart from disk.
    """
    jane = file_store.create_user("Jane", "+15551230000", "client", "jane-pw").data
    coach = file_store.create_user("Coach Kim", "+15551239999", "admin", "kim-pw").data
    assert file_store.assign_client_to_admin(jane["id"], coach["id"], "admin-1").success

    login = file_store.authenticate_user("+15551230000", "jane-pw")
    assert login.success
    assert file_store.get_user_for_token(login.data["token"])["id"] == jane["id"]

    first_sync = file_store.get_data_for_sync(jane["id"], requested_by=jane["id"])
    assert first_sync["habits"] == []
    assert first_sync["profile"]["admin_id"] == coach["id"]

    for day in range(1, 8):
        result = file_store.save_daily_habits(
            make_habits(user_id=jane["id"], date=f"2024-03-0{day}", energy_level_2pm=day + 2),
            jane["id"]
        )
        assert result.success
    edit = file_store.save_daily_habits(
        make_habits(user_id=jane["id"], date="2024-03-01", meal_6pm="grilled fish"), coach["id"]
    )
    assert edit.success
    assert file_store.save_daily_habits(make_habits(user_id=jane["id"]), "admin-1").error == "AccessDenied"

    upload = file_store.save_bloodwork_document(
        jane["id"], "march.pdf", "application/pdf", 5, jane["id"], content=b"%PDF-", notes="Fasting"
    )
    assert upload.success

    dashboard = file_store.get_admin_dashboard_data(coach["id"])
    assert [c["id"] for c in dashboard["clients"]] == [jane["id"]]
    assert dashboard["stats"]["total_clients"] == 1
    assert dashboard["stats"]["pending_habits"] == 0
    assert dashboard["stats"]["new_bloodwork"] == 1
    assert dashboard["recent_activity"][0]["entity_id"] == upload.data["id"]
    assert file_store.get_admin_dashboard_data("admin-1")["stats"]["total_clients"] == 1

    second_sync = file_store.get_data_for_sync(jane["id"], first_sync["synced_at"])
    assert len(second_sync["habits"]) == 7
    assert second_sync["habits"][-1]["id"] == edit.data["id"]
    assert [d["id"] for d in second_sync["bloodwork"]] == [upload.data["id"]]

    reopened = HabitStore(file_backend, clock=clock)
    page = reopened.get_daily_habits(jane["id"], page=1, limit=5)
    assert page.total == 7
    assert page.has_more is True
    assert page.data[0]["date"] == "2024-03-07"
    edited = reopened.get_daily_habit_by_date(jane["id"], "2024-03-01")
    assert edited["meal_6pm"] == "grilled fish"
    assert edited["last_edited_by"] == coach["id"]
    assert reopened.get_bloodwork_content(upload.data["id"], requested_by=coach["id"]) == b"%PDF-"
    assert reopened.authenticate_user("+15551239999", "kim-pw").success

    exported = json.loads(reopened.export_data())
    assert jane["id"] in exported["data"]["clients"]
    assert "jane-pw" not in json.dumps(exported)


def test_cli_habits_and_dashboard(configured, capsys):
    store = HabitStore.from_config()
    store.save_daily_habits(make_habits(date="2024-03-01", energy_level_2pm=8), "client-1")
    store.save_daily_habits(make_habits(date="2024-03-02"), "client-1")

    assert cli.main(["habits", "client-1", "--limit", "1"]) == 0
    out = capsys.readouterr().out
    assert "2024-03-02" in out
    assert "2024-03-01" not in out
    assert "more: True" in out

    assert cli.main(["habits", "client-1", "--csv"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("date,weight_check")
    assert [line[:10] for line in lines[1:]] == ["2024-03-02", "2024-03-01"]

    assert cli.main(["dashboard", "admin-1"]) == 0
    dashboard = json.loads(capsys.readouterr().out)
    assert dashboard["stats"]["total_clients"] == 1
    assert len(dashboard["recent_activity"]) == 2


def test_cli_reports_errors(configured, capsys):
    assert cli.main(["dashboard", "client-1"]) == 1
    assert cli.main(["habits", "client-1", "--page", "0"]) == 1


def test_cli_export_leaves_out_sessions(configured, capsys):
    store = HabitStore.from_config()
    assert store.authenticate_user("+1234567890", "demo-pass").success
    assert cli.main(["export"]) == 0
    exported = json.loads(capsys.readouterr().out)
    assert "sessions" not in exported["data"]
    assert exported["data"]["admins"]["admin-1"]["client_ids"] == ["client-1"]


def test_cli_voice_applies_updates(configured, capsys, monkeypatch, tmp_path):
    """The voice command transcribes a file, prints the proposals and saves them."""
    audio = tmp_path / "note.webm"
    audio.write_bytes(b"fake-audio")
    monkeypatch.setattr(
        "habitlog.transcription.requests.post",
        lambda url, files=None, timeout=None: _SpeechResponse("Did Wim Hof breathing and energy was 9 tonight")
    )
    model = FakeModel(reply=json.dumps([
        {"field": "wim_hof", "value": "yes", "confidence": "high", "original_text": "Did Wim Hof breathing"},
        {"field": "energy_level_8pm", "value": 9, "confidence": "high", "original_text": "energy was 9 tonight"},
    ]))
    monkeypatch.setattr(gemini_module, "get_model", lambda: model)

    assert cli.main(["voice", "client-1", str(audio), "--date", "2024-03-05"]) == 0
    out = capsys.readouterr().out
    assert "Wim Hof Breathing: 'yes'" in out
    assert "--apply" in out
    assert HabitStore.from_config().get_daily_habit_by_date("client-1", "2024-03-05") is None

    assert cli.main(["voice", "client-1", str(audio), "--date", "2024-03-05", "--as", "admin-1", "--apply"]) == 0
    capsys.readouterr()
    habit = HabitStore.from_config().get_daily_habit_by_date("client-1", "2024-03-05")
    assert habit["wim_hof"] == "yes"
    assert habit["energy_level_8pm"] == 9
    assert habit["last_edited_by"] == "admin-1"


def test_cli_voice_missing_recording(configured, tmp_path):
    assert cli.main(["voice", "client-1", str(tmp_path / "missing.webm")]) == 1


def test_cli_voice_defaults_to_the_utc_date(configured, capsys, monkeypatch, tmp_path):
    audio = tmp_path / "note.webm"
    audio.write_bytes(b"fake-audio")
    monkeypatch.setattr(
        "habitlog.transcription.requests.post",
        lambda url, files=None, timeout=None: _SpeechResponse("Tracked my sleep")
    )
    model = FakeModel(reply=json.dumps([
        {"field": "tracked_sleep", "value": "yes", "confidence": "high", "original_text": "Tracked my sleep"},
    ]))
    monkeypatch.setattr(gemini_module, "get_model", lambda: model)

    assert cli.main(["voice", "client-1", str(audio), "--apply"]) == 0
    today = datetime.now(timezone.utc).date().isoformat()
    assert HabitStore.from_config().get_daily_habit_by_date("client-1", today)["tracked_sleep"] == "yes"
