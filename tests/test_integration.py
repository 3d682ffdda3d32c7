"""
Integration tests for HabitLog.

These tests check how the parts work together: the voice pipeline from recorded audio
through transcription, extraction and review into the store, and the store's round trip
through encrypted files on disk.
"""
import json
import threading

import pytest
from cryptography.fernet import Fernet

from conftest import FakeModel, make_habits
from habitlog.errors import ProcessingCancelled, TranscriptionError
from habitlog.storage import EncryptedFileBackend
from habitlog.store import HabitStore
from habitlog.voice import HabitExtractor, process_recording


class _SpeechResponse:
    def __init__(self, text):
        self._text = text

    def raise_for_status(self):
        pass

    def json(self):
        return {"text": self._text, "language": "en"}


@pytest.fixture
def speech(monkeypatch):
    """Makes the transcription service answer with a fixed transcript."""
    def install(text):
        monkeypatch.setattr(
            "habitlog.transcription.requests.post",
            lambda url, files=None, timeout=None: _SpeechResponse(text)
        )
    return install


def test_voice_recording_updates_habits_for_admin(store, speech):
    """An admin's recording is transcribed, reviewed and saved with last_edited_by set."""
    speech("I checked my weight and my energy was about 8 at 2pm")
    model = FakeModel(reply=json.dumps([
        {"field": "weight_check", "value": "yes", "confidence": "high", "original_text": "I checked my weight"},
        {"field": "energy_level_2pm", "value": 8, "confidence": "high", "original_text": "energy was about 8"},
    ]))

    review = process_recording(
        b"fake-audio", store, "client-1", "2024-03-01",
        extractor=HabitExtractor(model=model), requested_by="admin-1"
    )
    assert review.transcript == "I checked my weight and my energy was about 8 at 2pm"
    assert [u.field for u in review.updates] == ["weight_check", "energy_level_2pm"]

    result = review.apply(store, "admin-1")
    assert result.success
    habit = store.get_daily_habit_by_date("client-1", "2024-03-01")
    assert habit["weight_check"] == "yes"
    assert habit["energy_level_2pm"] == 8
    assert habit["last_edited_by"] == "admin-1"
    assert store.get_change_logs(entity_type="dailyHabits")[0]["user_id"] == "admin-1"


def test_voice_review_after_concurrent_edit(store, speech):
    """Applying a stale review still saves, and reports the overwritten edit."""
    store.save_daily_habits(make_habits(meal_10am="eggs"), "client-1")
    speech("Energy was 4 this evening")
    model = FakeModel(reply=json.dumps([
        {"field": "energy_level_8pm", "value": 4, "confidence": "medium", "original_text": "Energy was 4"},
    ]))
    review = process_recording(b"audio", store, "client-1", "2024-03-01", extractor=HabitExtractor(model=model))

    store.save_daily_habits(make_habits(meal_10am="pancakes"), "admin-1")
    result = review.apply(store, "client-1")

    assert result.success
    assert "overwritten" in result.message
    habit = store.get_daily_habit_by_date("client-1", "2024-03-01")
    assert habit["energy_level_8pm"] == 4
    assert habit["meal_10am"] == "pancakes"


def test_voice_recording_with_model_down_uses_keywords(store, speech):
    speech("Finished the workout and had a salad for lunch")
    model = FakeModel(error=TimeoutError("deadline exceeded"))
    review = process_recording(b"audio", store, "client-1", "2024-03-01", extractor=HabitExtractor(model=model))
    fields = {u.field: u.value for u in review.updates}
    assert fields["champion_workout"] == "yes"
    assert fields["day_description"] == "Finished the workout and had a salad for lunch"
    assert review.apply(store, "client-1").success


def test_cancelled_voice_processing_writes_nothing(store, speech):
    speech("Energy 6")
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ProcessingCancelled):
        process_recording(
            b"audio", store, "client-1", "2024-03-01",
            extractor=HabitExtractor(model=FakeModel(reply="[]")), cancel_event=cancel
        )
    assert store.get_daily_habit_by_date("client-1", "2024-03-01") is None


def test_silent_recording_fails_transcription(store, speech):
    speech("")
    with pytest.raises(TranscriptionError):
        process_recording(b"audio", store, "client-1", "2024-03-01", extractor=HabitExtractor(model=FakeModel()))


def test_records_survive_a_restart(file_backend, file_store, clock):
    """A second store over the same files sees users, passwords, habits and the change log."""
    created = file_store.create_user("Jane", "+15551230000", "client", "pw1", created_by="admin-1")
    assert file_store.assign_client_to_admin(created.data["id"], "admin-1", "admin-1").success
    file_store.save_daily_habits(make_habits(user_id=created.data["id"], energy_level_2pm=9), "admin-1")
    file_store.save_bloodwork_document(
        created.data["id"], "labs.txt", "text/plain", 4, "admin-1", content=b"A1C!"
    )

    reopened = HabitStore(file_backend, clock=clock)
    habit = reopened.get_daily_habit_by_date(created.data["id"], "2024-03-01")
    assert habit["energy_level_2pm"] == 9
    assert habit["last_edited_by"] == "admin-1"
    assert reopened.authenticate_user("+15551230000", "pw1").success
    document = reopened.get_bloodwork_documents(created.data["id"])[0]
    assert reopened.get_bloodwork_content(document["id"]) == b"A1C!"
    assert len(reopened.get_change_logs()) == 4
    assert [c["id"] for c in reopened.get_all_clients("admin-1")] == ["client-1", created.data["id"]]


def test_files_on_disk_are_encrypted(file_backend, file_store, tmp_path):
    file_store.create_user("Jane", "+15551230000", "client", "pw1")
    data_dir = tmp_path / "data"
    database = (data_dir / "database.json").read_bytes()
    assert b"+15551230000" not in database
    assert b"Jane" not in database
    other = EncryptedFileBackend(str(data_dir), Fernet(Fernet.generate_key()))
    reopened = HabitStore(other)
    reopened.initialize()
    assert reopened.get_user_by_id("client-1") is not None
