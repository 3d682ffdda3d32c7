"""
Pytest configuration file for the HabitLog test suite.

This file defines shared fixtures used across the test files:
- A controllable clock, so timestamps, session expiry and "today" are deterministic.
- Isolated `HabitStore` instances on an in-memory backend or on encrypted files in a
  temporary directory, so tests never touch real data or the real key file.
- A fake Gemini model that returns canned replies and records the prompts it received.
- Cheaper scrypt parameters, so password hashing does not dominate the test run.
"""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from habitlog import auth as auth_module
from habitlog.storage import EncryptedFileBackend, MemoryBackend
from habitlog.store import HabitStore


class FakeClock:
    """Returns a settable time and moves forward one millisecond per reading."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        current = self.now
        self.now = current + timedelta(milliseconds=1)
        return current

    def set(self, moment):
        self.now = moment

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModel:
    """Stands in for `google.generativeai.GenerativeModel`."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []
        self.request_options = []

    def generate_content(self, prompt, request_options=None):
        self.prompts.append(prompt)
        self.request_options.append(request_options)
        if self.error:
            raise self.error
        return FakeResponse(self.reply)


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    """Uses small scrypt parameters for the duration of each test."""
    monkeypatch.setattr(auth_module, "SCRYPT_N", 2 ** 4)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, clock):
    """Provides an initialized store seeded with `admin-1` and `client-1`."""
    svc = HabitStore(backend, clock=clock)
    svc.initialize()
    return svc


@pytest.fixture
def fernet():
    return Fernet(Fernet.generate_key())


@pytest.fixture
def file_backend(tmp_path, fernet):
    return EncryptedFileBackend(str(tmp_path / "data"), fernet)


@pytest.fixture
def file_store(file_backend, clock):
    svc = HabitStore(file_backend, clock=clock)
    svc.initialize()
    return svc


@pytest.fixture
def fake_model():
    return FakeModel()


def make_habits(user_id="client-1", date="2024-03-01", **fields):
    """Builds a full day of habits with sensible defaults."""
    habits = {
        "user_id": user_id,
        "date": date,
        "weight_check": "yes",
        "morning_acv_water": "no",
        "champion_workout": None,
        "meal_10am": "eggs",
        "hunger_times": "noon",
        "outdoor_time": "20 minute walk",
        "energy_level_2pm": 6,
        "meal_6pm": "salad",
        "energy_level_8pm": 5,
        "wim_hof": None,
        "tracked_sleep": "yes",
        "day_description": "A normal day",
    }
    habits.update(fields)
    return habits
