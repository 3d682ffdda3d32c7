"""
This module defines the primary data models for the HabitLog application.

These classes structure the records managed by the `HabitStore`. The store keeps plain
dictionaries (`vars(model)`) in its maps and in the persisted snapshot, so every attribute
set in an `__init__` below ends up as a key of the stored record.
"""
# habitlog/models.py

from datetime import datetime, timedelta, timezone
import uuid

ROLE_ADMIN = 'admin'
ROLE_CLIENT = 'client'
ROLES = (ROLE_ADMIN, ROLE_CLIENT)

# Change log vocabulary.
ENTITY_USER = 'user'
ENTITY_CLIENT = 'client'
ENTITY_ADMIN = 'admin'
ENTITY_DAILY_HABITS = 'dailyHabits'
ENTITY_BLOODWORK = 'bloodwork'
ENTITY_TYPES = (ENTITY_USER, ENTITY_CLIENT, ENTITY_ADMIN, ENTITY_DAILY_HABITS, ENTITY_BLOODWORK)

ACTION_CREATE = 'create'
ACTION_UPDATE = 'update'
ACTION_DELETE = 'delete'

# Daily habit fields, grouped by type.
YES_NO_FIELDS = ('weight_check', 'morning_acv_water', 'champion_workout', 'wim_hof', 'tracked_sleep')
TEXT_FIELDS = ('meal_10am', 'hunger_times', 'outdoor_time', 'meal_6pm', 'day_description')
ENERGY_FIELDS = ('energy_level_2pm', 'energy_level_8pm')
HABIT_FIELDS = YES_NO_FIELDS + TEXT_FIELDS + ENERGY_FIELDS
YES_NO_VALUES = ('yes', 'no', None)
ENERGY_MIN = 1
ENERGY_MAX = 10

SESSION_LIFETIME = timedelta(hours=24)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Formats an aware datetime as a UTC ISO-8601 string with microseconds and a 'Z' suffix."""
    return moment.astimezone(timezone.utc).isoformat(timespec='microseconds').replace('+00:00', 'Z')


def parse_timestamp(value: str) -> datetime:
    """Parses a timestamp written by `format_timestamp` (or any ISO-8601 string).

    Naive values are assumed to be UTC.
    """
    moment = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def habit_id_for(user_id: str, date: str) -> str:
    """Returns the derived id of the habit record for a user and calendar date."""
    return f"habit-{user_id}-{date}"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class User:
    """Represents a user of the system, either a coach (admin) or a client.

    Attributes:
        id (str): A unique identifier for the user.
        name (str): The display name.
        phone_number (str): The login handle, unique across all users.
        role (str): 'admin' or 'client'.
        created_at (str): Creation timestamp.
        updated_at (str): Last update timestamp.
        is_active (bool): False once the user has been archived.
    """
    def __init__(self, name, phone_number, role, now, user_id=None, is_active=True):
        self.id = user_id or new_id(role)
        self.name = name
        self.phone_number = phone_number
        self.role = role
        self.created_at = now
        self.updated_at = now
        self.is_active = is_active


class Client(User):
    """A client being coached.

    Attributes:
        admin_id (str): The assigned coach, if any.
        last_active (str): Updated on every login and habit or bloodwork write.
        profile_data (dict): Optional age, weight, height, medical_conditions and goals.
    """
    def __init__(self, name, phone_number, now, user_id=None, admin_id=None, profile_data=None, is_active=True):
        super().__init__(name, phone_number, ROLE_CLIENT, now, user_id=user_id, is_active=is_active)
        self.admin_id = admin_id
        self.last_active = now
        self.profile_data = dict(profile_data or {})


class Admin(User):
    """A coach who owns a set of clients."""
    def __init__(self, name, phone_number, now, user_id=None, client_ids=None, is_active=True):
        super().__init__(name, phone_number, ROLE_ADMIN, now, user_id=user_id, is_active=is_active)
        self.client_ids = list(client_ids or [])
        self.permissions = ['all']


class DailyHabits:
    """One day of habit tracking for one user.

    The id is derived from the user id and date, so saving the same day again replaces the
    record instead of adding a second one.
    """
    def __init__(self, user_id, date, now, created_at=None, last_edited_by=None, **fields):
        self.id = habit_id_for(user_id, date)
        self.user_id = user_id
        self.date = date
        for name in YES_NO_FIELDS:
            setattr(self, name, fields.get(name))
        for name in TEXT_FIELDS:
            setattr(self, name, fields.get(name) or '')
        for name in ENERGY_FIELDS:
            setattr(self, name, fields.get(name))
        self.created_at = created_at or now
        self.updated_at = now
        if last_edited_by:
            self.last_edited_by = last_edited_by


class BloodworkDocument:
    """Metadata for an uploaded bloodwork document. The bytes live in the backing store."""
    def __init__(self, user_id, file_name, file_type, file_size, now, notes=None, doc_id=None):
        self.id = doc_id or f"bloodwork-{user_id}-{uuid.uuid4().hex[:12]}"
        self.user_id = user_id
        self.file_name = file_name
        self.file_type = file_type
        self.file_size = file_size
        self.upload_date = now
        self.file_url = f"blob://bloodwork/{self.id}"
        self.notes = notes
        self.created_at = now
        self.updated_at = now


class UserSession:
    """A bearer-token session. Expiry is only checked on lookup."""
    def __init__(self, user_id, token, created: datetime):
        self.id = new_id('session')
        self.user_id = user_id
        self.token = token
        self.expires_at = format_timestamp(created + SESSION_LIFETIME)
        self.created_at = format_timestamp(created)


class ChangeLogEntry:
    """A single recorded mutation."""
    def __init__(self, entity_type, entity_id, action, changes, user_id, timestamp):
        self.id = new_id('change')
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        self.changes = dict(changes)
        self.user_id = user_id
        self.timestamp = timestamp


class Result:
    """The uniform outcome of a write operation."""
    def __init__(self, success, data=None, error=None, message=None):
        self.success = success
        self.data = data
        self.error = error
        self.message = message

    @classmethod
    def ok(cls, data=None, message=None):
        return cls(True, data=data, message=message)

    @classmethod
    def fail(cls, error):
        """Builds a failed result from a `HabitLogError`."""
        return cls(False, error=error.kind, message=error.message)

    def to_dict(self) -> dict:
        result = {'success': self.success}
        if self.success:
            result['data'] = self.data
        else:
            result['error'] = self.error
        if self.message:
            result['message'] = self.message
        return result

    def __repr__(self):
        return f"Result(success={self.success!r}, error={self.error!r}, message={self.message!r})"


class Page:
    """One page of a sorted listing."""
    def __init__(self, data, total, page, limit):
        self.data = data
        self.total = total
        self.page = page
        self.limit = limit
        self.has_more = (page - 1) * limit + len(data) < total

    def to_dict(self) -> dict:
        return dict(vars(self))
