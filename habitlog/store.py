"""
This module provides the record store at the heart of HabitLog.

It defines the `HabitStore` class, which is responsible for:
- Loading the persisted snapshot on first use, or seeding a default admin and client.
- Keeping users, clients, admins, daily habits, bloodwork documents and sessions in
  in-memory maps and writing the whole snapshot back after every change.
- Recording every change in a capped `ChangeLog`.
- User registration and authentication (scrypt password hashes, 24 hour sessions).
- Habit and bloodwork storage, client assignment, incremental sync and the admin dashboard.

Write operations return a `Result` instead of raising; reads return records, None or
empty collections. Each write runs inside `_transaction()`, which restores the previous
in-memory state and any password or bloodwork slot it wrote if anything fails, so
callers never see half of an operation.

There is no locking. Two writers editing the same record resolve as last write wins.
Every write re-serializes the full snapshot, which is fine for a coaching practice but
grows linearly with the number of records.
"""
# habitlog/store.py

import base64
import copy
import json
import logging
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional

from cryptography.fernet import InvalidToken

from habitlog import config
from habitlog.auth import can_access, hash_password, new_session_token, verify_password
from habitlog.changelog import DEFAULT_LIMIT, ChangeLog
from habitlog.encryption import get_encryptor
from habitlog.errors import (
    AccessDeniedError,
    DuplicatePhoneNumberError,
    HabitLogError,
    InvalidCredentialsError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from habitlog.models import (
    ACTION_CREATE,
    ACTION_UPDATE,
    ENERGY_FIELDS,
    ENERGY_MAX,
    ENERGY_MIN,
    ENTITY_ADMIN,
    ENTITY_BLOODWORK,
    ENTITY_CLIENT,
    ENTITY_DAILY_HABITS,
    ENTITY_USER,
    EPOCH,
    HABIT_FIELDS,
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLES,
    TEXT_FIELDS,
    YES_NO_FIELDS,
    YES_NO_VALUES,
    Admin,
    BloodworkDocument,
    Client,
    DailyHabits,
    Page,
    Result,
    UserSession,
    format_timestamp,
    habit_id_for,
    parse_timestamp,
    utc_now,
)
from habitlog.storage import EncryptedFileBackend

logger = logging.getLogger(__name__)

DATABASE_KEY = 'database'
CHANGE_LOGS_KEY = 'changeLogs'

BASE_USER_KEYS = ('id', 'name', 'phone_number', 'role', 'created_at', 'updated_at', 'is_active')
USER_UPDATE_FIELDS = ('name', 'phone_number', 'is_active')
CLIENT_UPDATE_FIELDS = ('profile_data',)
# Keys a caller may send back from a fetched habit record; they are recomputed on save.
HABIT_METADATA_KEYS = ('id', 'user_id', 'date', 'created_at', 'updated_at', 'last_edited_by')

ALLOWED_BLOODWORK_TYPES = (
    'application/pdf',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'text/plain',
    'image/jpeg',
    'image/png',
)
MAX_BLOODWORK_SIZE = 10 * 1024 * 1024
DASHBOARD_ACTIVITY_LIMIT = 20

_DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def password_key(user_id: str) -> str:
    return f"password-{user_id}"


def blob_key(doc_id: str) -> str:
    return f"blob-{doc_id}"


def _empty_schema() -> Dict[str, Dict]:
    return {
        'users': {},
        'clients': {},
        'admins': {},
        'daily_habits': {},
        'bloodwork_documents': {},
        'sessions': {},
    }


class HabitStore:
    """The single source of truth for all HabitLog records."""

    def __init__(
        self,
        backend,
        clock: Optional[Callable[[], datetime]] = None,
        change_log_limit: int = DEFAULT_LIMIT,
        seed_password: Optional[str] = None,
    ) -> None:
        """Creates a store on top of a backing store. Nothing is loaded until first use.

        Args:
            backend: An object with `get(key)`, `set(key, blob)` and `remove_many(keys)`.
            clock: Returns the current aware UTC datetime. Defaults to the system clock.
            change_log_limit: How many change log entries to keep.
            seed_password: If set, the seeded admin and client get this password.
        """
        self._backend = backend
        self._clock = clock or utc_now
        self._seed_password = seed_password
        self._data = _empty_schema()
        self._change_log = ChangeLog(limit=change_log_limit)
        self._slot_backups: Optional[Dict[str, Optional[str]]] = None
        self._initialized = False

    @classmethod
    def from_config(cls) -> 'HabitStore':
        """Builds a store on the encrypted file backend described by `habitlog.config`."""
        backend = EncryptedFileBackend(config.DATA_DIR, get_encryptor(config.KEY_FILE))
        return cls(backend, seed_password=config.SEED_PASSWORD)

    # Initialization and persistence

    def initialize(self) -> None:
        """Loads the persisted snapshot, or seeds default data if there is none.

        Any failure while loading (unreadable file, wrong key, malformed JSON) is logged
        and answered by seeding fresh default data, so the store always comes up usable.
        Safe to call repeatedly; only the first successful call does any work.
        """
        if self._initialized:
            return
        try:
            stored_data = self._backend.get(DATABASE_KEY)
            if stored_data:
                self._data = self._with_defaults(json.loads(stored_data))
                stored_logs = self._backend.get(CHANGE_LOGS_KEY)
                self._change_log.replace(json.loads(stored_logs) if stored_logs else [])
                logger.info(
                    "Loaded %d users and %d habit entries from storage.",
                    len(self._data['users']), len(self._data['daily_habits'])
                )
            else:
                logger.info("No stored data found. Seeding default data.")
                self._seed_default_data()
        except (InvalidToken, ValueError, TypeError, OSError, PersistenceError) as e:
            logger.error("Could not load stored data (%r). Starting over with default data.", e)
            self._seed_default_data()
        self._initialized = True

    @staticmethod
    def _with_defaults(data) -> Dict[str, Dict]:
        if not isinstance(data, dict):
            raise ValueError("stored snapshot is not a JSON object")
        schema = _empty_schema()
        for name in schema:
            section = data.get(name, {})
            if not isinstance(section, dict):
                raise ValueError(f"stored section '{name}' is not a JSON object")
            schema[name] = section
        return schema

    def _seed_default_data(self) -> None:
        """Replaces memory with one admin and one client and tries to persist them."""
        now = self._timestamp()
        self._data = _empty_schema()
        self._change_log.replace([])

        admin = vars(Admin('Admin User', '+1234567890', now, user_id='admin-1'))
        client = vars(Client(
            'Test Client', '+0987654321', now,
            user_id='client-1',
            admin_id='admin-1',
            profile_data={
                'age': 30,
                'weight': 70,
                'height': 175,
                'medical_conditions': ['diabetes'],
                'goals': ['weight loss', 'better energy'],
            },
        ))
        admin['client_ids'] = [client['id']]
        for record, section in ((admin, 'admins'), (client, 'clients')):
            self._data['users'][record['id']] = {key: record[key] for key in BASE_USER_KEYS}
            self._data[section][record['id']] = record

        try:
            if self._seed_password:
                for user_id in (admin['id'], client['id']):
                    self._write(password_key(user_id), hash_password(self._seed_password))
            self._persist()
        except PersistenceError as e:
            logger.error("Could not persist seed data (%s). Continuing in memory.", e.message)

    def _write(self, key: str, blob: str) -> None:
        try:
            self._backend.set(key, blob)
        except OSError as e:
            raise PersistenceError(f"Failed to write '{key}'", original_error=e) from e

    def _read(self, key: str) -> Optional[str]:
        try:
            return self._backend.get(key)
        except (OSError, InvalidToken) as e:
            raise PersistenceError(f"Failed to read '{key}'", original_error=e) from e

    def _persist(self) -> None:
        self._write(DATABASE_KEY, json.dumps(self._data))
        self._write(CHANGE_LOGS_KEY, json.dumps(self._change_log.snapshot()))

    def _write_slot(self, key: str, blob: str) -> None:
        """Writes a keyed slot outside the snapshot, remembering its old value for rollback."""
        if self._slot_backups is not None and key not in self._slot_backups:
            self._slot_backups[key] = self._read(key)
        self._write(key, blob)

    def _restore_slots(self, backups: Dict[str, Optional[str]]) -> None:
        for key, previous in backups.items():
            try:
                if previous is None:
                    self._backend.remove_many([key])
                else:
                    self._backend.set(key, previous)
            except (OSError, PersistenceError) as e:
                logger.error("Could not restore '%s' after a failed write: %s", key, e)

    @contextmanager
    def _transaction(self):
        """Runs a mutation and persists it; restores the previous state if either fails.

        Slots written through `_write_slot` (password hashes, bloodwork bytes) are put
        back to their previous values too.
        """
        data_backup = copy.deepcopy(self._data)
        log_backup = self._change_log.snapshot()
        self._slot_backups = {}
        try:
            yield
            self._persist()
        except Exception:
            self._data = data_backup
            self._change_log.replace(log_backup)
            self._restore_slots(self._slot_backups)
            raise
        finally:
            self._slot_backups = None

    def _now(self) -> datetime:
        return self._clock()

    def _timestamp(self) -> str:
        return format_timestamp(self._now())

    def _log(self, entity_type: str, entity_id: str, action: str, changes: Dict, user_id: str, timestamp: str) -> None:
        self._change_log.append(entity_type, entity_id, action, copy.deepcopy(changes), user_id, timestamp)

    @staticmethod
    def _failed(operation: str, error: HabitLogError) -> Result:
        if isinstance(error, PersistenceError):
            logger.error("%s failed: %s", operation, error.message)
        else:
            logger.warning("%s rejected (%s): %s", operation, error.kind, error.message)
        return Result.fail(error)

    # Lookups and access control

    def _find_user_by_phone(self, phone_number: str, active_only: bool = False) -> Optional[Dict]:
        for user in self._data['users'].values():
            if user['phone_number'] == phone_number and (user['is_active'] or not active_only):
                return user
        return None

    def _role_record(self, user_id: str) -> Optional[Dict]:
        """Returns the client or admin record for a user id."""
        return self._data['clients'].get(user_id) or self._data['admins'].get(user_id)

    def _actor(self, actor_id: Optional[str]) -> Optional[Dict]:
        record = self._role_record(actor_id) if actor_id else None
        if record and record.get('is_active', True):
            return record
        return None

    def _check_access(self, actor_id: Optional[str], target_user_id: str) -> None:
        if not can_access(self._actor(actor_id), target_user_id):
            raise AccessDeniedError(f"User '{actor_id}' may not access records of '{target_user_id}'")

    def _check_read_access(self, requested_by: Optional[str], target_user_id: str) -> None:
        if requested_by is not None:
            self._check_access(requested_by, target_user_id)

    def _require_user(self, user_id: str) -> Dict:
        user = self._data['users'].get(user_id)
        if not user:
            raise NotFoundError(f"User '{user_id}' not found")
        return user

    def _entry_owner(self, entry: Dict) -> Optional[str]:
        """Returns the id of the user a change log entry is about, if it still resolves."""
        entity_type = entry.get('entity_type')
        entity_id = entry.get('entity_id')
        if entity_type in (ENTITY_USER, ENTITY_CLIENT, ENTITY_ADMIN):
            return entity_id
        if entity_type == ENTITY_DAILY_HABITS:
            habit = self._data['daily_habits'].get(entity_id)
            return habit['user_id'] if habit else None
        if entity_type == ENTITY_BLOODWORK:
            document = self._data['bloodwork_documents'].get(entity_id)
            return document['user_id'] if document else None
        return None

    # User management

    def create_user(
        self,
        name: str,
        phone_number: str,
        role: str,
        password: str,
        created_by: Optional[str] = None,
        profile_data: Optional[Dict] = None,
    ) -> Result:
        """Registers a new admin or client.

        Args:
            name (str): The display name.
            phone_number (str): The login handle; must not belong to any existing user.
            role (str): 'admin' or 'client'.
            password (str): The plaintext password; only its scrypt hash is stored.
            created_by (str, optional): The acting user. Defaults to the new user itself.
            profile_data (dict, optional): Initial client profile data.

        Returns:
            Result: The new user's role record on success; `DuplicatePhoneNumber`,
                `ValidationFailure` or `PersistenceFailure` otherwise.
        """
        self.initialize()
        try:
            if role not in ROLES:
                raise ValidationError(f"Unknown role '{role}'")
            if not isinstance(name, str) or not name.strip():
                raise ValidationError("Name is required")
            if not isinstance(phone_number, str) or not phone_number.strip():
                raise ValidationError("Phone number is required")
            if not password:
                raise ValidationError("Password is required")
            if profile_data is not None and not isinstance(profile_data, dict):
                raise ValidationError("Profile data must be an object")
            phone_number = phone_number.strip()
            # Phone numbers stay unique across active and archived users alike.
            if self._find_user_by_phone(phone_number):
                raise DuplicatePhoneNumberError("Phone number already registered")

            # Hash the password with a fresh salt; only the hash is ever stored.
            password_hash = hash_password(password)
            now = self._timestamp()
            # Build the role projection first; the base user is a subset of its keys.
            if role == ROLE_CLIENT:
                record = vars(Client(name.strip(), phone_number, now, profile_data=profile_data))
                section = 'clients'
            else:
                record = vars(Admin(name.strip(), phone_number, now))
                section = 'admins'
            user_id = record['id']
            base = {key: record[key] for key in BASE_USER_KEYS}

            with self._transaction():
                self._data['users'][user_id] = base
                self._data[section][user_id] = record
                self._write_slot(password_key(user_id), password_hash)
                self._log(ENTITY_USER, user_id, ACTION_CREATE, base, created_by or user_id, now)
        except HabitLogError as e:
            return self._failed('create_user', e)
        logger.info("Created %s '%s'.", role, user_id)
        return Result.ok(copy.deepcopy(record), 'User created successfully')

    def authenticate_user(self, phone_number: str, password: str) -> Result:
        """Checks a phone number and password and opens a 24 hour session.

        Unknown phone numbers and wrong passwords both fail with `InvalidCredentials`
        and take about the same time.

        Returns:
            Result: `{'user': ..., 'token': ...}` on success.
        """
        self.initialize()
        try:
            user = self._find_user_by_phone(phone_number, active_only=True)
            stored_hash = self._read(password_key(user['id'])) if user else None
            # Always verify, even for an unknown phone, so both failures take as long.
            if not verify_password(password, stored_hash) or not user:
                raise InvalidCredentialsError("Invalid credentials")

            now = self._now()
            # Sessions are persisted with the snapshot but never change-logged.
            session = vars(UserSession(user['id'], new_session_token(), now))
            with self._transaction():
                self._data['sessions'][session['id']] = session
                if user['role'] == ROLE_CLIENT and user['id'] in self._data['clients']:
                    self._data['clients'][user['id']]['last_active'] = format_timestamp(now)
        except HabitLogError as e:
            return self._failed('authenticate_user', e)
        return Result.ok(
            {'user': copy.deepcopy(user), 'token': session['token']},
            'Authentication successful'
        )

    def get_session(self, token: str) -> Optional[Dict]:
        """Returns the session for a token, or None if it is unknown or expired."""
        self.initialize()
        for session in self._data['sessions'].values():
            if session['token'] == token:
                if self._now() < parse_timestamp(session['expires_at']):
                    return copy.deepcopy(session)
                return None
        return None

    def get_user_for_token(self, token: str) -> Optional[Dict]:
        """Resolves a live session token to the active user it belongs to."""
        session = self.get_session(token)
        if not session:
            return None
        user = self._data['users'].get(session['user_id'])
        if not user or not user['is_active']:
            return None
        return copy.deepcopy(user)

    def get_user_by_id(self, user_id: str) -> Optional[Dict]:
        self.initialize()
        user = self._data['users'].get(user_id)
        return copy.deepcopy(user) if user else None

    def update_user(self, user_id: str, updates: Dict, updated_by: str) -> Result:
        """Merges profile changes into a user and its client or admin record.

        Args:
            user_id (str): The user to update.
            updates (dict): Any of `name`, `phone_number`, `is_active`, and for clients
                `profile_data` (merged key by key into the existing profile).
            updated_by (str): The acting user.

        Returns:
            Result: The updated base user record on success.
        """
        self.initialize()
        try:
            user = self._require_user(user_id)
            self._check_access(updated_by, user_id)
            allowed = USER_UPDATE_FIELDS + (CLIENT_UPDATE_FIELDS if user['role'] == ROLE_CLIENT else ())
            unknown = sorted(set(updates) - set(allowed))
            if unknown:
                raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")
            if 'name' in updates and (not isinstance(updates['name'], str) or not updates['name'].strip()):
                raise ValidationError("Name is required")
            if 'is_active' in updates and not isinstance(updates['is_active'], bool):
                raise ValidationError("is_active must be true or false")
            if 'profile_data' in updates and not isinstance(updates['profile_data'], dict):
                raise ValidationError("Profile data must be an object")
            if 'phone_number' in updates:
                if not isinstance(updates['phone_number'], str) or not updates['phone_number'].strip():
                    raise ValidationError("Phone number is required")
                # Keeping one's own number is not a duplicate.
                owner = self._find_user_by_phone(updates['phone_number'].strip())
                if owner and owner['id'] != user_id:
                    raise DuplicatePhoneNumberError("Phone number already registered")

            base_updates = {key: updates[key] for key in USER_UPDATE_FIELDS if key in updates}
            if 'phone_number' in base_updates:
                base_updates['phone_number'] = base_updates['phone_number'].strip()
            now = self._timestamp()
            with self._transaction():
                # Update the base user and its role projection together.
                user.update(base_updates)
                user['updated_at'] = now
                record = self._role_record(user_id)
                if record is not None:
                    record.update(base_updates)
                    record['updated_at'] = now
                    # Profile data is merged key by key, not replaced.
                    if 'profile_data' in updates:
                        record.setdefault('profile_data', {}).update(updates['profile_data'])
                self._log(ENTITY_USER, user_id, ACTION_UPDATE, updates, updated_by, now)
        except HabitLogError as e:
            return self._failed('update_user', e)
        return Result.ok(copy.deepcopy(self._data['users'][user_id]), 'User updated successfully')

    def change_password(self, user_id: str, new_password: str, changed_by: str) -> Result:
        """Replaces a user's password hash."""
        self.initialize()
        try:
            self._require_user(user_id)
            self._check_access(changed_by, user_id)
            if not new_password:
                raise ValidationError("Password is required")
            password_hash = hash_password(new_password)
            now = self._timestamp()
            with self._transaction():
                # The old hash is put back if the snapshot cannot be saved.
                self._write_slot(password_key(user_id), password_hash)
                self._data['users'][user_id]['updated_at'] = now
                record = self._role_record(user_id)
                if record is not None:
                    record['updated_at'] = now
                self._log(ENTITY_USER, user_id, ACTION_UPDATE, {'password_changed': True}, changed_by, now)
        except HabitLogError as e:
            return self._failed('change_password', e)
        return Result.ok(message='Password changed successfully')

    # Client management

    def get_all_clients(self, admin_id: Optional[str] = None) -> List[Dict]:
        """Returns active clients, optionally only those assigned to `admin_id`."""
        self.initialize()
        clients = [c for c in self._data['clients'].values() if c.get('is_active')]
        if admin_id:
            clients = [c for c in clients if c.get('admin_id') == admin_id]
        return copy.deepcopy(clients)

    def get_client_by_id(self, client_id: str) -> Optional[Dict]:
        self.initialize()
        client = self._data['clients'].get(client_id)
        return copy.deepcopy(client) if client else None

    def assign_client_to_admin(self, client_id: str, admin_id: str, assigned_by: str) -> Result:
        """Moves a client to a new admin.

        The client is removed from every other admin's `client_ids`, its `admin_id` is set,
        and it is added to the new admin's list exactly once, all in one step.

        Returns:
            Result: The updated client record on success; `NotFound` if either id is
                unknown, `AccessDenied` if `assigned_by` is not an admin.
        """
        self.initialize()
        try:
            client = self._data['clients'].get(client_id)
            admin = self._data['admins'].get(admin_id)
            if not client or not admin:
                raise NotFoundError("Client or admin not found")
            # Assignment is an admin-wide operation, not scoped by `can_access`:
            # any active admin may assign any client.
            assigner = self._actor(assigned_by)
            if not assigner or assigner.get('role') != ROLE_ADMIN:
                raise AccessDeniedError(f"User '{assigned_by}' may not assign clients")

            previous_admin_id = client.get('admin_id')
            now = self._timestamp()
            with self._transaction():
                # Drop the client from every list first so it ends up in exactly one.
                for other in self._data['admins'].values():
                    if client_id in other.get('client_ids', []):
                        other['client_ids'] = [cid for cid in other['client_ids'] if cid != client_id]
                admin['client_ids'].append(client_id)
                client['admin_id'] = admin_id
                client['updated_at'] = now
                self._data['users'][client_id]['updated_at'] = now
                self._log(
                    ENTITY_CLIENT, client_id, ACTION_UPDATE,
                    {'admin_id': admin_id, 'previous_admin_id': previous_admin_id},
                    assigned_by, now
                )
        except HabitLogError as e:
            return self._failed('assign_client_to_admin', e)
        if previous_admin_id and previous_admin_id not in (admin_id, assigned_by):
            logger.warning(
                "Client %s moved from admin %s to %s by %s.",
                client_id, previous_admin_id, admin_id, assigned_by
            )
        return Result.ok(copy.deepcopy(client), 'Client assigned successfully')

    def archive_client(self, client_id: str, archived_by: str) -> Result:
        """Marks a client inactive. The record and its history are kept."""
        self.initialize()
        try:
            client = self._data['clients'].get(client_id)
            if not client:
                raise NotFoundError(f"Client '{client_id}' not found")
            self._check_access(archived_by, client_id)
            now = self._timestamp()
            with self._transaction():
                client['is_active'] = False
                client['updated_at'] = now
                self._data['users'][client_id]['is_active'] = False
                self._data['users'][client_id]['updated_at'] = now
                self._log(ENTITY_CLIENT, client_id, ACTION_UPDATE, {'is_active': False}, archived_by, now)
        except HabitLogError as e:
            return self._failed('archive_client', e)
        return Result.ok(copy.deepcopy(client), 'Client archived successfully')

    # Daily habits

    @staticmethod
    def _validate_habits(habits: Dict) -> None:
        date = habits.get('date')
        if not isinstance(date, str) or not _DATE_PATTERN.match(date):
            raise ValidationError("Date must be in YYYY-MM-DD format")
        try:
            datetime.strptime(date, '%Y-%m-%d')
        except ValueError as e:
            raise ValidationError(f"Invalid date '{date}'", original_error=e) from e

        unknown = sorted(set(habits) - set(HABIT_FIELDS) - set(HABIT_METADATA_KEYS))
        if unknown:
            raise ValidationError(f"Unknown habit fields: {', '.join(unknown)}")
        for name in YES_NO_FIELDS:
            if habits.get(name) not in YES_NO_VALUES:
                raise ValidationError(f"{name} must be 'yes', 'no' or empty")
        for name in TEXT_FIELDS:
            value = habits.get(name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be text")
        for name in ENERGY_FIELDS:
            value = habits.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or not ENERGY_MIN <= value <= ENERGY_MAX:
                raise ValidationError(f"{name} must be a whole number from {ENERGY_MIN} to {ENERGY_MAX}")

    def save_daily_habits(self, habits: Dict, saved_by: str, expected_updated_at: Optional[str] = None) -> Result:
        """Creates or replaces the habit record for `habits['user_id']` on `habits['date']`.

        Args:
            habits (dict): `user_id`, `date` and any habit fields. Fields left out are
                stored empty.
            saved_by (str): The acting user. When it is not the owner (an admin editing on
                behalf of a client), it is recorded as `last_edited_by`.
            expected_updated_at (str, optional): The `updated_at` the caller last saw. If the
                stored record has changed since, the save still wins but a warning is logged.

        Returns:
            Result: The stored habit record on success.
        """
        self.initialize()
        try:
            user_id = habits.get('user_id')
            self._require_user(user_id)
            self._check_access(saved_by, user_id)
            self._validate_habits(habits)

            # The id is derived from user and date, so a second save of the day replaces the first.
            date = habits['date']
            habit_id = habit_id_for(user_id, date)
            existing = self._data['daily_habits'].get(habit_id)
            now = self._timestamp()
            # Keep the original created_at; mark edits made on behalf of the owner.
            record = vars(DailyHabits(
                user_id, date, now,
                created_at=existing['created_at'] if existing else None,
                last_edited_by=saved_by if saved_by != user_id else None,
                **{name: habits.get(name) for name in HABIT_FIELDS}
            ))
            # Someone saved this day after the caller read it. Last write still wins.
            overwritten = None
            if existing and expected_updated_at and existing['updated_at'] != expected_updated_at:
                overwritten = existing['updated_at']

            with self._transaction():
                self._data['daily_habits'][habit_id] = record
                if user_id in self._data['clients']:
                    self._data['clients'][user_id]['last_active'] = now
                self._log(
                    ENTITY_DAILY_HABITS, habit_id,
                    ACTION_UPDATE if existing else ACTION_CREATE,
                    record, saved_by, now
                )
        except HabitLogError as e:
            return self._failed('save_daily_habits', e)

        message = 'Habits saved successfully'
        if overwritten:
            logger.warning(
                "Habit %s changed at %s after %s was read; last write wins.",
                habit_id, overwritten, expected_updated_at
            )
            message = f"Habits saved; a newer edit from {overwritten} was overwritten"
        return Result.ok(copy.deepcopy(record), message)

    def get_daily_habits(self, user_id: str, page: int = 1, limit: int = 50, requested_by: Optional[str] = None) -> Page:
        """Returns one page of a user's habits, newest date first."""
        self.initialize()
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        self._check_read_access(requested_by, user_id)
        user_habits = sorted(
            (h for h in self._data['daily_habits'].values() if h['user_id'] == user_id),
            key=lambda habit: habit['date'],
            reverse=True
        )
        start = (page - 1) * limit
        return Page(copy.deepcopy(user_habits[start:start + limit]), len(user_habits), page, limit)

    def get_daily_habit_by_date(self, user_id: str, date: str, requested_by: Optional[str] = None) -> Optional[Dict]:
        self.initialize()
        self._check_read_access(requested_by, user_id)
        habit = self._data['daily_habits'].get(habit_id_for(user_id, date))
        return copy.deepcopy(habit) if habit else None

    # Bloodwork

    def save_bloodwork_document(
        self,
        user_id: str,
        file_name: str,
        file_type: str,
        file_size: int,
        uploaded_by: str,
        content: Optional[bytes] = None,
        notes: Optional[str] = None,
    ) -> Result:
        """Stores a bloodwork document for a user.

        The record only keeps a `blob://bloodwork/<id>` reference. When `content` is
        given, the bytes are written to the backing store under that reference.

        Args:
            user_id (str): The document owner.
            file_name (str): Original file name.
            file_type (str): MIME type; PDF, DOCX, plain text, JPEG or PNG.
            file_size (int): Size in bytes, at most 10 MiB.
            uploaded_by (str): The acting user.
            content (bytes, optional): The file bytes; their length must equal `file_size`.
            notes (str, optional): Free-form notes.

        Returns:
            Result: The stored document record on success.
        """
        self.initialize()
        try:
            self._require_user(user_id)
            self._check_access(uploaded_by, user_id)
            if not isinstance(file_name, str) or not file_name.strip():
                raise ValidationError("File name is required")
            if file_type not in ALLOWED_BLOODWORK_TYPES:
                raise ValidationError("Invalid file type. Only PDF, DOCX, TXT, JPEG, and PNG files are allowed.")
            if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size <= 0:
                raise ValidationError("File size must be positive")
            if file_size > MAX_BLOODWORK_SIZE:
                raise ValidationError("File size exceeds 10MB limit.")
            if content is not None and len(content) != file_size:
                raise ValidationError("File size does not match the uploaded content")

            now = self._timestamp()
            document = vars(BloodworkDocument(user_id, file_name.strip(), file_type, file_size, now, notes=notes))
            with self._transaction():
                # The bytes live in their own slot; the record only holds the blob:// reference.
                if content is not None:
                    self._write_slot(blob_key(document['id']), base64.b64encode(content).decode('ascii'))
                self._data['bloodwork_documents'][document['id']] = document
                if user_id in self._data['clients']:
                    self._data['clients'][user_id]['last_active'] = now
                self._log(ENTITY_BLOODWORK, document['id'], ACTION_CREATE, document, uploaded_by, now)
        except HabitLogError as e:
            return self._failed('save_bloodwork_document', e)
        return Result.ok(copy.deepcopy(document), 'Bloodwork uploaded successfully')

    def get_bloodwork_documents(self, user_id: str, requested_by: Optional[str] = None) -> List[Dict]:
        """Returns a user's bloodwork documents, most recent upload first."""
        self.initialize()
        self._check_read_access(requested_by, user_id)
        documents = [d for d in self._data['bloodwork_documents'].values() if d['user_id'] == user_id]
        documents.sort(key=lambda doc: parse_timestamp(doc['upload_date']), reverse=True)
        return copy.deepcopy(documents)

    def get_bloodwork_content(self, doc_id: str, requested_by: Optional[str] = None) -> Optional[bytes]:
        """Returns the stored bytes of a document, or None if there are none."""
        self.initialize()
        document = self._data['bloodwork_documents'].get(doc_id)
        if not document:
            return None
        self._check_read_access(requested_by, document['user_id'])
        blob = self._read(blob_key(doc_id))
        return base64.b64decode(blob) if blob else None

    # Change log, sync and reporting

    def get_change_logs(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict]:
        self.initialize()
        return copy.deepcopy(self._change_log.query(entity_type, entity_id, limit))

    def get_data_for_sync(self, user_id: str, last_sync_at: Optional[str] = None, requested_by: Optional[str] = None) -> Dict:
        """Returns everything about a user that changed after `last_sync_at`.

        Args:
            user_id (str): The user being synced.
            last_sync_at (str, optional): Timestamp of the previous sync. Defaults to the
                epoch, which returns everything.
            requested_by (str, optional): If given, must be allowed to access `user_id`.

        Returns:
            dict: `habits` and `bloodwork` updated strictly after `last_sync_at`, the
                client `profile` (None for admins), the matching change log `changes`
                (oldest first) and `synced_at`, the time of this sync.
        """
        self.initialize()
        self._check_read_access(requested_by, user_id)
        try:
            sync_time = parse_timestamp(last_sync_at) if last_sync_at else EPOCH
        except ValueError as e:
            raise ValidationError(f"Invalid sync timestamp '{last_sync_at}'", original_error=e) from e

        def changed(record):
            return parse_timestamp(record['updated_at']) > sync_time

        # Compare parsed datetimes; stored strings may differ in precision or offset.
        habits = [h for h in self._data['daily_habits'].values() if h['user_id'] == user_id and changed(h)]
        habits.sort(key=lambda habit: parse_timestamp(habit['updated_at']))
        bloodwork = [d for d in self._data['bloodwork_documents'].values() if d['user_id'] == user_id and changed(d)]
        bloodwork.sort(key=lambda doc: parse_timestamp(doc['updated_at']))
        # Entries whose habit or document no longer resolves are skipped.
        changes = [
            entry for entry in self._change_log.snapshot()
            if parse_timestamp(entry['timestamp']) > sync_time and self._entry_owner(entry) == user_id
        ]
        return copy.deepcopy({
            'habits': habits,
            'bloodwork': bloodwork,
            'profile': self._data['clients'].get(user_id),
            'changes': changes,
            'synced_at': self._timestamp(),
        })

    def get_admin_dashboard_data(self, admin_id: str) -> Dict:
        """Aggregates an admin's clients and today's activity.

        Raises:
            NotFoundError: If `admin_id` is not an admin.
        """
        self.initialize()
        admin = self._data['admins'].get(admin_id)
        if not admin:
            raise NotFoundError(f"Admin '{admin_id}' not found")

        # Archived clients stay in `client_ids` but are left out, as in `get_all_clients`.
        clients = [
            self._data['clients'][cid] for cid in admin['client_ids']
            if cid in self._data['clients'] and self._data['clients'][cid].get('is_active')
        ]
        client_ids = {c['id'] for c in clients}
        # "Today" is the store clock's UTC date.
        today = self._now().date().isoformat()
        active_today = sum(1 for c in clients if (c.get('last_active') or '').startswith(today))
        pending_habits = sum(
            1 for c in clients if habit_id_for(c['id'], today) not in self._data['daily_habits']
        )
        new_bloodwork = sum(
            1 for d in self._data['bloodwork_documents'].values()
            if d['user_id'] in client_ids and d['upload_date'].startswith(today)
        )
        recent_activity = []
        for entry in self._change_log.newest_first():
            if self._entry_owner(entry) in client_ids:
                recent_activity.append(entry)
                if len(recent_activity) >= DASHBOARD_ACTIVITY_LIMIT:
                    break

        return copy.deepcopy({
            'clients': clients,
            'recent_activity': recent_activity,
            'stats': {
                'total_clients': len(clients),
                'active_today': active_today,
                'pending_habits': pending_habits,
                'new_bloodwork': new_bloodwork,
            },
        })

    # Maintenance

    def export_data(self) -> str:
        """Returns a JSON backup of all records and the change log.

        Sessions and password hashes are left out.
        """
        self.initialize()
        data = {name: section for name, section in self._data.items() if name != 'sessions'}
        return json.dumps({
            'data': data,
            'change_logs': self._change_log.snapshot(),
            'exported_at': self._timestamp(),
        }, indent=2)

    def clear_all_data(self) -> None:
        """Deletes every persisted record and starts over from the seed data."""
        self.initialize()
        # Password and bloodwork slots live outside the snapshot and are removed by key.
        keys = [DATABASE_KEY, CHANGE_LOGS_KEY]
        keys.extend(password_key(user_id) for user_id in self._data['users'])
        keys.extend(blob_key(doc_id) for doc_id in self._data['bloodwork_documents'])
        try:
            self._backend.remove_many(keys)
        except OSError as e:
            raise PersistenceError("Failed to clear stored data", original_error=e) from e
        logger.warning("All stored data cleared. Reseeding default data.")
        self._seed_default_data()
