"""
This module provides password hashing, session tokens and the access rule for HabitLog.

- Passwords are hashed with scrypt (from `cryptography`) and a random per-user salt.
  Verification is constant time, and `verify_password` can be run against a dummy record
  so that an unknown phone number costs as much as a wrong password.
- Session tokens are random URL-safe strings.
- `can_access` is the single authorization rule used by every store operation that
  acts on behalf of a user.
"""
# habitlog/auth.py

import json
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from habitlog.models import ROLE_ADMIN

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32


def _kdf(salt: bytes, n: int, r: int, p: int) -> Scrypt:
    return Scrypt(salt=salt, length=KEY_LENGTH, n=n, r=r, p=p)


def hash_password(password: str) -> str:
    """Hashes a password and returns the serialized hash record.

    Args:
        password (str): The plaintext password.

    Returns:
        str: A JSON document holding the algorithm parameters, salt and derived key.
    """
    salt = os.urandom(16)
    derived = _kdf(salt, SCRYPT_N, SCRYPT_R, SCRYPT_P).derive(password.encode())
    return json.dumps({
        'algorithm': 'scrypt',
        'n': SCRYPT_N,
        'r': SCRYPT_R,
        'p': SCRYPT_P,
        'salt': salt.hex(),
        'hash': derived.hex(),
    })


def verify_password(password: str, stored: Optional[str]) -> bool:
    """Checks a password against a serialized hash record in constant time.

    A missing or unreadable record is checked against a throwaway hash, so the call
    takes about as long as a real check, and then reported as a mismatch.
    """
    record = None
    if stored:
        try:
            record = json.loads(stored)
        except json.JSONDecodeError:
            record = None
    if not record or record.get('algorithm') != 'scrypt':
        record = _DUMMY_RECORD
        matched_real_record = False
    else:
        matched_real_record = True

    kdf = _kdf(bytes.fromhex(record['salt']), record['n'], record['r'], record['p'])
    try:
        kdf.verify(password.encode(), bytes.fromhex(record['hash']))
    except InvalidKey:
        return False
    return matched_real_record


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def can_access(actor: Optional[dict], target_user_id: str) -> bool:
    """Decides whether `actor` may read or change the records of `target_user_id`.

    Users may access their own records, and an admin may access the records of the
    clients listed in its `client_ids`.

    Args:
        actor (dict): The acting user's role record (an admin record carries `client_ids`),
            or None if the actor could not be resolved.
        target_user_id (str): The owner of the records being accessed.

    Returns:
        bool: True if access is allowed.
    """
    if not actor:
        return False
    if actor.get('id') == target_user_id:
        return True
    if actor.get('role') == ROLE_ADMIN:
        return target_user_id in actor.get('client_ids', [])
    return False


_DUMMY_RECORD = json.loads(hash_password(secrets.token_hex(16)))
