from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from redis import Redis

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation, RecordNotFound
from gatekeep.storage.models import (
    Account,
    LockState,
    defaced_identifiers,
    from_epoch,
    to_epoch,
)

_MUTABLE_PROFILE_FIELDS = frozenset({"phone", "role", "last_login_at", "is_active"})


def _encode_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return _encode_ts(value)
    if isinstance(value, float):
        return f"{value:.6f}"
    return str(value)


def _encode_ts(value: datetime) -> str:
    return f"{to_epoch(value):.6f}"


class RedisStore:
    """Credential store on Redis hashes.

    Layout: ``<ns>:account:<id>`` holds the account hash; ``<ns>:email:<email>``
    and ``<ns>:username:<lowercased username>`` map identifiers to ids. Every
    compound mutation is a Lua script so it stays atomic across worker
    processes sharing the instance.
    """

    _CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then return 'email' end
if redis.call('EXISTS', KEYS[3]) == 1 then return 'username' end
redis.call('SET', KEYS[2], ARGV[1])
redis.call('SET', KEYS[3], ARGV[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
return 'ok'
"""

    # ARGV: id, namespace, new email or '', new username or '', field/value pairs...
    _UPDATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 'missing' end
local id = ARGV[1]
local ns = ARGV[2]
local new_email = ARGV[3]
local new_username = ARGV[4]
local cur = redis.call('HMGET', KEYS[1], 'email', 'username')
if new_email ~= '' then
  local owner = redis.call('GET', ns .. ':email:' .. new_email)
  if owner and owner ~= id then return 'email' end
end
if new_username ~= '' then
  local owner = redis.call('GET', ns .. ':username:' .. string.lower(new_username))
  if owner and owner ~= id then return 'username' end
end
if new_email ~= '' and new_email ~= cur[1] then
  redis.call('DEL', ns .. ':email:' .. cur[1])
  redis.call('SET', ns .. ':email:' .. new_email, id)
  redis.call('HSET', KEYS[1], 'email', new_email)
end
if new_username ~= '' and new_username ~= cur[2] then
  redis.call('DEL', ns .. ':username:' .. string.lower(cur[2]))
  redis.call('SET', ns .. ':username:' .. string.lower(new_username), id)
  redis.call('HSET', KEYS[1], 'username', new_username)
end
if #ARGV > 4 then
  redis.call('HSET', KEYS[1], unpack(ARGV, 5))
end
return 'ok'
"""

    # ARGV: threshold, lock_seconds, now
    _FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return {-1, ''} end
local data = redis.call('HMGET', KEYS[1], 'failed_attempts', 'lock_until')
local attempts = tonumber(data[1]) or 0
local lock_until = tonumber(data[2])
local now = tonumber(ARGV[3])
if lock_until and lock_until <= now then
  attempts = 0
  lock_until = nil
end
attempts = attempts + 1
if attempts >= tonumber(ARGV[1]) and not lock_until then
  lock_until = now + tonumber(ARGV[2])
end
local encoded = ''
if lock_until then encoded = string.format('%.6f', lock_until) end
redis.call('HSET', KEYS[1], 'failed_attempts', tostring(attempts),
  'lock_until', encoded, 'updated_at', ARGV[3])
return {attempts, encoded}
"""

    # ARGV: now
    _RELEASE_LOCK_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then return -1 end
local lock_until = tonumber(redis.call('HGET', KEYS[1], 'lock_until'))
if lock_until and lock_until <= tonumber(ARGV[1]) then
  redis.call('HSET', KEYS[1], 'failed_attempts', '0', 'lock_until', '',
    'updated_at', ARGV[1])
  return 1
end
return 0
"""

    # ARGV: expected hash or ''
    _CLEAR_CODE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'reset_code_hash')
if not current or current == '' then return 0 end
if ARGV[1] ~= '' and current ~= ARGV[1] then return 0 end
redis.call('HSET', KEYS[1], 'reset_code_hash', '', 'reset_code_expires_at', '')
return 1
"""

    # ARGV: now
    _CLEAR_EXPIRED_CODE_SCRIPT = """
local expires = tonumber(redis.call('HGET', KEYS[1], 'reset_code_expires_at'))
if expires and expires <= tonumber(ARGV[1]) then
  redis.call('HSET', KEYS[1], 'reset_code_hash', '', 'reset_code_expires_at', '')
  return 1
end
return 0
"""

    # ARGV: expected code hash, new password hash, now
    _COMPLETE_RESET_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'reset_code_hash', 'reset_code_expires_at')
if not data[1] or data[1] == '' or data[1] ~= ARGV[1] then return 0 end
local expires = tonumber(data[2])
if not expires or expires <= tonumber(ARGV[3]) then return 0 end
redis.call('HSET', KEYS[1],
  'password_hash', ARGV[2],
  'password_changed_at', ARGV[3],
  'reset_code_hash', '',
  'reset_code_expires_at', '',
  'failed_attempts', '0',
  'lock_until', '',
  'updated_at', ARGV[3])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "gatekeep",
        socket_timeout: float = 5.0,
    ) -> None:
        self.logger = get_logger(__name__)
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._create = self.client.register_script(self._CREATE_SCRIPT)
        self._update = self.client.register_script(self._UPDATE_SCRIPT)
        self._failed_attempt = self.client.register_script(self._FAILED_ATTEMPT_SCRIPT)
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)
        self._clear_code = self.client.register_script(self._CLEAR_CODE_SCRIPT)
        self._clear_expired_code = self.client.register_script(
            self._CLEAR_EXPIRED_CODE_SCRIPT
        )
        self._complete_reset = self.client.register_script(self._COMPLETE_RESET_SCRIPT)

    # -- keys --------------------------------------------------------------

    def _account_key(self, account_id: str) -> str:
        return f"{self.namespace}:account:{account_id}"

    def _email_key(self, email: str) -> str:
        return f"{self.namespace}:email:{email.strip().lower()}"

    def _username_key(self, username: str) -> str:
        return f"{self.namespace}:username:{username.lower()}"

    def _require(self, account_id: str) -> str:
        key = self._account_key(account_id)
        if not self.client.exists(key):
            raise RecordNotFound(account_id)
        return key

    def verify_connection(self) -> None:
        self.client.ping()

    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()

    # -- reads -------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.client.hgetall(self._account_key(account_id))
        if not data:
            return None
        return Account.from_record(data)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        account_id = self.client.get(self._email_key(email))
        return self.get_account(account_id) if account_id else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        account_id = self.client.get(self._username_key(username))
        return self.get_account(account_id) if account_id else None

    # -- account lifecycle -------------------------------------------------

    def create_account(self, account: Account) -> Account:
        record = account.to_record()
        pairs: list[str] = []
        for name, value in record.items():
            pairs.extend([name, _encode_value(value)])
        result = self._create(
            keys=[
                self._account_key(account.id),
                self._email_key(account.email),
                self._username_key(account.username),
            ],
            args=[account.id, *pairs],
        )
        if result in ("email", "username"):
            raise ConstraintViolation(f"{result} already exists", {"field": result})
        return account

    def _run_update(
        self,
        account_id: str,
        *,
        email: Optional[str],
        username: Optional[str],
        fields: Dict[str, Any],
    ) -> Account:
        pairs: list[str] = []
        for name, value in fields.items():
            pairs.extend([name, _encode_value(value)])
        result = self._update(
            keys=[self._account_key(account_id)],
            args=[
                account_id,
                self.namespace,
                email.strip().lower() if email else "",
                username or "",
                *pairs,
            ],
        )
        if result == "missing":
            raise RecordNotFound(account_id)
        if result in ("email", "username"):
            raise ConstraintViolation(f"{result} already exists", {"field": result})
        account = self.get_account(account_id)
        if account is None:
            raise RecordNotFound(account_id)
        return account

    def update_account(self, account_id: str, *, now: datetime, **changes) -> Account:
        email = changes.pop("email", None)
        username = changes.pop("username", None)
        unknown = set(changes) - _MUTABLE_PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        changes["updated_at"] = now
        return self._run_update(account_id, email=email, username=username, fields=changes)

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        now: datetime,
        *,
        clear_lockout: bool = False,
    ) -> Account:
        key = self._require(account_id)
        mapping = {
            "password_hash": password_hash,
            "password_changed_at": _encode_ts(now),
            "updated_at": _encode_ts(now),
        }
        if clear_lockout:
            mapping.update(failed_attempts="0", lock_until="")
        self.client.hset(key, mapping=mapping)
        account = self.get_account(account_id)
        if account is None:
            raise RecordNotFound(account_id)
        return account

    def deactivate_account(self, account_id: str, now: datetime) -> Account:
        username, email = defaced_identifiers(account_id)
        return self._run_update(
            account_id,
            email=email,
            username=username,
            fields={
                "is_active": False,
                "reset_code_hash": None,
                "reset_code_expires_at": None,
                "updated_at": now,
            },
        )

    # -- lockout -----------------------------------------------------------

    def register_failed_attempt(
        self, account_id: str, threshold: int, lock_seconds: int, now: datetime
    ) -> LockState:
        attempts, lock_until = self._failed_attempt(
            keys=[self._account_key(account_id)],
            args=[threshold, lock_seconds, _encode_ts(now)],
        )
        if int(attempts) < 0:
            raise RecordNotFound(account_id)
        return LockState(failed_attempts=int(attempts), lock_until=from_epoch(lock_until))

    def release_expired_lock(self, account_id: str, now: datetime) -> Optional[Account]:
        result = self._release_lock(
            keys=[self._account_key(account_id)], args=[_encode_ts(now)]
        )
        if int(result) < 0:
            return None
        return self.get_account(account_id)

    def reset_failed_attempts(self, account_id: str) -> None:
        key = self._require(account_id)
        self.client.hset(key, mapping={"failed_attempts": "0", "lock_until": ""})

    # -- recovery codes ----------------------------------------------------

    def set_reset_code(
        self, account_id: str, code_hash: str, expires_at: datetime
    ) -> None:
        key = self._require(account_id)
        self.client.hset(
            key,
            mapping={
                "reset_code_hash": code_hash,
                "reset_code_expires_at": _encode_ts(expires_at),
            },
        )

    def clear_reset_code(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        result = self._clear_code(
            keys=[self._account_key(account_id)], args=[expected_hash or ""]
        )
        return bool(int(result))

    def complete_password_reset(
        self,
        account_id: str,
        expected_code_hash: str,
        password_hash: str,
        now: datetime,
    ) -> bool:
        result = self._complete_reset(
            keys=[self._account_key(account_id)],
            args=[expected_code_hash, password_hash, _encode_ts(now)],
        )
        return bool(int(result))

    def cleanup_expired_reset_codes(self, now: datetime) -> int:
        cleared = 0
        for key in self.client.scan_iter(match=f"{self.namespace}:account:*"):
            cleared += int(self._clear_expired_code(keys=[key], args=[_encode_ts(now)]))
        return cleared
