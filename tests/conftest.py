import asyncio
import inspect
import os
import re
import sys
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("RESET_CODE_CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import Settings  # noqa: E402
from gatekeep.service.passwords import SecretHasher  # noqa: E402
from gatekeep.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402

_CODE_RE = re.compile(r"Your reset code is: (\d{6})")


class FrozenClock:
    """Deterministic clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier double that keeps every delivered message."""

    is_configured = True

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []
        self.fail = False
        self.raise_exc: Exception | None = None
        self.delay = 0.0

    def deliver(self, destination: str, subject: str, payload: str) -> bool:
        if self.delay:
            time.sleep(self.delay)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail:
            return False
        self.messages.append((destination, subject, payload))
        return True

    @property
    def last_code(self) -> str | None:
        if not self.messages:
            return None
        match = _CODE_RE.search(self.messages[-1][2])
        return match.group(1) if match else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    """Settings with cheap hashing and a fixed signing secret."""
    return Settings(
        state_dir=str(tmp_path),
        persist_memory_store=False,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        reset_code_cleanup_interval_seconds=0,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier, clock):
    return Runtime(settings, store=memory_store, notifier=notifier, clock=clock)


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
