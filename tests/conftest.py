import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directories for tests before any imports that might initialize runtime
_test_tmp_dir = Path(tempfile.mkdtemp(prefix="vitrine_test_"))
_admin_dir = _test_tmp_dir / "admin"
_admin_dir.mkdir()
(_admin_dir / "login.html").write_text("<h1>Sign in</h1>")
(_admin_dir / "index.html").write_text("<h1>Dashboard</h1>")
(_admin_dir / "orders.html").write_text("<h1>Orders</h1>")
(_admin_dir / "styles.css").write_text("body { margin: 0; }")

os.environ.setdefault("STATE_DIR", str(_test_tmp_dir / "state"))
os.environ.setdefault("ADMIN_STATIC_DIR", str(_admin_dir))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("HOUSEKEEPING_INTERVAL_SECONDS", "0")
# Keep argon2 cheap so the suite stays fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vitrine.service.runtime import reset_runtime_for_tests  # noqa: E402

ADMIN_USERNAME = "owner"
ADMIN_PASSWORD = "correct horse battery"


class FakeClock:
    """Callable UTC clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingEmail:
    """Stands in for EmailService and keeps every message it was asked to send."""

    is_configured = True

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    def _record(self, kind: str, to_email: str, **extra) -> bool:
        self.sent.append({"kind": kind, "to": to_email, **extra})
        return not self.fail

    def send_two_factor_code(self, to_email, code, *, purpose, ttl_minutes):
        return self._record("code", to_email, code=code, purpose=purpose, ttl_minutes=ttl_minutes)

    def send_password_changed(self, to_email):
        return self._record("password_changed", to_email)

    def send_two_factor_enabled(self, to_email):
        return self._record("two_factor_enabled", to_email)

    def last_code(self, purpose: str | None = None) -> str:
        codes = [
            m["code"]
            for m in self.sent
            if m["kind"] == "code" and (purpose is None or m["purpose"] == purpose)
        ]
        assert codes, "no code was sent"
        return codes[-1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_runtime_state(clock):
    runtime = reset_runtime_for_tests(clock=clock)
    yield runtime
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def email(runtime):
    recorder = RecordingEmail()
    runtime.email = recorder
    runtime.auth.email = recorder
    return recorder


@pytest.fixture
def admin(runtime):
    return runtime.auth.create_admin(ADMIN_USERNAME, ADMIN_PASSWORD)


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
