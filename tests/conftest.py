import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment must be in place before anything imports authcore.config
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)
os.environ.pop("SMS_GATEWAY_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from authcore.service.hashing import CredentialHasher  # noqa: E402
from authcore.service.results import Result  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingEmail:
    """Captures outgoing mail; set ``fail`` to simulate an SMTP outage."""

    def __init__(self, base_url: str = "https://app.test"):
        self.base_url = base_url
        self.sent: list[dict] = []
        self.fail = False

    def link(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(self, template, to, subject, data) -> Result[None]:
        from authcore.service.errors import ResponseCode

        if self.fail:
            return Result.failure(ResponseCode.FAILED_DEPENDENCY)
        self.sent.append({"template": template, "to": to, "subject": subject, "data": dict(data)})
        return Result.success()

    def last_link_token(self) -> str:
        """The ``uid/hashUid`` part of the most recent link."""
        link = self.sent[-1]["data"]["link"]
        return "/".join(link.rsplit("/", 2)[-2:])


class RecordingSms:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send(self, to: str, message: str) -> Result[None]:
        from authcore.service.errors import ResponseCode

        if self.fail:
            return Result.failure(ResponseCode.FAILED_DEPENDENCY)
        self.sent.append((to, message))
        return Result.success()

    def last_code(self) -> str:
        return self.sent[-1][1].split("is ", 1)[1].split(".", 1)[0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    """argon2id with minimal cost parameters so the suite stays fast."""
    return CredentialHasher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def email_sender():
    return RecordingEmail()


@pytest.fixture
def sms_sender():
    return RecordingSms()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path):
    # A fresh state directory per test keeps persisted users from leaking across tests.
    # A private MonkeyPatch lets the test's own monkeypatch undo before teardown runs.
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
        reset_runtime_for_tests()
        yield
        reset_runtime_for_tests()


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
