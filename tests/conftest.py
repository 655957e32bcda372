from datetime import datetime, timedelta, timezone

import pytest

from services.otp_service import CodeStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    async def send_code(self, to_address, code, expires_in):
        self.sent.append((to_address, code, expires_in))
        return "<fake@please.nyc>"


class FailingNotifier:
    def __init__(self) -> None:
        self.attempts = 0

    async def send_code(self, to_address, code, expires_in):
        self.attempts += 1
        raise ConnectionRefusedError("relay unreachable")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CodeStore(ttl_seconds=15, code_length=9, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()
