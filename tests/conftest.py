import pytest

from sqldiag.network import PingReply

from .fakes import FakeFactory, ScriptedPing

TARGET = "Server=tcp:db01.example.com,1433;Database=master;User Id=diag;Password=secret"


@pytest.fixture
def target() -> str:
    return TARGET


@pytest.fixture
def fake_factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def ok_ping() -> ScriptedPing:
    return ScriptedPing([PingReply(success=True, round_trip_ms=ms) for ms in (10.0, 12.0, 14.0, 16.0, 18.0)])
