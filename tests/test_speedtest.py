from __future__ import annotations

import asyncio

import pytest

import tmistats.speedtest as speedtest
from conftest import SPEEDTEST_OUTPUT
from tmistats.speedtest import (
    SpeedTestError,
    SpeedTestNotInstalledError,
    SpeedTestResult,
    parse_result,
)


class FakeProcess:
    def __init__(self, returncode: int, stdout: str, stderr: str = ""):
        self.pid = 4242
        self.returncode = returncode
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()

    async def communicate(self):
        return self._stdout, self._stderr


@pytest.fixture
def fake_exec(monkeypatch):
    calls = []

    def install(process: FakeProcess):
        async def create_subprocess_exec(*args, **kwargs):
            calls.append(args)
            return process

        monkeypatch.setattr(speedtest.asyncio, "create_subprocess_exec", create_subprocess_exec)
        return calls

    return install


def test_parse_result(speedtest_output):
    result = parse_result(speedtest_output)

    assert result.ping.latency == pytest.approx(31.447)
    assert result.download.bandwidth == 31256512
    assert result.download.latency.iqm == pytest.approx(88.731)
    assert result.upload.bytes == 50233824
    assert result.packet_loss == 0
    assert result.server.name == "Example Fiber"
    assert result.server.ip == "203.0.113.7"
    assert result.result.persisted is True
    assert result.result.url.startswith("https://www.speedtest.net/result/")


def test_result_json_round_trip(speedtest_output):
    result = parse_result(speedtest_output)
    raw = result.to_json()

    assert '"packetLoss"' in raw
    assert SpeedTestResult.from_json(raw) == result


@pytest.mark.parametrize(
    "output",
    [
        "",
        "not json",
        '{"type": "log", "message": "Configuration - Couldn\'t resolve host name"}',
        SPEEDTEST_OUTPUT.replace('"bandwidth": 4312851', '"bandwidth": "fast"'),
    ],
)
def test_parse_result_rejects_bad_output(output):
    with pytest.raises(SpeedTestError):
        parse_result(output)


def test_run_parses_output(fake_exec, speedtest_output):
    calls = fake_exec(FakeProcess(0, speedtest_output))

    result = asyncio.run(speedtest.run())

    assert result.upload.bandwidth == 4312851
    assert calls == [("speedtest", "--format=json-pretty")]


def test_run_uses_configured_command(fake_exec, speedtest_output):
    calls = fake_exec(FakeProcess(0, speedtest_output))
    asyncio.run(speedtest.run("/opt/ookla/speedtest"))
    assert calls[0][0] == "/opt/ookla/speedtest"


def test_run_nonzero_exit(fake_exec):
    fake_exec(FakeProcess(2, "", "[error] Limit reached"))

    with pytest.raises(SpeedTestError) as excinfo:
        asyncio.run(speedtest.run())

    assert not isinstance(excinfo.value, SpeedTestNotInstalledError)
    assert "Limit reached" in str(excinfo.value)


def test_run_unparseable_output(fake_exec):
    fake_exec(FakeProcess(0, "<html>captive portal</html>"))

    with pytest.raises(SpeedTestError):
        asyncio.run(speedtest.run())


def test_run_missing_binary():
    with pytest.raises(SpeedTestNotInstalledError) as excinfo:
        asyncio.run(speedtest.run("tmi-stats-no-such-speedtest-binary"))

    message = str(excinfo.value)
    assert "tmi-stats-no-such-speedtest-binary" in message
    assert "https://www.speedtest.net/apps/cli" in message
    assert "EULA" in message


def test_run_binary_not_executable(monkeypatch):
    async def create_subprocess_exec(*args, **kwargs):
        raise PermissionError(13, "Permission denied", args[0])

    monkeypatch.setattr(speedtest.asyncio, "create_subprocess_exec", create_subprocess_exec)

    with pytest.raises(SpeedTestError) as excinfo:
        asyncio.run(speedtest.run("/opt/ookla/speedtest"))

    assert not isinstance(excinfo.value, SpeedTestNotInstalledError)
    assert "Permission denied" in str(excinfo.value)


class HangingProcess:
    """A speed test that never finishes on its own."""

    def __init__(self):
        self.pid = 4243
        self.returncode = None
        self.killed = False
        self.started = asyncio.Event()

    async def communicate(self):
        self.started.set()
        await asyncio.Event().wait()

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def test_cancelled_run_kills_the_process(fake_exec):
    process = HangingProcess()
    fake_exec(process)

    async def scenario():
        task = asyncio.create_task(speedtest.run())
        await process.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert process.killed
