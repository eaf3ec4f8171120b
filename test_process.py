import asyncio
import sys

import pytest

from tunnelctl.vpn.exceptions import ProcessError, ReadinessTimeoutError
from tunnelctl.vpn.process import ProcessSupervisor, ReadinessMarker

MARKER = ReadinessMarker(("Xray", "started"))


def python(code: str):
    return [sys.executable, "-c", code]


@pytest.fixture
def supervisor():
    return ProcessSupervisor(ready_timeout=10, stop_timeout=5)


def test_marker_requires_every_fragment_on_one_line():
    assert MARKER.matches("[Warning] core: Xray 1.8.4 started")
    assert not MARKER.matches("Xray 1.8.4 (Xray, Penetrates Everything.)")
    assert ReadinessMarker.literal("[STACK] tun://exid_vpn").matches('msg="[STACK] tun://exid_vpn <-> x"')


async def test_start_waits_for_marker_then_stop(supervisor):
    code = "import time; print('booting', flush=True); print('Xray 1.8.4 started', flush=True); time.sleep(30)"

    pid = await supervisor.start("tunnel", python(code), MARKER)

    assert pid == supervisor.pid("tunnel")
    assert supervisor.is_running("tunnel")
    assert await supervisor.stop("tunnel") is True
    assert not supervisor.is_running("tunnel")
    assert supervisor.pid("tunnel") is None


async def test_exit_before_marker_is_a_failure(supervisor):
    with pytest.raises(ProcessError, match="exited with code 3"):
        await supervisor.start("tunnel", python("import sys; print('bad config'); sys.exit(3)"), MARKER)

    assert not supervisor.is_running("tunnel")
    assert await supervisor.stop("tunnel") is True


async def test_missing_marker_times_out(supervisor):
    with pytest.raises(ReadinessTimeoutError):
        await supervisor.start("bridge", python("import time; print('waiting'); time.sleep(30)"),
                               MARKER, timeout=0.5)

    assert supervisor.is_running("bridge")
    assert await supervisor.stop("bridge") is True
    assert not supervisor.is_running("bridge")


async def test_missing_binary_is_a_failure(supervisor, tmp_path):
    with pytest.raises(ProcessError):
        await supervisor.start("tunnel", [str(tmp_path / "no-such-binary")], MARKER)

    assert supervisor.names == []


async def test_stop_without_process_counts_as_stopped(supervisor):
    assert await supervisor.stop("bridge") is True


async def test_stop_after_process_exited(supervisor):
    code = "print('Xray 1.8.4 started', flush=True)"
    await supervisor.start("tunnel", python(code), MARKER)
    await supervisor._processes["tunnel"].process.wait()

    assert await supervisor.stop("tunnel") is True
    assert supervisor.names == []


async def test_cannot_start_the_same_name_twice(supervisor):
    code = "import time; print('Xray 1.8.4 started', flush=True); time.sleep(30)"
    await supervisor.start("tunnel", python(code), MARKER)

    with pytest.raises(ProcessError, match="already running"):
        await supervisor.start("tunnel", python(code), MARKER)

    assert await supervisor.stop_all() is True


async def test_readiness_timeout_keeps_its_cause(supervisor):
    with pytest.raises(ReadinessTimeoutError) as excinfo:
        await supervisor.start("bridge", python("import time; time.sleep(30)"), MARKER, timeout=0.3)

    assert isinstance(excinfo.value.__cause__, asyncio.TimeoutError)
    await supervisor.stop("bridge")
