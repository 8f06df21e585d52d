import asyncio

import pytest

from simplenvr.backend.store import ConfigStore


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process`` that records kills."""

    def __init__(self, pid, exit_code=None):
        self.pid = pid
        self.returncode = None
        self.killed = False
        self._exited = asyncio.Event()
        if exit_code is not None:
            self.exit(exit_code)

    def exit(self, code):
        self.returncode = code
        self._exited.set()

    def kill(self):
        self.killed = True
        if self.returncode is None:
            self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Process factory handing out :class:`FakeProcess` objects.

    ``exit_codes`` are consumed one per spawn; once exhausted, processes run
    until killed. With ``delay`` each spawn yields to the loop for that long
    before the process exists.
    """

    def __init__(self, exit_codes=(), delay=0):
        self.exit_codes = list(exit_codes)
        self.delay = delay
        self.pending = 0
        self.calls = []
        self.processes = []
        self.error = None

    async def __call__(self, *cmd, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(list(cmd))
        if self.delay:
            self.pending += 1
            try:
                await asyncio.sleep(self.delay)
            finally:
                self.pending -= 1
        code = self.exit_codes.pop(0) if self.exit_codes else None
        process = FakeProcess(1000 + len(self.processes), code)
        self.processes.append(process)
        return process

    def live(self):
        return [p for p in self.processes if p.returncode is None]


async def _eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def store(tmp_path):
    store = ConfigStore(tmp_path / "nvr.db")
    yield store
    store.close()


@pytest.fixture
def add_cameras(store, tmp_path):
    def add(count):
        ids = []
        for i in range(count):
            ids.append(
                store.create_camera(
                    {
                        "name": f"Cam {i}",
                        "url": f"rtsp://10.0.0.{i}/stream",
                        "output_dir": str(tmp_path / f"cam{i}"),
                    }
                )
            )
        return ids

    return add
