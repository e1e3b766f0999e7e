"""Tests for the subprocess-backed LocalSandboxCapability."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from preview.capability import SERVER_READY
from preview.errors import BootError, MountError, SpawnError
from preview.local_sandbox import LocalSandboxCapability, parse_ready_url

VITE_BANNER = (
    "\x1b[32m  VITE v5.0.12\x1b[39m  ready in 312 ms\n\n"
    "  \x1b[32m➜\x1b[39m  \x1b[1mLocal\x1b[22m:   "
    "\x1b[36mhttp://localhost:\x1b[1m5173\x1b[22m/\x1b[39m\n"
)


async def _boot(tmp_path: Path) -> LocalSandboxCapability:
    return await LocalSandboxCapability.boot(
        "sbx-test",
        base_dir=str(tmp_path),
        package_manager=sys.executable,
        probe_ready=False,
    )


async def _collect(handle) -> str:
    return "".join([chunk async for chunk in handle.output])


# ---------------------------------------------------------------------------
# Banner parsing
# ---------------------------------------------------------------------------


class TestParseReadyUrl:
    def test_vite_banner_with_colors(self) -> None:
        assert parse_ready_url(VITE_BANNER) == (5173, "http://localhost:5173/")

    def test_plain_banner(self) -> None:
        assert parse_ready_url("  Local:   http://127.0.0.1:4000/\n") == (4000, "http://127.0.0.1:4000/")

    def test_no_banner(self) -> None:
        assert parse_ready_url("added 4 packages in 2s\n") is None


# ---------------------------------------------------------------------------
# Boot and mount
# ---------------------------------------------------------------------------


class TestBoot:
    async def test_creates_empty_directory(self, tmp_path: Path) -> None:
        stale = tmp_path / "sbx-test"
        stale.mkdir()
        (stale / "leftover.txt").write_text("old")

        sandbox = await _boot(tmp_path)

        assert sandbox.work_dir == stale
        assert list(stale.iterdir()) == []

    async def test_missing_package_manager(self, tmp_path: Path) -> None:
        with pytest.raises(BootError, match="not found on PATH"):
            await LocalSandboxCapability.boot(
                "sbx-test", base_dir=str(tmp_path), package_manager="definitely-not-a-package-manager"
            )

    async def test_close_removes_directory(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        await sandbox.close()
        assert not sandbox.work_dir.exists()


class TestMount:
    async def test_writes_nested_files(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)

        await sandbox.mount({"package.json": "{}", "/src/App.jsx": "export default 1"})

        assert (sandbox.work_dir / "package.json").read_text() == "{}"
        assert (sandbox.work_dir / "src" / "App.jsx").read_text() == "export default 1"

    async def test_rejects_escaping_paths(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)

        with pytest.raises(MountError, match="escapes sandbox"):
            await sandbox.mount({"../outside.txt": "nope"})

        assert not (tmp_path / "outside.txt").exists()


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


class TestSpawn:
    async def test_output_and_exit_code(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)

        handle = await sandbox.spawn(
            sys.executable, ["-c", "import sys; print('hello'); sys.stderr.write('warn\\n'); sys.exit(3)"]
        )
        output = await asyncio.wait_for(_collect(handle), timeout=10)
        code = await asyncio.wait_for(handle.exit, timeout=10)

        assert "hello\n" in output
        assert "warn\n" in output
        assert code == 3

    async def test_runs_in_sandbox_directory(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        await sandbox.mount({"marker.txt": "here"})

        handle = await sandbox.spawn(sys.executable, ["-c", "print(open('marker.txt').read())"])
        output = await asyncio.wait_for(_collect(handle), timeout=10)

        assert "here" in output
        assert await handle.exit == 0

    async def test_missing_command(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)

        with pytest.raises(SpawnError):
            await sandbox.spawn(str(tmp_path / "no-such-binary"))


class TestReadyAndKill:
    SERVER = (
        "import sys, time\n"
        "print('  Local:   http://localhost:5999/', flush=True)\n"
        "time.sleep(30)\n"
    )

    async def test_banner_emits_server_ready(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        ready = asyncio.get_running_loop().create_future()
        sandbox.on(SERVER_READY, lambda port, url: ready.set_result((port, url)))

        await sandbox.spawn(sys.executable, ["-c", self.SERVER])

        assert await asyncio.wait_for(ready, timeout=10) == (5999, "http://localhost:5999/")
        await sandbox.close()

    async def test_kill_by_target(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        handle = await sandbox.spawn(sys.executable, ["-c", self.SERVER])

        await sandbox.kill(sys.executable)

        code = await asyncio.wait_for(handle.exit, timeout=10)
        assert code != 0
        assert sandbox.processes == []
        await sandbox.close()

    async def test_node_target_ignores_other_processes(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        await sandbox.spawn(sys.executable, ["-c", self.SERVER])

        await sandbox.kill("node")

        assert len(sandbox.processes) == 1
        assert sandbox.processes[0].is_running
        await sandbox.close()

    async def test_kill_without_matches_is_noop(self, tmp_path: Path) -> None:
        sandbox = await _boot(tmp_path)
        await sandbox.kill("node")
        assert sandbox.processes == []
