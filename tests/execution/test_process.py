"""外部进程执行层测试"""

import asyncio

import pytest
from okaydokki.execution import ProcessSpawnError, ProcessTimeoutError, run_process
from okaydokki.execution.process import tail


class TestRunProcess:
    async def test_captures_output_and_exit_code(self):
        result = await run_process(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert result.returncode == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    async def test_cwd_and_env(self, tmp_path):
        result = await run_process(
            ["sh", "-c", 'pwd; echo "$OKD_X"'],
            cwd=tmp_path,
            env={"OKD_X": "value", "PATH": "/usr/bin:/bin"},
        )
        lines = result.stdout.splitlines()
        assert lines[1] == "value"

    async def test_missing_binary_raises_spawn_error(self):
        with pytest.raises(ProcessSpawnError) as exc_info:
            await run_process(["okaydokki-definitely-not-a-binary"])
        assert exc_info.value.argv0 == "okaydokki-definitely-not-a-binary"

    async def test_timeout_kills_process(self):
        with pytest.raises(ProcessTimeoutError) as exc_info:
            await run_process(["sleep", "5"], timeout_s=0.2)
        assert exc_info.value.timeout_s == 0.2

    async def test_cancel_kills_process_group(self, tmp_path):
        """调用方取消时整个进程组被 kill，后台子进程不会继续执行"""
        marker = tmp_path / "finished"
        running = asyncio.create_task(
            run_process(["sh", "-c", f"(sleep 1; touch {marker}) & wait"])
        )
        await asyncio.sleep(0.3)
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

        await asyncio.sleep(1.2)
        assert not marker.exists()


class TestTail:
    def test_short_text_unchanged(self):
        assert tail("  hello \n") == "hello"

    def test_long_text_truncated_from_front(self):
        assert tail("a" * 10 + "b" * 5, limit=5) == "...bbbbb"
