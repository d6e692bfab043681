"""Tests for the tool call scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping  # noqa: TC003
from typing import Any
from unittest.mock import MagicMock

import pytest
from fakes import (
    Recorder,
    ReplaceTool,
    ShellTool,
    WriteFileTool,
    make_request,
    wait_for_condition,
)

from agent_turn_core.application.cancellation import CancellationSignal
from agent_turn_core.application.models import (
    ConfirmationKind,
    ConfirmationOutcome,
    ToolCall,
    ToolCallStatus,
    ToolResult,
)
from agent_turn_core.application.policy import ApprovalMode, ApprovalPolicy
from agent_turn_core.application.scheduler import (
    ERROR_CONFIRMATION_POLICY,
    ERROR_EXECUTION_FAILED,
    ERROR_INVALID_ARGS,
    ERROR_INVALID_RESULT,
    ERROR_TOOL_NOT_REGISTERED,
    DuplicateCallIdError,
    InvalidConfirmationError,
    SchedulerBusyError,
    ToolCallNotFoundError,
    ToolCallScheduler,
)
from agent_turn_core.application.tools import (
    BaseTool,
    OutputUpdateCallback,
    ToolRegistry,
)


@pytest.fixture
def signal() -> CancellationSignal:
    """テスト用のキャンセルシグナルを作成する."""
    return CancellationSignal()


@pytest.fixture
def scheduler(registry: ToolRegistry, recorder: Recorder) -> ToolCallScheduler:
    """通知を記録する Scheduler を作成する."""
    return ToolCallScheduler(registry, on_update=recorder)


def _by_id(calls: list[ToolCall]) -> dict[str, ToolCall]:
    return {call.call_id: call for call in calls}


class TestScheduleAndConfirm:
    """スケジュールと承認フローのテスト."""

    @pytest.mark.asyncio
    async def test_read_and_write_batch(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
        read_tool: Any,
        write_tool: WriteFileTool,
    ) -> None:
        """承認不要の呼び出しは自動で実行され、承認が必要な呼び出しは confirm を待つ."""
        await scheduler.schedule(
            [
                make_request("c1", "read_file", path="a.txt"),
                make_request("c2", "write_file", path="b.txt", content="x"),
            ],
            signal,
        )

        calls = _by_id(scheduler.tool_calls)
        assert calls["c2"].status == ToolCallStatus.AWAITING_APPROVAL
        assert calls["c2"].confirmation is not None
        assert calls["c2"].confirmation.kind == ConfirmationKind.EDIT
        assert calls["c2"].confirmation.title == "Write b.txt"

        scheduler.confirm("c2", ConfirmationOutcome.PROCEED_ONCE)
        completed = await scheduler.wait_until_complete()

        assert [c.call_id for c in completed] == ["c1", "c2"]
        assert all(c.status == ToolCallStatus.SUCCESS for c in completed)
        assert completed[0].result == ToolResult(
            llm_content="contents of a.txt", display="Read a.txt"
        )
        assert completed[1].outcome == ConfirmationOutcome.PROCEED_ONCE
        assert recorder.statuses("c1") == [
            "validating",
            "scheduled",
            "executing",
            "success",
        ]
        assert recorder.statuses("c2") == [
            "validating",
            "awaiting_approval",
            "scheduled",
            "executing",
            "success",
        ]
        assert read_tool.calls == [{"path": "a.txt"}]
        assert write_tool.calls == [{"path": "b.txt", "content": "x"}]

    @pytest.mark.asyncio
    async def test_every_snapshot_contains_whole_batch(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
    ) -> None:
        """通知されるスナップショットには常にバッチ全件が含まれることを確認する."""
        await scheduler.schedule(
            [
                make_request("c1", "read_file", path="a.txt"),
                make_request("c2", "write_file", path="b.txt"),
                make_request("c3", "nonexistent_tool"),
            ],
            signal,
        )
        scheduler.confirm("c2", ConfirmationOutcome.PROCEED_ONCE)
        await scheduler.wait_until_complete()

        assert recorder.snapshots
        for snapshot in recorder.snapshots:
            assert [c.call_id for c in snapshot] == ["c1", "c2", "c3"]
        # 最初の通知は全件 validating
        assert all(
            c.status == ToolCallStatus.VALIDATING for c in recorder.snapshots[0]
        )

    @pytest.mark.asyncio
    async def test_unknown_tool_errors_without_raising(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """未登録ツールの呼び出しはその呼び出しだけが error になることを確認する."""
        await scheduler.schedule(
            [
                make_request("c1", "nonexistent_tool"),
                make_request("c2", "read_file", path="a.txt"),
            ],
            signal,
        )
        completed = _by_id(await scheduler.wait_until_complete())

        assert completed["c1"].status == ToolCallStatus.ERROR
        assert completed["c1"].error_type == ERROR_TOOL_NOT_REGISTERED
        assert completed["c1"].error == 'Tool "nonexistent_tool" not found in registry.'
        assert completed["c2"].status == ToolCallStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_cancel_outcome(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        write_tool: WriteFileTool,
    ) -> None:
        """CANCEL の判断で呼び出しが cancelled になり、ツールは実行されない."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.CANCELLED
        assert completed[0].error == "Cancelled by user."
        assert completed[0].outcome == ConfirmationOutcome.CANCEL
        assert completed[0].confirmation is None
        assert write_tool.calls == []

    @pytest.mark.asyncio
    async def test_outcome_accepts_string_value(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """承認判断を文字列で渡せることを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        scheduler.confirm("c1", "proceed_once")
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_second_confirm_rejected(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        write_tool: WriteFileTool,
    ) -> None:
        """同じ呼び出しへの二回目の confirm が拒否されることを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ONCE)
        with pytest.raises(InvalidConfirmationError) as exc_info:
            scheduler.confirm("c1", ConfirmationOutcome.CANCEL)

        assert exc_info.value.call_id == "c1"
        completed = await scheduler.wait_until_complete()
        assert completed[0].status == ToolCallStatus.SUCCESS
        assert len(write_tool.calls) == 1

    @pytest.mark.asyncio
    async def test_confirm_for_call_not_awaiting_approval(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """承認待ちでない呼び出しへの confirm が拒否されることを確認する."""
        await scheduler.schedule([make_request("c1", "read_file", path="a.txt")], signal)
        await scheduler.wait_until_complete()

        with pytest.raises(InvalidConfirmationError) as exc_info:
            scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ONCE)
        assert exc_info.value.current_status == ToolCallStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_confirm_unknown_call(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """存在しない呼び出しIDへの confirm でエラーになることを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        with pytest.raises(ToolCallNotFoundError):
            scheduler.confirm("missing", ConfirmationOutcome.PROCEED_ONCE)

        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        await scheduler.wait_until_complete()

    @pytest.mark.asyncio
    async def test_modify_merges_payload(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        write_tool: WriteFileTool,
    ) -> None:
        """MODIFY の payload が引数にマージされて実行されることを確認する."""
        await scheduler.schedule(
            [make_request("c1", "write_file", path="b.txt", content="old")], signal
        )

        scheduler.confirm("c1", ConfirmationOutcome.MODIFY, {"content": "new"})
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        assert dict(completed[0].args) == {"path": "b.txt", "content": "new"}
        # 元の要求は変更されない
        assert dict(completed[0].request.args) == {"path": "b.txt", "content": "old"}
        assert write_tool.calls == [{"path": "b.txt", "content": "new"}]

    @pytest.mark.asyncio
    async def test_modify_requires_payload(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """payload なしの MODIFY は拒否され、承認待ちのままであることを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        with pytest.raises(ValueError, match="payload is required"):
            scheduler.confirm("c1", ConfirmationOutcome.MODIFY)

        assert scheduler.tool_calls[0].status == ToolCallStatus.AWAITING_APPROVAL
        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        await scheduler.wait_until_complete()

    @pytest.mark.asyncio
    async def test_modify_with_invalid_args_rejected(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        replace_tool: ReplaceTool,
    ) -> None:
        """検査を通らない MODIFY は拒否され、元の引数のまま承認待ちに残る."""
        await scheduler.schedule(
            [make_request("c1", "replace", path="a.txt", old_string="foo")], signal
        )

        with pytest.raises(ValueError, match="old_string must be a non-empty string"):
            scheduler.confirm("c1", ConfirmationOutcome.MODIFY, {"old_string": ""})

        call = scheduler.tool_calls[0]
        assert call.status == ToolCallStatus.AWAITING_APPROVAL
        assert call.outcome is None
        assert dict(call.args) == {"path": "a.txt", "old_string": "foo"}

        scheduler.confirm("c1", ConfirmationOutcome.MODIFY, {"old_string": "bar"})
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        assert replace_tool.calls == [{"path": "a.txt", "old_string": "bar"}]

    @pytest.mark.asyncio
    async def test_invalid_outcome(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """不正な承認判断が拒否されることを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        with pytest.raises(ValueError):
            scheduler.confirm("c1", "maybe")

        assert scheduler.tool_calls[0].status == ToolCallStatus.AWAITING_APPROVAL
        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        await scheduler.wait_until_complete()


class TestApprovalPolicyIntegration:
    """承認ポリシーとの連携のテスト."""

    @pytest.mark.asyncio
    async def test_proceed_always_is_remembered(
        self,
        registry: ToolRegistry,
        recorder: Recorder,
        signal: CancellationSignal,
    ) -> None:
        """PROCEED_ALWAYS がポリシーに記憶され、次のバッチで承認が省略される."""
        policy = ApprovalPolicy()
        scheduler = ToolCallScheduler(registry, on_update=recorder, policy=policy)

        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)
        scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ALWAYS)
        await scheduler.wait_until_complete()

        assert policy.patterns == ["write_file:*"]

        await scheduler.schedule([make_request("c2", "write_file", path="c.txt")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        assert "awaiting_approval" not in recorder.statuses("c2")

    @pytest.mark.asyncio
    async def test_remember_failure_does_not_block(
        self,
        registry: ToolRegistry,
        signal: CancellationSignal,
    ) -> None:
        """ポリシーへの記憶に失敗しても今回の承認は有効であることを確認する."""
        policy = MagicMock()
        policy.is_auto_approved.return_value = None
        policy.remember.side_effect = OSError("read-only filesystem")
        scheduler = ToolCallScheduler(registry, policy=policy)

        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)
        scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ALWAYS)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        policy.remember.assert_called_once()

    @pytest.mark.asyncio
    async def test_yolo_mode_skips_confirmation(
        self,
        registry: ToolRegistry,
        recorder: Recorder,
        signal: CancellationSignal,
    ) -> None:
        """yolo モードでは承認待ちにならないことを確認する."""
        policy = ApprovalPolicy(mode=ApprovalMode.YOLO)
        scheduler = ToolCallScheduler(registry, on_update=recorder, policy=policy)

        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        assert recorder.statuses("c1") == [
            "validating",
            "scheduled",
            "executing",
            "success",
        ]

    @pytest.mark.asyncio
    async def test_pattern_matching_args(
        self,
        registry: ToolRegistry,
        signal: CancellationSignal,
    ) -> None:
        """引数パターンにマッチした呼び出しだけ承認が省略されることを確認する."""
        policy = ApprovalPolicy(patterns=['write_file:*"path": "tmp/*'])
        scheduler = ToolCallScheduler(registry, policy=policy)

        await scheduler.schedule(
            [
                make_request("c1", "write_file", path="tmp/a.txt"),
                make_request("c2", "write_file", path="src/b.py"),
            ],
            signal,
        )

        calls = _by_id(scheduler.tool_calls)
        assert calls["c1"].status != ToolCallStatus.AWAITING_APPROVAL
        assert calls["c2"].status == ToolCallStatus.AWAITING_APPROVAL

        scheduler.confirm("c2", ConfirmationOutcome.CANCEL)
        completed = _by_id(await scheduler.wait_until_complete())
        assert completed["c1"].status == ToolCallStatus.SUCCESS
        assert completed["c2"].status == ToolCallStatus.CANCELLED


class TestCancellation:
    """キャンセルシグナルのテスト."""

    @pytest.mark.asyncio
    async def test_cancel_while_executing(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
        shell_tool: ShellTool,
    ) -> None:
        """実行中にキャンセルされると cancelled になり、その後の結果は反映されない."""
        await scheduler.schedule(
            [make_request("c1", "run_shell_command", command="sleep 60")], signal
        )
        scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ONCE)
        await wait_for_condition(shell_tool.started.is_set)

        signal.cancel()
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.CANCELLED
        assert completed[0].error == "Tool call cancelled."
        assert completed[0].result is None

        # ツールはシグナルを見て終了するが、状態は cancelled のまま
        await shell_tool.finished.wait()
        await asyncio.sleep(0)
        assert scheduler.tool_calls[0].status == ToolCallStatus.CANCELLED
        assert recorder.statuses("c1")[-2:] == ["executing", "cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_approval(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        write_tool: WriteFileTool,
    ) -> None:
        """承認待ちの呼び出しがキャンセルされ、その後の confirm は拒否される."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        signal.cancel()
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.CANCELLED
        with pytest.raises(InvalidConfirmationError):
            scheduler.confirm("c1", ConfirmationOutcome.PROCEED_ONCE)
        assert write_tool.calls == []

    @pytest.mark.asyncio
    async def test_already_cancelled_signal(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
        read_tool: Any,
    ) -> None:
        """キャンセル済みのシグナルでは全件 cancelled になり、何も実行されない."""
        signal.cancel()
        await scheduler.schedule(
            [
                make_request("c1", "read_file", path="a.txt"),
                make_request("c2", "write_file", path="b.txt"),
            ],
            signal,
        )
        completed = await scheduler.wait_until_complete()

        assert all(c.status == ToolCallStatus.CANCELLED for c in completed)
        assert read_tool.calls == []

    @pytest.mark.asyncio
    async def test_terminal_calls_unaffected_by_cancel(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """終端状態に達した呼び出しはキャンセルの影響を受けないことを確認する."""
        await scheduler.schedule(
            [
                make_request("c1", "read_file", path="a.txt"),
                make_request("c2", "write_file", path="b.txt"),
            ],
            signal,
        )
        await wait_for_condition(
            lambda: _by_id(scheduler.tool_calls)["c1"].is_terminal
        )

        signal.cancel()
        completed = _by_id(await scheduler.wait_until_complete())

        assert completed["c1"].status == ToolCallStatus.SUCCESS
        assert completed["c2"].status == ToolCallStatus.CANCELLED


class TestExecution:
    """ツール実行のテスト."""

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """ツールの例外はその呼び出しの error として記録されることを確認する."""
        await scheduler.schedule(
            [
                make_request("c1", "failing_tool"),
                make_request("c2", "read_file", path="a.txt"),
            ],
            signal,
        )
        completed = _by_id(await scheduler.wait_until_complete())

        assert completed["c1"].status == ToolCallStatus.ERROR
        assert completed["c1"].error == "disk on fire"
        assert completed["c1"].error_type == ERROR_EXECUTION_FAILED
        assert completed["c2"].status == ToolCallStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_error_result(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """エラーを表す ToolResult は error 状態として結果ごと記録される."""
        await scheduler.schedule([make_request("c1", "error_result")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.ERROR
        assert completed[0].error == "file not found"
        assert completed[0].result is not None
        assert completed[0].result.llm_content == "file not found"

    @pytest.mark.asyncio
    async def test_confirmation_check_failure(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """承認判定の失敗は confirmation_policy_error になることを確認する."""
        await scheduler.schedule([make_request("c1", "broken_confirm")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.ERROR
        assert completed[0].error_type == ERROR_CONFIRMATION_POLICY
        assert completed[0].error == "policy backend unavailable"

    @pytest.mark.asyncio
    async def test_invalid_args_become_error(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
        replace_tool: ReplaceTool,
    ) -> None:
        """不正な引数は実行されずに error になり、他の呼び出しは完了する."""
        await scheduler.schedule(
            [
                make_request("c1", "replace", path="a.txt", old_string=""),
                make_request("c2", "read_file", path="a.txt"),
            ],
            signal,
        )
        completed = _by_id(await scheduler.wait_until_complete())

        assert completed["c1"].status == ToolCallStatus.ERROR
        assert completed["c1"].error_type == ERROR_INVALID_ARGS
        assert completed["c1"].error == "old_string must be a non-empty string"
        assert recorder.statuses("c1") == ["validating", "error"]
        assert replace_tool.calls == []
        assert completed["c2"].status == ToolCallStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_validate_args_exception_becomes_error(
        self, signal: CancellationSignal
    ) -> None:
        """引数検査の例外も invalid_tool_params として記録されることを確認する."""

        class PickyTool(BaseTool):
            name = "picky"

            def validate_args(self, args: Mapping[str, Any]) -> str | None:
                msg = "schema unavailable"
                raise RuntimeError(msg)

            async def execute(
                self,
                args: Mapping[str, Any],
                signal: CancellationSignal,
                update_output: OutputUpdateCallback | None = None,
            ) -> ToolResult:
                return ToolResult(llm_content="unreachable")

        scheduler = ToolCallScheduler(ToolRegistry([PickyTool()]))
        await scheduler.schedule([make_request("c1", "picky")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.ERROR
        assert completed[0].error_type == ERROR_INVALID_ARGS
        assert completed[0].error == "schema unavailable"

    @pytest.mark.asyncio
    async def test_invalid_tool_result(self, signal: CancellationSignal) -> None:
        """ToolResult 以外を返すツールは error になることを確認する."""

        class SloppyTool(BaseTool):
            name = "sloppy"

            async def execute(
                self,
                args: Mapping[str, Any],
                signal: CancellationSignal,
                update_output: OutputUpdateCallback | None = None,
            ) -> ToolResult:
                return "done"  # type: ignore[return-value]

        scheduler = ToolCallScheduler(ToolRegistry([SloppyTool()]))
        await scheduler.schedule([make_request("c1", "sloppy")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.ERROR
        assert completed[0].error_type == ERROR_INVALID_RESULT

    @pytest.mark.asyncio
    async def test_concurrent_execution_and_live_output(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
        shell_tool: ShellTool,
    ) -> None:
        """承認済みの呼び出しが並行して実行され、途中経過が通知されることを確認する."""
        await scheduler.schedule(
            [
                make_request("s1", "run_shell_command", command="make"),
                make_request("s2", "run_shell_command", command="pytest"),
            ],
            signal,
        )
        scheduler.confirm("s1", ConfirmationOutcome.PROCEED_ONCE)
        scheduler.confirm("s2", ConfirmationOutcome.PROCEED_ONCE)

        # gate が閉じたまま両方が実行中になる
        await wait_for_condition(lambda: len(shell_tool.calls) == 2)
        executing = [
            c for c in scheduler.tool_calls if c.status == ToolCallStatus.EXECUTING
        ]
        assert len(executing) == 2
        assert all(c.live_output == "running..." for c in executing)

        shell_tool.gate.set()
        completed = await scheduler.wait_until_complete()

        assert [c.status for c in completed] == [ToolCallStatus.SUCCESS] * 2
        # 終端状態では途中経過はクリアされる
        assert all(c.live_output is None for c in completed)
        assert all(c.duration_ms is not None for c in completed)
        assert any(
            c.live_output == "running..." for s in recorder.snapshots for c in s
        )


class TestBatchLifecycle:
    """バッチ単位のライフサイクルのテスト."""

    @pytest.mark.asyncio
    async def test_busy_scheduler_rejects_new_batch(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """前のバッチが完了していない間は新しいバッチを受け付けない."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)

        with pytest.raises(SchedulerBusyError) as exc_info:
            await scheduler.schedule([make_request("c2", "read_file")], signal)

        assert exc_info.value.active_call_ids == ["c1"]
        assert [c.call_id for c in scheduler.tool_calls] == ["c1"]

        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        await scheduler.wait_until_complete()
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_duplicate_call_ids_rejected(
        self,
        scheduler: ToolCallScheduler,
        recorder: Recorder,
        signal: CancellationSignal,
    ) -> None:
        """バッチ内で呼び出しIDが重複している場合は何も登録しない."""
        with pytest.raises(DuplicateCallIdError) as exc_info:
            await scheduler.schedule(
                [
                    make_request("c1", "read_file"),
                    make_request("c1", "write_file"),
                ],
                signal,
            )

        assert exc_info.value.call_ids == ["c1"]
        assert recorder.snapshots == []
        assert scheduler.tool_calls == []

    @pytest.mark.asyncio
    async def test_empty_batch_completes_immediately(
        self,
        registry: ToolRegistry,
        signal: CancellationSignal,
    ) -> None:
        """空のバッチは即座に完了することを確認する."""
        on_all_complete = MagicMock()
        scheduler = ToolCallScheduler(registry, on_all_complete=on_all_complete)

        await scheduler.schedule([], signal)

        assert await scheduler.wait_until_complete() == []
        on_all_complete.assert_called_once_with([])

    @pytest.mark.asyncio
    async def test_all_complete_callback_called_once(
        self,
        registry: ToolRegistry,
        signal: CancellationSignal,
    ) -> None:
        """全件完了のコールバックが一度だけ呼ばれることを確認する."""
        on_all_complete = MagicMock()
        scheduler = ToolCallScheduler(registry, on_all_complete=on_all_complete)

        await scheduler.schedule(
            [
                make_request("c1", "read_file", path="a.txt"),
                make_request("c2", "nonexistent_tool"),
            ],
            signal,
        )
        completed = await scheduler.wait_until_complete()
        signal.cancel()

        on_all_complete.assert_called_once()
        assert on_all_complete.call_args.args[0] == completed

    @pytest.mark.asyncio
    async def test_observer_exception_is_swallowed(
        self,
        registry: ToolRegistry,
        signal: CancellationSignal,
    ) -> None:
        """オブザーバーの例外で Scheduler が停止しないことを確認する."""
        on_update = MagicMock(side_effect=RuntimeError("render failed"))
        scheduler = ToolCallScheduler(registry, on_update=on_update)

        await scheduler.schedule([make_request("c1", "read_file", path="a.txt")], signal)
        completed = await scheduler.wait_until_complete()

        assert completed[0].status == ToolCallStatus.SUCCESS
        assert on_update.call_count >= 4

    @pytest.mark.asyncio
    async def test_snapshot_args_are_read_only(
        self,
        scheduler: ToolCallScheduler,
        signal: CancellationSignal,
    ) -> None:
        """スナップショットの引数を変更できないことを確認する."""
        await scheduler.schedule([make_request("c1", "write_file", path="b.txt")], signal)
        snapshot = scheduler.tool_calls[0]

        with pytest.raises(TypeError):
            snapshot.args["path"] = "/etc/passwd"  # type: ignore[index]

        scheduler.confirm("c1", ConfirmationOutcome.CANCEL)
        await scheduler.wait_until_complete()

    @pytest.mark.asyncio
    async def test_wait_before_schedule(self, scheduler: ToolCallScheduler) -> None:
        """スケジュール前の wait_until_complete は空リストを返す."""
        assert await scheduler.wait_until_complete() == []
        assert scheduler.is_running is False
