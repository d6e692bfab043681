"""Tool call scheduler - lifecycle, confirmation gate and execution."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from agent_turn_core.application.models import (
    ConfirmationDetails,
    ConfirmationOutcome,
    ToolCall,
    ToolCallRequest,
    ToolCallStatus,
    ToolResult,
)
from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.cancellation import CancellationSignal
    from agent_turn_core.application.policy import ApprovalPolicy
    from agent_turn_core.application.tools import BaseTool, ToolRegistry

# コールバック型定義
ToolCallsUpdateCallback = Callable[[list[ToolCall]], None]  # (snapshot) -> None
AllToolCallsCompleteCallback = Callable[[list[ToolCall]], None]

logger = get_logger(__name__)

# 状態遷移表（終端状態からの遷移はない）
_ALLOWED_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.VALIDATING: frozenset({
        ToolCallStatus.AWAITING_APPROVAL,
        ToolCallStatus.SCHEDULED,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.AWAITING_APPROVAL: frozenset({
        ToolCallStatus.SCHEDULED,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.SCHEDULED: frozenset({
        ToolCallStatus.EXECUTING,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.EXECUTING: frozenset({
        ToolCallStatus.SUCCESS,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    }),
}

# error_type の値
ERROR_TOOL_NOT_REGISTERED = "tool_not_registered"
ERROR_INVALID_ARGS = "invalid_tool_params"
ERROR_CONFIRMATION_POLICY = "confirmation_policy_error"
ERROR_EXECUTION_FAILED = "execution_failed"
ERROR_INVALID_RESULT = "invalid_tool_result"


class SchedulerBusyError(Exception):
    """実行中のバッチがあるのに新しいバッチをスケジュールしようとした場合の例外."""

    def __init__(self, active_call_ids: list[str]) -> None:
        """
        Initialize SchedulerBusyError.

        Args:
            active_call_ids: 終端状態に達していない呼び出しID
        """
        super().__init__(
            "Cannot schedule new tool calls while other tool calls are active: "
            + ", ".join(active_call_ids)
        )
        self.active_call_ids = active_call_ids


class DuplicateCallIdError(Exception):
    """同じバッチ内で呼び出しIDが重複している場合の例外."""

    def __init__(self, call_ids: list[str]) -> None:
        """
        Initialize DuplicateCallIdError.

        Args:
            call_ids: 重複している呼び出しID
        """
        super().__init__("Duplicate tool call ids in batch: " + ", ".join(call_ids))
        self.call_ids = call_ids


class ToolCallNotFoundError(Exception):
    """指定された呼び出しIDが存在しない場合の例外."""

    def __init__(self, call_id: str) -> None:
        """
        Initialize ToolCallNotFoundError.

        Args:
            call_id: 見つからなかった呼び出しID
        """
        super().__init__(f"Tool call {call_id} not found")
        self.call_id = call_id


class InvalidConfirmationError(Exception):
    """承認待ちでない呼び出しに confirm() した場合の例外."""

    def __init__(self, call_id: str, current_status: ToolCallStatus) -> None:
        """
        Initialize InvalidConfirmationError.

        Args:
            call_id: 呼び出しID
            current_status: 現在の状態
        """
        super().__init__(
            f"Tool call {call_id} is not awaiting approval "
            f"(current: {current_status.value})"
        )
        self.call_id = call_id
        self.current_status = current_status


@dataclass
class _TrackedCall:
    """Scheduler 内部の可変レコード（外部には snapshot() のみ公開）."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    args: dict[str, Any] = field(default_factory=dict)
    tool: BaseTool | None = None
    confirmation: ConfirmationDetails | None = None
    live_output: str | None = None
    result: ToolResult | None = None
    error: str | None = None
    error_type: str | None = None
    outcome: ConfirmationOutcome | None = None
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: float | None = None
    # 承認判断（confirm またはキャンセルで解決）
    decision: asyncio.Future[None] | None = None
    # 実行結果の待機を打ち切るための Future（キャンセルで解決）
    abandoned: asyncio.Future[None] | None = None

    def snapshot(self) -> ToolCall:
        return ToolCall(
            request=self.request,
            status=self.status,
            args=MappingProxyType(dict(self.args)),
            confirmation=self.confirmation,
            live_output=self.live_output,
            result=self.result,
            error=self.error,
            error_type=self.error_type,
            outcome=self.outcome,
            duration_ms=self.duration_ms,
        )


def _resolve(future: asyncio.Future[None] | None) -> None:
    if future is not None and not future.done():
        future.set_result(None)


def _check_args(tool: BaseTool, args: Mapping[str, Any]) -> str | None:
    """ツールの引数検査を行い、不正ならエラーメッセージを返す."""
    try:
        return tool.validate_args(MappingProxyType(dict(args)))
    except Exception as e:
        logger.exception("Argument validation raised", tool=tool.name)
        return str(e) or type(e).__name__


def _find_duplicates(requests: list[ToolCallRequest]) -> list[str]:
    counts = Counter(r.call_id for r in requests)
    return [call_id for call_id, count in counts.items() if count > 1]


class ToolCallScheduler:
    """
    ツール呼び出しスケジューラー.

    1バッチ分のツール呼び出しのライフサイクルを管理する。
    状態が遷移するたびに、バッチ全体のスナップショットを on_update に同期的に通知する。
    ツールの失敗はその呼び出しだけに閉じ込め、Scheduler 自体は例外を送出しない。
    """

    def __init__(
        self,
        registry: ToolRegistry,
        on_update: ToolCallsUpdateCallback | None = None,
        on_all_complete: AllToolCallsCompleteCallback | None = None,
        policy: ApprovalPolicy | None = None,
    ) -> None:
        """
        Initialize ToolCallScheduler.

        Args:
            registry: ツールレジストリ
            on_update: 状態遷移ごとに呼ばれるコールバック（全件スナップショット）
            on_all_complete: 全呼び出しが終端状態に達したときのコールバック
            policy: 承認ポリシー（「常に承認」の記憶と自動承認の判定）
        """
        self._registry = registry
        self._on_update = on_update
        self._on_all_complete = on_all_complete
        self._policy = policy
        # 呼び出しIDの挿入順がスナップショットの順序になる
        self._calls: dict[str, _TrackedCall] = {}
        self._signal: CancellationSignal | None = None
        self._completion: asyncio.Future[list[ToolCall]] | None = None
        # 実行中タスクの参照を保持（GC対策）
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def tool_calls(self) -> list[ToolCall]:
        """現在のスナップショット."""
        return [call.snapshot() for call in self._calls.values()]

    @property
    def is_running(self) -> bool:
        """終端状態に達していない呼び出しがあるかどうか."""
        return any(not call.status.is_terminal for call in self._calls.values())

    async def schedule(
        self, requests: Iterable[ToolCallRequest], signal: CancellationSignal
    ) -> None:
        """
        ツール呼び出しのバッチを登録し、検証する.

        検証（承認要否の判定）が終わった時点で返り、承認不要の呼び出しの実行は
        バックグラウンドで継続する。承認が必要な呼び出しは confirm() を待つ。

        Args:
            requests: ツール呼び出し要求
            signal: ターン共有のキャンセルシグナル

        Raises:
            SchedulerBusyError: 前のバッチが完了していない場合
            DuplicateCallIdError: バッチ内で呼び出しIDが重複している場合
        """
        batch = list(requests)

        if self.is_running:
            active = [
                c.request.call_id
                for c in self._calls.values()
                if not c.status.is_terminal
            ]
            raise SchedulerBusyError(active)

        duplicates = _find_duplicates(batch)
        if duplicates:
            raise DuplicateCallIdError(duplicates)

        loop = asyncio.get_running_loop()
        self._signal = signal
        self._calls = {
            r.call_id: _TrackedCall(request=r, args=dict(r.args)) for r in batch
        }
        self._completion = loop.create_future()

        logger.info(
            "Scheduling tool calls",
            call_count=len(batch),
            tools=[r.name for r in batch],
        )

        if not batch:
            self._check_all_complete()
            return

        # 全件 validating の状態を通知
        self._notify()

        # キャンセル済みなら即座に全件 cancelled になる
        signal.add_callback(self._on_cancelled)

        await asyncio.gather(
            *(self._validate(call) for call in list(self._calls.values()))
        )

        for call in self._calls.values():
            if call.status.is_terminal:
                continue
            task = asyncio.create_task(self._drive(call))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def confirm(
        self,
        call_id: str,
        outcome: ConfirmationOutcome | str,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        """
        承認待ちの呼び出しに対してユーザーの判断を反映する.

        Args:
            call_id: 呼び出しID
            outcome: 承認判断
            payload: 引数の修正内容（MODIFY では必須）

        Raises:
            ToolCallNotFoundError: 呼び出しIDが存在しない場合
            InvalidConfirmationError: 呼び出しが承認待ちでない場合
            ValueError: outcome が不正、または MODIFY で payload がない場合
        """
        call = self._calls.get(call_id)
        if call is None:
            raise ToolCallNotFoundError(call_id)
        if call.status != ToolCallStatus.AWAITING_APPROVAL:
            logger.warning(
                "Rejected confirmation for tool call not awaiting approval",
                call_id=call_id,
                status=call.status.value,
            )
            raise InvalidConfirmationError(call_id, call.status)

        outcome = ConfirmationOutcome(outcome)
        if outcome == ConfirmationOutcome.MODIFY and not payload:
            msg = "payload is required when modifying a tool call"
            raise ValueError(msg)
        if payload is not None and not isinstance(payload, Mapping):
            msg = f"payload must be a mapping, got {type(payload).__name__}"
            raise ValueError(msg)

        # 修正後の引数も検証を通す（不正なら状態は変えない）
        if payload and outcome != ConfirmationOutcome.CANCEL and call.tool is not None:
            problem = _check_args(call.tool, {**call.args, **payload})
            if problem is not None:
                msg = f"modified arguments are invalid: {problem}"
                raise ValueError(msg)

        logger.info(
            "Tool call confirmation received",
            call_id=call_id,
            tool=call.request.name,
            outcome=outcome.value,
        )
        call.outcome = outcome

        if outcome == ConfirmationOutcome.CANCEL:
            self._transition(
                call, ToolCallStatus.CANCELLED, error="Cancelled by user."
            )
            _resolve(call.decision)
            return

        if payload:
            call.args.update(payload)

        if outcome == ConfirmationOutcome.PROCEED_ALWAYS and self._policy is not None:
            try:
                self._policy.remember(call.request)
            except Exception:
                # 記憶に失敗しても今回の承認は有効
                logger.exception(
                    "Failed to remember proceed-always decision (non-blocking)",
                    call_id=call_id,
                    tool=call.request.name,
                )

        self._transition(call, ToolCallStatus.SCHEDULED)
        _resolve(call.decision)

    async def wait_until_complete(self) -> list[ToolCall]:
        """
        バッチの全呼び出しが終端状態に達するまで待機する.

        Returns:
            終端状態のスナップショット（バッチ未登録の場合は空リスト）
        """
        if self._completion is None:
            return self.tool_calls
        return await asyncio.shield(self._completion)

    def _notify(self) -> None:
        """現在のスナップショットをオブザーバーに通知する."""
        if self._on_update is None:
            return
        try:
            self._on_update(self.tool_calls)
        except Exception:
            logger.exception("Error in tool calls update callback")

    def _transition(
        self, call: _TrackedCall, status: ToolCallStatus, **changes: Any
    ) -> bool:
        """
        呼び出しの状態を遷移させ、スナップショットを通知する.

        Args:
            call: 対象の呼び出し
            status: 遷移先の状態
            **changes: 同時に更新する属性

        Returns:
            遷移した場合True（不正な遷移は無視してFalse）
        """
        previous = call.status
        if status not in _ALLOWED_TRANSITIONS.get(previous, frozenset()):
            logger.warning(
                "Ignored invalid tool call transition",
                call_id=call.request.call_id,
                from_status=previous.value,
                to_status=status.value,
            )
            return False

        call.status = status
        for name, value in changes.items():
            setattr(call, name, value)

        # 状態固有の情報は該当する状態の間だけ保持する
        if status != ToolCallStatus.AWAITING_APPROVAL:
            call.confirmation = None
        if status != ToolCallStatus.EXECUTING:
            call.live_output = None
        if status.is_terminal:
            call.duration_ms = (time.monotonic() - call.started_at) * 1000

        logger.debug(
            "Tool call transitioned",
            call_id=call.request.call_id,
            tool=call.request.name,
            from_status=previous.value,
            to_status=status.value,
        )

        self._notify()
        if status.is_terminal:
            self._check_all_complete()
        return True

    def _check_all_complete(self) -> None:
        """全呼び出しが終端状態なら完了を通知する（一度だけ）."""
        if self.is_running:
            return
        if self._completion is None or self._completion.done():
            return

        completed = self.tool_calls
        self._completion.set_result(completed)
        if self._signal is not None:
            self._signal.remove_callback(self._on_cancelled)

        logger.info(
            "All tool calls completed",
            call_count=len(completed),
            statuses={c.request.call_id: c.status.value for c in completed},
        )

        if self._on_all_complete is not None:
            try:
                self._on_all_complete(completed)
            except Exception:
                logger.exception("Error in all tool calls complete callback")

    def _on_cancelled(self) -> None:
        """キャンセルシグナル発火時に未完了の呼び出しをすべて cancelled にする."""
        for call in list(self._calls.values()):
            if call.status.is_terminal:
                continue
            self._transition(
                call, ToolCallStatus.CANCELLED, error="Tool call cancelled."
            )
            _resolve(call.decision)
            _resolve(call.abandoned)

    async def _validate(self, call: _TrackedCall) -> None:
        """ツールの存在確認、引数検査、承認要否の判定を行う."""
        if call.status.is_terminal:
            return

        request = call.request
        tool = self._registry.get(request.name)
        if tool is None:
            logger.warning(
                "Tool not found in registry",
                call_id=request.call_id,
                tool=request.name,
            )
            self._transition(
                call,
                ToolCallStatus.ERROR,
                error=f'Tool "{request.name}" not found in registry.',
                error_type=ERROR_TOOL_NOT_REGISTERED,
            )
            return
        call.tool = tool

        problem = _check_args(tool, call.args)
        if problem is not None:
            logger.warning(
                "Invalid tool call arguments",
                call_id=request.call_id,
                tool=request.name,
                reason=problem,
            )
            self._transition(
                call,
                ToolCallStatus.ERROR,
                error=problem,
                error_type=ERROR_INVALID_ARGS,
            )
            return

        signal = self._require_signal()
        try:
            details = await tool.should_confirm(
                MappingProxyType(dict(call.args)), signal
            )
            rule = (
                self._policy.is_auto_approved(request, details)
                if details is not None and self._policy is not None
                else None
            )
        except Exception as e:
            logger.exception(
                "Confirmation policy check failed",
                call_id=request.call_id,
                tool=request.name,
            )
            self._transition(
                call,
                ToolCallStatus.ERROR,
                error=str(e) or type(e).__name__,
                error_type=ERROR_CONFIRMATION_POLICY,
            )
            return

        # 判定中にキャンセルされた
        if call.status.is_terminal:
            return

        if details is None:
            self._transition(call, ToolCallStatus.SCHEDULED)
            return

        if rule is not None:
            logger.info(
                "Auto-approved tool call by policy",
                call_id=request.call_id,
                tool=request.name,
                matched_rule=rule,
            )
            self._transition(call, ToolCallStatus.SCHEDULED)
            return

        call.decision = asyncio.get_running_loop().create_future()
        self._transition(
            call, ToolCallStatus.AWAITING_APPROVAL, confirmation=details
        )

    async def _drive(self, call: _TrackedCall) -> None:
        """承認待ち → 実行 → 完了までを進める."""
        try:
            awaiting = call.status == ToolCallStatus.AWAITING_APPROVAL
            if awaiting and call.decision is not None:
                await call.decision
            if call.status != ToolCallStatus.SCHEDULED:
                return
            await self._execute(call)
        except Exception as e:
            logger.exception(
                "Unexpected error while driving tool call",
                call_id=call.request.call_id,
            )
            if not call.status.is_terminal:
                self._transition(
                    call,
                    ToolCallStatus.ERROR,
                    error=str(e) or type(e).__name__,
                    error_type=ERROR_EXECUTION_FAILED,
                )

    async def _execute(self, call: _TrackedCall) -> None:
        """ツールを実行し、結果を記録する."""
        signal = self._require_signal()
        tool = call.tool
        if tool is None:
            msg = f"Tool call {call.request.call_id} has no resolved tool"
            raise RuntimeError(msg)

        call.abandoned = asyncio.get_running_loop().create_future()
        if not self._transition(call, ToolCallStatus.EXECUTING):
            return

        def update_output(output: str) -> None:
            if call.status != ToolCallStatus.EXECUTING:
                return
            call.live_output = output
            self._notify()

        logger.info(
            "Executing tool call",
            call_id=call.request.call_id,
            tool=call.request.name,
        )
        tool_task = asyncio.create_task(
            tool.execute(MappingProxyType(dict(call.args)), signal, update_output)
        )
        await asyncio.wait(
            {tool_task, call.abandoned}, return_when=asyncio.FIRST_COMPLETED
        )

        if call.status.is_terminal:
            # キャンセル済み: ツール側はシグナルを見て自発的に終了する
            if not tool_task.done():
                logger.info(
                    "Stopped awaiting cancelled tool call",
                    call_id=call.request.call_id,
                    tool=call.request.name,
                )
            tool_task.add_done_callback(_log_abandoned_result)
            return

        try:
            result = tool_task.result()
        except asyncio.CancelledError:
            self._transition(
                call, ToolCallStatus.CANCELLED, error="Tool call cancelled."
            )
            return
        except Exception as e:
            logger.warning(
                "Tool execution failed",
                call_id=call.request.call_id,
                tool=call.request.name,
                error=str(e),
                exc_info=True,
            )
            self._transition(
                call,
                ToolCallStatus.ERROR,
                error=str(e) or type(e).__name__,
                error_type=ERROR_EXECUTION_FAILED,
            )
            return

        if not isinstance(result, ToolResult):
            self._transition(
                call,
                ToolCallStatus.ERROR,
                error=f"Tool returned {type(result).__name__}, expected ToolResult.",
                error_type=ERROR_INVALID_RESULT,
            )
        elif result.is_error:
            self._transition(
                call,
                ToolCallStatus.ERROR,
                result=result,
                error=result.error,
                error_type=ERROR_EXECUTION_FAILED,
            )
        else:
            self._transition(call, ToolCallStatus.SUCCESS, result=result)

    def _require_signal(self) -> CancellationSignal:
        if self._signal is None:
            msg = "schedule() must be called before tool calls are processed"
            raise RuntimeError(msg)
        return self._signal


def _log_abandoned_result(task: asyncio.Task[ToolResult]) -> None:
    """待機を打ち切ったツールタスクの結果を回収する（未回収例外の警告を防ぐ）."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Abandoned tool task finished with error", error=str(error))
