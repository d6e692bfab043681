"""Observer adapter bridging scheduler snapshots to the presentation layer."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agent_turn_core.application.models import (
    ConfirmationDetails,
    ConfirmationOutcome,
    ToolCall,
    ToolCallStatus,
)
from agent_turn_core.application.scheduler import (
    InvalidConfirmationError,
    ToolCallNotFoundError,
)
from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.scheduler import ToolCallScheduler

logger = get_logger(__name__)

# 表示用の切り詰め長
_ARGS_DISPLAY_LIMIT = 500
_RESULT_DISPLAY_LIMIT = 500


@dataclass(frozen=True)
class ConfirmationRequest:
    """承認要求（Observer → UI）."""

    call_id: str
    tool_name: str
    details: ConfirmationDetails
    args_summary: str


@dataclass
class ConfirmationResponse:
    """承認応答（UI → Observer）."""

    outcome: ConfirmationOutcome
    payload: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class ToolCallDisplay:
    """ツール呼び出しの表示用サマリー."""

    call_id: str
    name: str
    status: ToolCallStatus
    title: str
    args_summary: str
    result_summary: str = ""
    error: str | None = None


ConfirmationHandler = Callable[[ConfirmationRequest], Awaitable[ConfirmationResponse]]
SnapshotListener = Callable[[list[ToolCall]], None]


def format_args(args: Mapping[str, Any], limit: int = _ARGS_DISPLAY_LIMIT) -> str:
    """ツール引数を表示用の文字列に変換する（長い場合は切り詰め）."""
    if not args:
        return ""
    try:
        text = json.dumps(dict(args), ensure_ascii=False)
    except (TypeError, ValueError):
        text = str(dict(args))
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _summarize_result(call: ToolCall) -> str:
    if call.result is None:
        return call.live_output or ""
    text = call.result.display or call.result.llm_content
    if len(text) > _RESULT_DISPLAY_LIMIT:
        return text[:_RESULT_DISPLAY_LIMIT] + "..."
    return text


class ToolCallObserver:
    """
    Scheduler のスナップショット通知を受け取るオブザーバー.

    最新のスナップショットをキャッシュし、承認待ちになった呼び出しを
    ConfirmationHandler（UI側）に渡して、その判断を Scheduler に中継する。
    """

    def __init__(
        self,
        handler: ConfirmationHandler | None = None,
        *,
        timeout: float | None = None,
        listener: SnapshotListener | None = None,
    ) -> None:
        """
        Initialize ToolCallObserver.

        Args:
            handler: 承認要求を処理するUI側のコールバック
            timeout: 承認待ちのタイムアウト秒数（超過時はキャンセル扱い、Noneで無期限）
            listener: スナップショット更新ごとに呼ばれる再描画用コールバック
        """
        self._handler = handler
        self._timeout = timeout
        self._listener = listener
        self._scheduler: ToolCallScheduler | None = None
        self._latest: list[ToolCall] = []
        self._by_id: dict[str, ToolCall] = {}
        # 承認要求中のタスク（call_id -> Task）
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._dispatched: set[str] = set()

    def attach(self, scheduler: ToolCallScheduler) -> None:
        """判断の中継先となる Scheduler を設定する."""
        self._scheduler = scheduler

    @property
    def latest(self) -> list[ToolCall]:
        """最後に受け取ったスナップショット."""
        return list(self._latest)

    def get(self, call_id: str) -> ToolCall | None:
        """呼び出しIDでスナップショットを検索する."""
        return self._by_id.get(call_id)

    def awaiting_approval(self) -> list[ToolCall]:
        """承認待ちの呼び出し一覧."""
        return [c for c in self._latest if c.status == ToolCallStatus.AWAITING_APPROVAL]

    def summarize(self) -> list[ToolCallDisplay]:
        """最新スナップショットの表示用サマリーを作成する."""
        displays: list[ToolCallDisplay] = []
        for call in self._latest:
            title = call.confirmation.title if call.confirmation else call.name
            displays.append(
                ToolCallDisplay(
                    call_id=call.call_id,
                    name=call.name,
                    status=call.status,
                    title=title,
                    args_summary=format_args(call.args),
                    result_summary=_summarize_result(call),
                    error=call.error,
                )
            )
        return displays

    def __call__(self, snapshot: list[ToolCall]) -> None:
        """
        Scheduler からのスナップショット通知を処理する.

        Args:
            snapshot: 全呼び出しの現在の状態
        """
        self._latest = list(snapshot)
        self._by_id = {call.call_id: call for call in self._latest}

        for call in self._latest:
            if call.status == ToolCallStatus.AWAITING_APPROVAL:
                if call.call_id not in self._dispatched:
                    self._dispatched.add(call.call_id)
                    self._dispatch(call)
            elif call.call_id in self._pending:
                # 承認待ちを抜けた呼び出しの承認要求は不要
                self._pending.pop(call.call_id).cancel()
                logger.debug(
                    "Withdrew confirmation request",
                    call_id=call.call_id,
                    status=call.status.value,
                )

        if self._listener is not None:
            try:
                self._listener(self.latest)
            except Exception:
                logger.exception("Error in snapshot listener")

    async def close(self) -> None:
        """処理中の承認要求をすべて取り消す."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _dispatch(self, call: ToolCall) -> None:
        """承認要求をUIに送るタスクを起動する."""
        if self._handler is None or call.confirmation is None:
            logger.debug(
                "No confirmation handler, leaving tool call pending",
                call_id=call.call_id,
            )
            return

        request = ConfirmationRequest(
            call_id=call.call_id,
            tool_name=call.name,
            details=call.confirmation,
            args_summary=format_args(call.args),
        )
        task = asyncio.create_task(self._request_confirmation(request))
        self._pending[call.call_id] = task

        def _on_done(t: asyncio.Task[None]) -> None:
            if self._pending.get(call.call_id) is t:
                del self._pending[call.call_id]

        task.add_done_callback(_on_done)

    async def _request_confirmation(self, request: ConfirmationRequest) -> None:
        """UIに承認を求め、その判断を Scheduler に中継する."""
        handler = self._handler
        if handler is None:
            return

        try:
            if self._timeout:
                response = await asyncio.wait_for(handler(request), timeout=self._timeout)
            else:
                response = await handler(request)
        except TimeoutError:
            logger.warning(
                "Confirmation request timed out, cancelling tool call",
                call_id=request.call_id,
                timeout=self._timeout,
            )
            response = ConfirmationResponse(outcome=ConfirmationOutcome.CANCEL)
        except Exception:
            logger.exception(
                "Error in confirmation handler, cancelling tool call",
                call_id=request.call_id,
            )
            response = ConfirmationResponse(outcome=ConfirmationOutcome.CANCEL)

        if not isinstance(response, ConfirmationResponse):
            logger.warning(
                "Confirmation handler returned an unexpected value, cancelling tool call",
                call_id=request.call_id,
                returned=type(response).__name__,
            )
            response = ConfirmationResponse(outcome=ConfirmationOutcome.CANCEL)

        self._relay(request.call_id, response)

    def _relay(self, call_id: str, response: ConfirmationResponse) -> None:
        """判断を Scheduler に反映する."""
        if self._scheduler is None:
            logger.warning("Observer is not attached to a scheduler", call_id=call_id)
            return

        try:
            self._scheduler.confirm(call_id, response.outcome, response.payload)
        except (InvalidConfirmationError, ToolCallNotFoundError) as e:
            # キャンセル等で既に承認待ちを抜けている
            logger.info("Dropped stale confirmation", call_id=call_id, reason=str(e))
        except ValueError:
            logger.exception(
                "Invalid confirmation response, cancelling tool call",
                call_id=call_id,
                outcome=str(response.outcome),
            )
            self._scheduler.confirm(call_id, ConfirmationOutcome.CANCEL)


def make_observer_factory(
    handler: ConfirmationHandler | None = None,
    *,
    timeout: float | None = None,
    listener: SnapshotListener | None = None,
) -> Callable[[ToolCallScheduler], ToolCallObserver]:
    """
    Scheduler ごとに ToolCallObserver を作るファクトリを返す.

    ConversationService の observer_factory に渡す。

    Args:
        handler: 承認要求を処理するUI側のコールバック
        timeout: 承認待ちのタイムアウト秒数（Config.effective_confirmation_timeout）
        listener: スナップショット更新ごとに呼ばれる再描画用コールバック

    Returns:
        Scheduler を受け取り、接続済みの ToolCallObserver を返す関数
    """

    def factory(scheduler: ToolCallScheduler) -> ToolCallObserver:
        observer = ToolCallObserver(handler, timeout=timeout, listener=listener)
        observer.attach(scheduler)
        return observer

    return factory
