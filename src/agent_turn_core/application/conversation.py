"""Conversation service - runs turns and forwards tool calls to the scheduler."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from agent_turn_core.application.cancellation import CancellationSignal
from agent_turn_core.application.models import (
    ConfirmationOutcome,
    FunctionResponse,
    ToolCall,
    ToolCallStatus,
)
from agent_turn_core.application.scheduler import (
    ToolCallScheduler,
    ToolCallsUpdateCallback,
)
from agent_turn_core.application.turn import (
    ErrorEvent,
    MaxSessionTurnsEvent,
    Turn,
    TurnEvent,
    TurnMessage,
    UserCancelledEvent,
)
from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.policy import ApprovalPolicy
    from agent_turn_core.application.tools import ToolRegistry
    from agent_turn_core.application.turn import ContentGenerator
    from agent_turn_core.infrastructure.config import Config

# コールバック型定義
EventCallback = Callable[[TurnEvent], Awaitable[None]]  # (event) -> None
# Scheduler ごとにオブザーバーを作る（プレゼンテーション層との接続点）
ObserverFactory = Callable[[ToolCallScheduler], ToolCallsUpdateCallback]

logger = get_logger(__name__)


class TurnInProgressError(Exception):
    """会話でターンが実行中の場合の例外."""

    def __init__(self, conversation_id: str) -> None:
        """
        Initialize TurnInProgressError.

        Args:
            conversation_id: 会話ID
        """
        super().__init__(f"Conversation {conversation_id} already has an active turn")
        self.conversation_id = conversation_id


def build_function_responses(calls: list[ToolCall]) -> list[FunctionResponse]:
    """
    終端状態のツール呼び出しをモデルへ返すペイロードに変換する.

    Args:
        calls: 終端状態のスナップショット

    Returns:
        FunctionResponse のリスト（calls と同じ順序）

    Raises:
        ValueError: 終端状態でない呼び出しが含まれる場合
    """
    responses: list[FunctionResponse] = []
    for call in calls:
        if not call.is_terminal:
            msg = f"Tool call {call.call_id} is not completed (status: {call.status.value})"
            raise ValueError(msg)

        if call.status == ToolCallStatus.SUCCESS and call.result is not None:
            response: dict[str, str] = {"output": call.result.llm_content}
        elif call.status == ToolCallStatus.CANCELLED:
            response = {"error": call.error or "Tool call cancelled."}
        else:
            response = {"error": call.error or "Tool call failed."}

        responses.append(
            FunctionResponse(call_id=call.call_id, name=call.name, response=response)
        )
    return responses


class ConversationService:
    """
    会話サービス.

    ユーザーのメッセージを起点に、ツール呼び出しがなくなるまでターンを繰り返す。
    1つの会話で同時に実行できるターンは1つだけ。
    """

    def __init__(
        self,
        config: Config,
        generator: ContentGenerator,
        registry: ToolRegistry,
        policy: ApprovalPolicy | None = None,
        on_event: EventCallback | None = None,
        observer_factory: ObserverFactory | None = None,
    ) -> None:
        """
        Initialize ConversationService.

        Args:
            config: アプリケーション設定
            generator: モデルプロバイダーへの接続
            registry: ツールレジストリ
            policy: 承認ポリシー
            on_event: ターンイベント受信時のコールバック
            observer_factory: Scheduler ごとのオブザーバーを作るファクトリ
                （未設定の場合、承認待ちの呼び出しはキャンセルされる）
        """
        self.id = str(uuid.uuid4())
        self._config = config
        self._generator = generator
        self._registry = registry
        self._policy = policy
        self._on_event_callback = on_event
        self._observer_factory = observer_factory
        self._active_signal: CancellationSignal | None = None
        self._message_count = 0

    @property
    def is_busy(self) -> bool:
        """ターンが実行中かどうか."""
        return self._active_signal is not None

    def cancel(self) -> bool:
        """
        実行中のターンをキャンセルする.

        Returns:
            キャンセルした場合True（実行中でなければFalse）
        """
        if self._active_signal is None:
            return False
        logger.info("Cancelling active turn", conversation_id=self.id)
        self._active_signal.cancel()
        return True

    async def send_message(
        self,
        message: TurnMessage,
        signal: CancellationSignal | None = None,
        prompt_id: str | None = None,
    ) -> list[TurnEvent]:
        """
        メッセージを送信し、ツール呼び出しがなくなるまでターンを実行する.

        Args:
            message: ユーザーのメッセージ（またはツール実行結果）
            signal: キャンセルシグナル（省略時は新規作成）
            prompt_id: ターンID（省略時は新規作成）

        Returns:
            発生したすべての TurnEvent

        Raises:
            TurnInProgressError: 既にターンが実行中の場合
        """
        if self._active_signal is not None:
            raise TurnInProgressError(self.id)

        signal = signal or CancellationSignal()
        self._message_count += 1
        prompt_id = prompt_id or f"{self.id}#{self._message_count}"
        self._active_signal = signal
        events: list[TurnEvent] = []

        logger.info(
            "Sending message",
            conversation_id=self.id,
            prompt_id=prompt_id,
            is_text=isinstance(message, str),
        )

        try:
            next_message: TurnMessage = message
            turn_count = 0
            while True:
                if self._config.turn_limit_reached(turn_count):
                    logger.warning(
                        "Max session turns reached",
                        conversation_id=self.id,
                        limit=self._config.max_session_turns,
                    )
                    limit_event = MaxSessionTurnsEvent(
                        limit=self._config.max_session_turns
                    )
                    events.append(limit_event)
                    await self._emit(limit_event)
                    break

                turn_count += 1
                turn = Turn(self._generator, prompt_id)
                stopped = False
                async for event in turn.run(next_message, signal):
                    events.append(event)
                    await self._emit(event)
                    if isinstance(event, ErrorEvent | UserCancelledEvent):
                        stopped = True

                if stopped or signal.cancelled or not turn.pending_tool_calls:
                    break

                completed = await self._run_tool_calls(turn, signal)
                if signal.cancelled:
                    break
                if all(c.status == ToolCallStatus.CANCELLED for c in completed):
                    # すべて拒否された場合はモデルに結果を返さずに終了する
                    logger.info(
                        "All tool calls cancelled, ending conversation loop",
                        conversation_id=self.id,
                    )
                    break
                next_message = build_function_responses(completed)
        finally:
            self._active_signal = None

        logger.info(
            "Message processing finished",
            conversation_id=self.id,
            event_count=len(events),
        )
        return events

    async def _run_tool_calls(
        self, turn: Turn, signal: CancellationSignal
    ) -> list[ToolCall]:
        """
        ターンのツール呼び出しを Scheduler で実行し、完了まで待つ.

        Args:
            turn: ツール呼び出しを含むターン
            signal: キャンセルシグナル

        Returns:
            終端状態のスナップショット
        """
        observer: ToolCallsUpdateCallback | None = None

        def dispatch(snapshot: list[ToolCall]) -> None:
            if observer is not None:
                observer(snapshot)

        scheduler = ToolCallScheduler(
            self._registry, on_update=dispatch, policy=self._policy
        )
        if self._observer_factory is not None:
            observer = self._observer_factory(scheduler)

        await scheduler.schedule(turn.pending_tool_calls, signal)

        if observer is None:
            for call in scheduler.tool_calls:
                if call.status != ToolCallStatus.AWAITING_APPROVAL:
                    continue
                logger.warning(
                    "No confirmation handler configured, cancelling tool call",
                    conversation_id=self.id,
                    call_id=call.call_id,
                    tool=call.name,
                )
                scheduler.confirm(call.call_id, ConfirmationOutcome.CANCEL)

        return await scheduler.wait_until_complete()

    async def _emit(self, event: TurnEvent) -> None:
        """イベントコールバックを安全に実行する."""
        if self._on_event_callback is None:
            return
        try:
            await self._on_event_callback(event)
        except Exception:
            logger.exception(
                "Error in event callback",
                conversation_id=self.id,
                event_type=event.type.value,
            )
