"""Turn - streams one conversational turn as typed events."""

from __future__ import annotations

import asyncio
import contextlib
import re
import secrets
import time
from collections.abc import AsyncGenerator, AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from agent_turn_core.application.models import FunctionResponse, ToolCallRequest
from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.cancellation import CancellationSignal

logger = get_logger(__name__)

# ターンへの入力（テキストまたはツール実行結果）
TurnMessage = str | Sequence[FunctionResponse]

# 思考テキスト先頭の **Subject** を抜き出す
_THOUGHT_SUBJECT_PATTERN = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


class TurnEventType(str, Enum):
    """ターンイベントの種別."""

    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    ERROR = "error"
    USER_CANCELLED = "user_cancelled"
    FINISHED = "finished"
    MAX_SESSION_TURNS = "max_session_turns"


@dataclass(frozen=True)
class ContentEvent:
    """モデル応答のテキスト断片."""

    text: str
    type: TurnEventType = field(default=TurnEventType.CONTENT, init=False)


@dataclass(frozen=True)
class ThoughtEvent:
    """モデルの思考の要約."""

    subject: str
    description: str
    type: TurnEventType = field(default=TurnEventType.THOUGHT, init=False)


@dataclass(frozen=True)
class ToolCallRequestEvent:
    """ツール呼び出し要求."""

    request: ToolCallRequest
    type: TurnEventType = field(default=TurnEventType.TOOL_CALL_REQUEST, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    """ストリーム途中のエラー（このイベントでストリームは終了する）."""

    message: str
    status: int | None = None
    type: TurnEventType = field(default=TurnEventType.ERROR, init=False)


@dataclass(frozen=True)
class UserCancelledEvent:
    """キャンセルシグナルによる中断."""

    type: TurnEventType = field(default=TurnEventType.USER_CANCELLED, init=False)


@dataclass(frozen=True)
class FinishedEvent:
    """ターン終了."""

    reason: str | None = None
    type: TurnEventType = field(default=TurnEventType.FINISHED, init=False)


@dataclass(frozen=True)
class MaxSessionTurnsEvent:
    """1回のメッセージ送信で実行できるターン数の上限に達した."""

    limit: int
    type: TurnEventType = field(default=TurnEventType.MAX_SESSION_TURNS, init=False)


TurnEvent = (
    ContentEvent
    | ThoughtEvent
    | ToolCallRequestEvent
    | ErrorEvent
    | UserCancelledEvent
    | FinishedEvent
    | MaxSessionTurnsEvent
)


@dataclass(frozen=True)
class FunctionCall:
    """モデルが要求した関数呼び出し."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class ModelChunk:
    """モデルのストリーミング応答の1チャンク."""

    text: str = ""
    thought: str = ""
    function_calls: tuple[FunctionCall, ...] = ()
    finish_reason: str | None = None


class ContentGenerator(Protocol):
    """モデルプロバイダーへの接続（外部コラボレーター）."""

    def generate(
        self, message: TurnMessage, signal: CancellationSignal
    ) -> AsyncGenerator[ModelChunk, None]:
        """メッセージを送信し、応答チャンクを順に返す（async generator）."""
        ...


class TurnStateError(Exception):
    """同じ Turn を二度実行しようとした場合の例外."""

    def __init__(self, prompt_id: str) -> None:
        """
        Initialize TurnStateError.

        Args:
            prompt_id: ターンID
        """
        super().__init__(f"Turn {prompt_id} has already been run")
        self.prompt_id = prompt_id


def parse_thought(text: str) -> ThoughtEvent:
    """
    思考テキストを件名と本文に分割する.

    ``**Subject** description`` 形式を想定し、件名がない場合は本文のみとする。

    Args:
        text: モデルが返した思考テキスト

    Returns:
        ThoughtEvent
    """
    match = _THOUGHT_SUBJECT_PATTERN.search(text)
    if match is None:
        return ThoughtEvent(subject="", description=text.strip())
    subject = match.group(1).strip()
    description = (text[: match.start()] + text[match.end() :]).strip()
    return ThoughtEvent(subject=subject, description=description)


def generate_call_id(name: str) -> str:
    """モデルが ID を付けなかった呼び出しに ID を割り当てる."""
    return f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _validate_message(message: TurnMessage) -> None:
    if isinstance(message, str):
        return
    if not message:
        msg = "function response message must not be empty"
        raise ValueError(msg)
    if not all(isinstance(part, FunctionResponse) for part in message):
        msg = "message must be a string or a sequence of FunctionResponse"
        raise TypeError(msg)


class Turn:
    """
    1回の会話ターン.

    run() はモデルの応答を TurnEvent の列として返す。ストリームは一度きりで再実行できない。
    途中のエラーは ErrorEvent として返し、例外として呼び出し元に伝播させない。
    """

    def __init__(self, generator: ContentGenerator, prompt_id: str) -> None:
        """
        Initialize Turn.

        Args:
            generator: モデルプロバイダーへの接続
            prompt_id: ターンID（ToolCallRequest に引き継がれる）
        """
        self._generator = generator
        self.prompt_id = prompt_id
        self.pending_tool_calls: list[ToolCallRequest] = []
        self.finish_reason: str | None = None
        self._started = False

    async def run(
        self, message: TurnMessage, signal: CancellationSignal
    ) -> AsyncIterator[TurnEvent]:
        """
        ターンを実行する.

        Args:
            message: 送信するテキスト、またはツール実行結果
            signal: ターン共有のキャンセルシグナル

        Yields:
            TurnEvent（FinishedEvent / ErrorEvent / UserCancelledEvent のいずれかで終了）

        Raises:
            TurnStateError: 既に実行済みの場合
        """
        if self._started:
            raise TurnStateError(self.prompt_id)
        self._started = True
        _validate_message(message)

        logger.debug("Starting turn", prompt_id=self.prompt_id)
        seen_call_ids: set[str] = set()

        try:
            stream = self._generator.generate(message, signal)
            async with contextlib.aclosing(stream):
                while True:
                    chunk = await _next_chunk(stream, signal)
                    if chunk is None:
                        break
                    if signal.cancelled:
                        logger.info(
                            "Turn cancelled mid-stream", prompt_id=self.prompt_id
                        )
                        yield UserCancelledEvent()
                        return

                    if chunk.thought:
                        yield parse_thought(chunk.thought)

                    if chunk.text:
                        yield ContentEvent(text=chunk.text)

                    for function_call in chunk.function_calls:
                        request = self._build_request(function_call)
                        if request.call_id in seen_call_ids:
                            logger.error(
                                "Duplicate tool call id in turn",
                                prompt_id=self.prompt_id,
                                call_id=request.call_id,
                            )
                            yield ErrorEvent(
                                message=(
                                    f"Duplicate tool call id '{request.call_id}' in turn"
                                )
                            )
                            return
                        seen_call_ids.add(request.call_id)
                        self.pending_tool_calls.append(request)
                        yield ToolCallRequestEvent(request=request)

                    if chunk.finish_reason:
                        self.finish_reason = chunk.finish_reason

        except Exception as e:
            if signal.cancelled:
                yield UserCancelledEvent()
                return
            logger.exception("Error while streaming turn", prompt_id=self.prompt_id)
            yield ErrorEvent(
                message=str(e) or type(e).__name__,
                status=_error_status(e),
            )
            return

        if signal.cancelled:
            yield UserCancelledEvent()
            return

        logger.debug(
            "Turn finished",
            prompt_id=self.prompt_id,
            finish_reason=self.finish_reason,
            tool_call_count=len(self.pending_tool_calls),
        )
        yield FinishedEvent(reason=self.finish_reason)

    def _build_request(self, function_call: FunctionCall) -> ToolCallRequest:
        return ToolCallRequest(
            call_id=function_call.id or generate_call_id(function_call.name),
            name=function_call.name,
            args=dict(function_call.args or {}),
            prompt_id=self.prompt_id,
        )


def _error_status(error: Exception) -> int | None:
    """プロバイダー例外から HTTP ステータスを取り出す（なければNone）."""
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


async def _next_chunk(
    stream: AsyncGenerator[ModelChunk, None], signal: CancellationSignal
) -> ModelChunk | None:
    """
    次のチャンクを待つ.

    シグナルが先に発火した場合は待機を打ち切る。

    Returns:
        次のチャンク（ストリーム終端またはキャンセル時はNone）
    """
    if signal.cancelled:
        return None

    async def pull() -> ModelChunk:
        return await anext(stream)

    next_task = asyncio.create_task(pull())
    cancel_task = asyncio.create_task(signal.wait())
    try:
        await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        next_task.cancel()
        raise
    finally:
        cancel_task.cancel()

    if not next_task.done():
        # シグナルを無視して止まっているプロバイダーの待機を打ち切る
        next_task.cancel()
        await asyncio.gather(next_task, return_exceptions=True)
        return None

    try:
        return next_task.result()
    except StopAsyncIteration:
        return None
