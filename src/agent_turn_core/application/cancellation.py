"""Cooperative cancellation signal shared across a turn."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from agent_turn_core.infrastructure.logging import get_logger

logger = get_logger(__name__)

CancelCallback = Callable[[], None]


class CancellationSignal:
    """
    ターン全体で共有するキャンセルシグナル.

    cancel() は冪等で、登録済みコールバックを同期的に呼び出す。
    コールバック内の例外はログに記録し、他のコールバックの実行は継続する。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        """キャンセル済みかどうか."""
        return self._event.is_set()

    def cancel(self) -> None:
        """シグナルを発火する（二回目以降は何もしない）."""
        if self._event.is_set():
            return

        logger.info("Cancellation requested", callback_count=len(self._callbacks))
        self._event.set()

        # コールバック内で remove_callback されても安全なようにコピーして回す
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception(
                    "Error in cancellation callback",
                    callback_name=getattr(callback, "__name__", repr(callback)),
                )

    async def wait(self) -> None:
        """シグナルが発火するまで待機する."""
        await self._event.wait()

    def add_callback(self, callback: CancelCallback) -> None:
        """
        キャンセル時に呼ばれるコールバックを登録する.

        既にキャンセル済みの場合は即座に呼び出す。

        Args:
            callback: 引数なしのコールバック関数
        """
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: CancelCallback) -> None:
        """登録済みのコールバックを解除する（未登録なら何もしない）."""
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass
