"""Approval policy deciding which confirmations can be skipped."""

from __future__ import annotations

import fnmatch
import json
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from agent_turn_core.application.models import ConfirmationKind
from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.models import ConfirmationDetails, ToolCallRequest

logger = get_logger(__name__)

# モード起因の自動承認時に返すルール名
_YOLO_RULE = "mode:yolo"
_AUTO_EDIT_RULE = "mode:auto_edit"


class ApprovalMode(str, Enum):
    """ツール承認モード."""

    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"  # edit 種別の承認を省略
    YOLO = "yolo"  # すべての承認を省略


def _args_key(args: object) -> str:
    """ツール引数をパターンマッチング用の文字列に変換する."""
    try:
        return json.dumps(args, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(args)


def _validate_pattern(pattern: str) -> None:
    if not pattern or len(pattern) > 200:
        msg = f"Pattern must be 1-200 characters, got {len(pattern)}"
        raise ValueError(msg)
    if "\n" in pattern or "\r" in pattern:
        msg = "Pattern must not contain newlines"
        raise ValueError(msg)


class ApprovalPolicy:
    """
    承認ポリシー.

    「常に承認」の判断を記憶し、以降の同種の呼び出しで承認を省略する。
    Scheduler からは外部コラボレーターとして参照される。
    """

    def __init__(
        self,
        mode: ApprovalMode = ApprovalMode.DEFAULT,
        patterns: list[str] | None = None,
        store_path: Path | None = None,
    ) -> None:
        """
        Initialize ApprovalPolicy.

        Args:
            mode: 承認モード
            patterns: 初期パターン（設定ファイル由来）
            store_path: 追加パターンの保存先JSONファイル（Noneなら保存しない）
        """
        self.mode = mode
        self._store_path = store_path
        self._patterns: list[str] = []
        for pattern in [*(patterns or []), *self._load_stored_patterns()]:
            if pattern not in self._patterns:
                self._patterns.append(pattern)

    @property
    def patterns(self) -> list[str]:
        """現在有効なパターン一覧."""
        return list(self._patterns)

    def _load_stored_patterns(self) -> list[str]:
        if self._store_path is None or not self._store_path.exists():
            return []
        try:
            data = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError):
            logger.warning(
                "Failed to read auto-approve file",
                path=str(self._store_path),
                exc_info=True,
            )
            return []
        if not isinstance(data, list):
            logger.warning(
                "Auto-approve file must contain a JSON array",
                path=str(self._store_path),
            )
            return []
        return [p for p in data if isinstance(p, str)]

    def _save(self) -> None:
        if self._store_path is None:
            return
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            self._store_path.write_text(
                json.dumps(self._patterns, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError:
            logger.exception(
                "Failed to write auto-approve file", path=str(self._store_path)
            )
            raise

    def add_pattern(self, pattern: str) -> bool:
        """
        自動承認パターンを追加する.

        Args:
            pattern: 追加するパターン（例: "read_file:*"）

        Returns:
            新規追加された場合 True、既に存在していた場合 False

        Raises:
            ValueError: パターンが不正な場合
            OSError: 保存に失敗した場合
        """
        _validate_pattern(pattern)
        if pattern in self._patterns:
            return False
        self._patterns.append(pattern)
        self._save()
        logger.info("Added auto-approve pattern", pattern=pattern)
        return True

    def remove_pattern(self, pattern: str) -> bool:
        """
        自動承認パターンを削除する.

        Returns:
            削除された場合 True、見つからなかった場合 False
        """
        if pattern not in self._patterns:
            return False
        self._patterns.remove(pattern)
        self._save()
        logger.info("Removed auto-approve pattern", pattern=pattern)
        return True

    def remember(self, request: ToolCallRequest) -> str:
        """
        「常に承認」の判断を記憶する.

        ツール単位のワイルドカード（``{tool}:*``）として保存する。

        Args:
            request: 承認されたツール呼び出し要求

        Returns:
            記憶したパターン
        """
        pattern = f"{request.name}:*"
        self.add_pattern(pattern)
        return pattern

    def is_auto_approved(
        self, request: ToolCallRequest, details: ConfirmationDetails | None = None
    ) -> str | None:
        """
        ツール呼び出しの承認を省略できるか判定する.

        パターン形式: ``{tool_pattern}:{args_pattern}``
        - ``tool_pattern``: ツール名の fnmatch パターン（大文字小文字無視）
        - ``args_pattern``: JSON化した引数の fnmatch パターン（大文字小文字区別あり）
        - コロンなしのパターン（例: ``read_file``）は ``read_file:*`` と同等。

        Args:
            request: ツール呼び出し要求
            details: ツールが返した承認プロンプト情報

        Returns:
            マッチしたルール。承認が必要な場合は None
        """
        if self.mode == ApprovalMode.YOLO:
            return _YOLO_RULE
        if (
            self.mode == ApprovalMode.AUTO_EDIT
            and details is not None
            and details.kind == ConfirmationKind.EDIT
        ):
            return _AUTO_EDIT_RULE

        raw_args = _args_key(dict(request.args))
        for pattern in self._patterns:
            if ":" in pattern:
                tool_pat, args_pat = pattern.split(":", 1)
            else:
                tool_pat, args_pat = pattern, "*"
            if fnmatch.fnmatch(request.name.lower(), tool_pat.lower()) and (
                fnmatch.fnmatchcase(raw_args, args_pat)
            ):
                return pattern
        return None
