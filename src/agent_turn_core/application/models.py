"""Data models for cross-layer communication."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class ToolCallStatus(str, Enum):
    """ツール呼び出しの状態."""

    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """終端状態（success / error / cancelled）かどうか."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    ToolCallStatus.SUCCESS,
    ToolCallStatus.ERROR,
    ToolCallStatus.CANCELLED,
})


class ConfirmationOutcome(str, Enum):
    """ユーザーの承認判断."""

    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    MODIFY = "modify"  # 引数を修正してから実行
    CANCEL = "cancel"


class ConfirmationKind(str, Enum):
    """承認プロンプトの種別."""

    EDIT = "edit"
    EXEC = "exec"
    INFO = "info"


def _freeze_args(args: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(args))


@dataclass(frozen=True)
class ToolCallRequest:
    """ツール呼び出し要求（Turn → Scheduler）."""

    call_id: str
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    prompt_id: str = ""
    is_client_initiated: bool = False

    def __post_init__(self) -> None:
        # 呼び出し元の dict を変更されても要求内容は変わらない
        object.__setattr__(self, "args", _freeze_args(self.args))


@dataclass(frozen=True)
class ConfirmationDetails:
    """承認プロンプトの情報（Tool → Observer）."""

    kind: ConfirmationKind
    title: str
    prompt: str = ""
    file_name: str | None = None
    diff: str | None = None
    command: str | None = None
    urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolResult:
    """ツール実行結果."""

    llm_content: str
    display: str = ""
    error: str | None = None

    @property
    def is_error(self) -> bool:
        """実行失敗を表す結果かどうか."""
        return self.error is not None


@dataclass(frozen=True)
class ToolCall:
    """ツール呼び出しのスナップショット（Scheduler → Observer）."""

    request: ToolCallRequest
    status: ToolCallStatus
    args: Mapping[str, Any]
    confirmation: ConfirmationDetails | None = None
    live_output: str | None = None
    result: ToolResult | None = None
    error: str | None = None
    error_type: str | None = None
    outcome: ConfirmationOutcome | None = None
    duration_ms: float | None = None

    @property
    def call_id(self) -> str:
        """呼び出しID."""
        return self.request.call_id

    @property
    def name(self) -> str:
        """ツール名."""
        return self.request.name

    @property
    def is_terminal(self) -> bool:
        """終端状態かどうか."""
        return self.status.is_terminal


@dataclass(frozen=True)
class FunctionResponse:
    """ツール実行結果をモデルへ返すためのペイロード."""

    call_id: str
    name: str
    response: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "response", _freeze_args(self.response))
