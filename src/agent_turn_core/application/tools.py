"""Tool capability interface and registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from typing import TYPE_CHECKING, Any

from agent_turn_core.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_turn_core.application.cancellation import CancellationSignal
    from agent_turn_core.application.models import ConfirmationDetails, ToolResult

# 実行中の途中経過を通知するコールバック
OutputUpdateCallback = Callable[[str], None]

logger = get_logger(__name__)


class ToolRegistrationError(Exception):
    """ツール登録に失敗した場合の例外."""

    def __init__(self, name: str, message: str) -> None:
        """
        Initialize ToolRegistrationError.

        Args:
            name: 登録しようとしたツール名
            message: エラーメッセージ
        """
        super().__init__(f"Cannot register tool '{name}': {message}")
        self.name = name


class ToolNotFoundError(Exception):
    """指定されたツールが登録されていない場合の例外."""

    def __init__(self, name: str) -> None:
        """
        Initialize ToolNotFoundError.

        Args:
            name: 見つからなかったツール名
        """
        super().__init__(f"Tool '{name}' not found in registry")
        self.name = name


class BaseTool(ABC):
    """
    ツール実装の基底クラス.

    サブクラスは execute() を実装する。承認が必要なツールは
    should_confirm() をオーバーライドして ConfirmationDetails を返す。
    引数の検査が必要なツールは validate_args() をオーバーライドする。
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    is_read_only: bool = False

    def validate_args(self, args: Mapping[str, Any]) -> str | None:
        """
        引数を検査する.

        Args:
            args: ツール呼び出しの引数

        Returns:
            不正な場合はエラーメッセージ、問題なければNone
        """
        return None

    async def should_confirm(
        self, args: Mapping[str, Any], signal: CancellationSignal
    ) -> ConfirmationDetails | None:
        """
        この呼び出しに人間の承認が必要かどうかを判定する.

        Args:
            args: ツール呼び出しの引数
            signal: ターン共有のキャンセルシグナル

        Returns:
            承認が必要な場合はプロンプト情報、不要な場合はNone
        """
        return None

    @abstractmethod
    async def execute(
        self,
        args: Mapping[str, Any],
        signal: CancellationSignal,
        update_output: OutputUpdateCallback | None = None,
    ) -> ToolResult:
        """
        ツールを実行する.

        Args:
            args: 確定済みの引数
            signal: ターン共有のキャンセルシグナル（ツール側で尊重すること）
            update_output: 途中経過の出力を通知するコールバック

        Returns:
            実行結果（失敗時は error を設定した ToolResult を返すか例外を送出）
        """

    @property
    def title(self) -> str:
        """表示用のツール名."""
        return self.display_name or self.name


class ToolRegistry:
    """ツール名 → 実装のレジストリ."""

    def __init__(self, tools: list[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        """
        ツールを登録する.

        Args:
            tool: 登録するツール

        Raises:
            ToolRegistrationError: 名前が空、または既に登録済みの場合
        """
        if not tool.name:
            raise ToolRegistrationError(tool.name, "tool name must not be empty")
        if tool.name in self._tools:
            raise ToolRegistrationError(tool.name, "a tool with this name already exists")

        self._tools[tool.name] = tool
        logger.debug("Registered tool", tool=tool.name, read_only=tool.is_read_only)

    def get(self, name: str) -> BaseTool | None:
        """ツールを取得する（未登録ならNone）."""
        return self._tools.get(name)

    def require(self, name: str) -> BaseTool:
        """
        ツールを取得する.

        Raises:
            ToolNotFoundError: 未登録の場合
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def names(self) -> list[str]:
        """登録済みのツール名一覧（登録順）."""
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
