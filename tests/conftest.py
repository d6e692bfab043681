"""Shared fixtures."""

from __future__ import annotations

import pytest
from fakes import (
    BrokenConfirmTool,
    ErrorResultTool,
    FailingTool,
    ReadFileTool,
    Recorder,
    ReplaceTool,
    ShellTool,
    WriteFileTool,
)

from agent_turn_core.application.tools import ToolRegistry


@pytest.fixture
def read_tool() -> ReadFileTool:
    """read_file ツールを作成する."""
    return ReadFileTool()


@pytest.fixture
def write_tool() -> WriteFileTool:
    """write_file ツールを作成する."""
    return WriteFileTool()


@pytest.fixture
def shell_tool() -> ShellTool:
    """run_shell_command ツールを作成する."""
    return ShellTool()


@pytest.fixture
def replace_tool() -> ReplaceTool:
    """replace ツールを作成する."""
    return ReplaceTool()


@pytest.fixture
def registry(
    read_tool: ReadFileTool,
    write_tool: WriteFileTool,
    shell_tool: ShellTool,
    replace_tool: ReplaceTool,
) -> ToolRegistry:
    """テスト用ツールを登録したレジストリを作成する."""
    return ToolRegistry(
        [
            read_tool,
            write_tool,
            shell_tool,
            replace_tool,
            FailingTool(),
            BrokenConfirmTool(),
            ErrorResultTool(),
        ]
    )


@pytest.fixture
def recorder() -> Recorder:
    """通知を記録するオブザーバーを作成する."""
    return Recorder()
