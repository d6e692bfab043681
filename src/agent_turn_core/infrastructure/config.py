"""Configuration management."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agent_turn_core.application.policy import ApprovalMode

logger = logging.getLogger(__name__)


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="latest.log の出力レベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(
        default=7, ge=0, description="ログローテーションの保持日数"
    )

    # ツール承認設定
    approval_mode: ApprovalMode = Field(
        default=ApprovalMode.DEFAULT,
        description="ツール承認モード（default / auto_edit / yolo）",
    )
    # 環境変数ではJSON配列とカンマ区切りの両方を受け付けるため NoDecode
    auto_approve_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="自動承認パターン（例: read_file:*）",
    )
    auto_approve_file: Path | None = Field(
        default=None,
        description="「常に承認」で追加されたパターンの保存先",
    )
    confirmation_timeout: float | None = Field(
        default=None,
        ge=0,
        description="承認待ちのタイムアウト秒数（None または 0 で無期限）",
    )

    # ターン設定
    max_session_turns: int = Field(
        default=100,
        description="1回の send_message で実行する最大ターン数（負数で無制限）",
    )

    @field_validator("auto_approve_patterns", mode="before")
    @classmethod
    def parse_auto_approve_patterns(cls, v: str | list[str]) -> list[str]:
        """auto_approve_patternsをパースする（JSON配列またはカンマ区切り文字列）."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return [p.strip() for p in v.split(",") if p.strip()]
            if isinstance(parsed, list):
                return [str(p) for p in parsed]
            return [v]
        return v

    @field_validator("auto_approve_file", mode="before")
    @classmethod
    def parse_auto_approve_file(cls, v: str | Path | None) -> Path | None:
        """auto_approve_fileをPathに変換する（空文字列はNone）."""
        if isinstance(v, str):
            return Path(v) if v else None
        return v

    @property
    def effective_confirmation_timeout(self) -> float | None:
        """
        実際に使用する承認待ちタイムアウトを返す.

        Returns:
            タイムアウト秒数。無期限の場合はNone
        """
        if not self.confirmation_timeout:
            return None
        return self.confirmation_timeout

    def turn_limit_reached(self, turn_count: int) -> bool:
        """
        ターン数が上限に達したかどうかを判定する.

        Args:
            turn_count: 実行済みのターン数

        Returns:
            上限に達した場合True
        """
        if self.max_session_turns < 0:
            return False
        return turn_count >= self.max_session_turns


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
        logger.debug("Configuration loaded from environment")
    return _config
