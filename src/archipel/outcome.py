"""ベストエフォートな外部処理の結果表現。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """処理結果と、劣化した場合はその理由を保持します。

    `degraded` が None でなければ、処理は失敗しフォールバック値が `value` に入っています。
    """

    value: T
    degraded: str | None = None

    @property
    def ok(self) -> bool:
        return self.degraded is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fallback(cls, value: T, reason: str) -> "Outcome[T]":
        return cls(value=value, degraded=reason or "unknown")
