"""ファイル内容のダイジェストを計算するユーティリティ。"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 8


def hash_bytes(data: bytes) -> str:
    """バイト列の SHA-256 ダイジェストを 16 進文字列で返します。"""

    return hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    return hash_bytes(text.encode("utf-8"))


def short_hash(data: str | bytes, length: int = FINGERPRINT_LENGTH) -> str:
    """出力ファイル名のフィンガープリントに用いる短いハッシュ。"""

    if isinstance(data, str):
        data = data.encode("utf-8")
    return hash_bytes(data)[:length]


def hash_file(path: str | Path) -> str | None:
    """ファイルのダイジェストを返します。存在しない・読めない場合は None。"""

    candidate = Path(path)
    try:
        if not candidate.is_file():
            return None
        return hash_bytes(candidate.read_bytes())
    except OSError:
        logger.debug("ハッシュ計算のための読み込みに失敗しました: %s", candidate, exc_info=True)
        return None
