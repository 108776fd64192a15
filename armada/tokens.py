"""Token 估算

用 tiktoken 的 cl100k_base 估算 token 数，用于调用前的成本预测。
编码器不可用（例如离线无法下载词表）时按 4 字符 / token 估算。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import tiktoken

logger = logging.getLogger(__name__)

ENCODING_NAME = "cl100k_base"

_encoding: Optional[Any] = None
_loaded = False
_lock = threading.Lock()


def get_encoding() -> Optional[Any]:
    """获取编码器，失败返回 None"""
    global _encoding, _loaded
    with _lock:
        if not _loaded:
            _loaded = True
            try:
                _encoding = tiktoken.get_encoding(ENCODING_NAME)
            except Exception as e:
                logger.warning(f"tiktoken 编码器不可用，按字符估算: {e}")
                _encoding = None
    return _encoding


def estimate_tokens(text: str) -> int:
    """估算文本的 token 数"""
    if not text:
        return 0
    encoding = get_encoding()
    if encoding is None:
        return max(1, len(text) // 4)
    return len(encoding.encode(text, disallowed_special=()))
