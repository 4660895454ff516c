"""
Call assist package.

Keep imports lightweight so modules like `src.assist.audio` or
`src.assist.pricing` can be used without loading the full runtime dependency
set (dotenv, openai, sounddevice) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.assist.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.assist.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
