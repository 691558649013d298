"""Interface to the external text generator that authors plans and code."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable


@dataclass(slots=True)
class GeneratorResult:
    """Raw outcome of one generator invocation."""

    text: str
    session_token: Optional[str] = None
    cost_usd: float = 0.0
    is_error: bool = False


@runtime_checkable
class Generator(Protocol):
    """Black-box generator run as a subprocess by the host application.

    At most one invocation is in flight per session; timeouts and
    cancellation belong to the implementation.
    """

    async def run(self, prompt: str, working_dir: Path) -> GeneratorResult: ...


__all__ = ["Generator", "GeneratorResult"]
