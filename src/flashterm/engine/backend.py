"""Common capability shared by the local and remote backends."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol, runtime_checkable

from .events import OutputEvent


EmitCallback = Callable[[OutputEvent], Awaitable[None]]


@runtime_checkable
class ShellBackend(Protocol):
    """An execution target for commands.

    Output is never returned from ``write``; backends push it through the
    emit callback they were built with.
    """

    kind: str

    async def write(self, command_text: str) -> None:
        ...

    def is_alive(self) -> bool:
        ...

    def close(self) -> None:
        ...
