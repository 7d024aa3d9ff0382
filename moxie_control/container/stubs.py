"""Stub command runner for development and testing without a container engine.

StubCommandRunner answers commands from a table of scripted responses and
records every call, so callers can assert on exactly which engine commands
were issued.
"""

from __future__ import annotations

import asyncio
import os
from typing import Union

from moxie_control.container.runner import CommandRunner, ProcessResult

Response = Union[ProcessResult, BaseException]


class StubCommandRunner(CommandRunner):
    """Returns scripted results keyed by command prefix.

    Commands are matched on ``(basename(executable), *args)``; the longest
    registered prefix wins. A response list is consumed in order and its last
    element repeats. Unmatched commands return ``default``.

    Args:
        default: Result for commands with no scripted response.
    """

    def __init__(self, default: ProcessResult | None = None) -> None:
        self._default = default if default is not None else ProcessResult(exit_code=0)
        self._responses: dict[tuple[str, ...], list[Response]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.gate: asyncio.Event | None = None

    def set_response(self, prefix: tuple[str, ...], *responses: Response) -> None:
        """Script the response(s) for commands starting with ``prefix``.

        Args:
            prefix: Leading words, e.g. ``("docker", "ps")``.
            responses: ProcessResult values or exceptions to raise, in order.
        """
        self._responses[tuple(prefix)] = list(responses)

    def count(self, *prefix: str) -> int:
        """Number of recorded calls starting with ``prefix``."""
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)

    async def run(
        self,
        executable: str,
        args: list[str],
        timeout: float | None = None,
    ) -> ProcessResult:
        command = (os.path.basename(executable), *args)
        self.calls.append(command)

        if self.gate is not None:
            await self.gate.wait()

        response = self._lookup(command)
        if isinstance(response, BaseException):
            raise response
        return response

    def _lookup(self, command: tuple[str, ...]) -> Response:
        best: tuple[str, ...] | None = None
        for prefix in self._responses:
            if command[: len(prefix)] == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return self._default

        queue = self._responses[best]
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0] if queue else self._default
