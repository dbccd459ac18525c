# -*- coding: utf-8 -*-
"""Ordered, run-once release of session resources.

Resources are registered as they are acquired and released in reverse order.
Each release step runs at most once, and a failing step is logged and does not
stop the steps after it.

Examples
--------
```python
shutdown = ShutdownSequence("session")
await instrument.connect()
shutdown.register("instrument", instrument.disconnect)
...
await shutdown.close()  # safe to call again, does nothing the 2nd time
```
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

ReleaseFn = Callable[[], Awaitable[Any] | Any]


class ShutdownSequence:
    def __init__(self, name: str = "shutdown"):
        self.name = name
        self._steps: list[tuple[str, ReleaseFn]] = []
        self._closed = False
        self._released: list[str] = []
        self._failed: list[str] = []

    def register(self, step_name: str, release: ReleaseFn) -> None:
        if self._closed:
            raise RuntimeError(
                f"{self.name}: cannot register '{step_name}' after close()"
            )
        logger.trace("{}: registered release step '{}'", self.name, step_name)
        self._steps.append((step_name, release))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def released(self) -> list[str]:
        """Names of steps that completed, in the order they ran."""
        return list(self._released)

    @property
    def failed(self) -> list[str]:
        return list(self._failed)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._steps:
            step_name, release = self._steps.pop()
            try:
                ret = release()
                if inspect.isawaitable(ret):
                    await ret
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "{}: release step '{}' failed, continuing.", self.name, step_name
                )
                self._failed.append(step_name)
            else:
                logger.debug("{}: released '{}'", self.name, step_name)
                self._released.append(step_name)
