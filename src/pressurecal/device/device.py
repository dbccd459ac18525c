"""Device base class.

Both hardware endpoints of a calibration run (the reference instrument and
each wireless peripheral manager) derive from `Device`, which provides:

1. Configuration validation (`required_config`)
2. A common async connection interface
3. Access to the notification queue

Required Methods
----------------
All device implementations must override:

- connect(): Open the connection to the hardware
- disconnect(): Close it (must be idempotent)
- is_connected(): Check connection status
"""

from __future__ import annotations

import asyncio
from typing import Type

from loguru import logger

from pressurecal.types.messages import Notification, notify


class Device:
    """Base class for hardware endpoints.

    Attributes
    ----------
    required_config : dict[str, Type]
        Required configuration parameters and their types, checked in
        `__init__` against the keyword arguments given.

    Examples
    --------
    ```python
    class MyGauge(Device):
        required_config = {"host": str, "port": int}

        async def connect(self) -> bool:
            ...
    ```
    """

    required_config: dict[str, Type] = {}

    def __init__(self, notif_queue: asyncio.Queue | None = None, **config_kwargs):
        self.notif_queue = notif_queue
        for key, value in config_kwargs.items():
            setattr(self, key, value)
        for key, value in self.required_config.items():
            if not hasattr(self, key):
                logger.error(
                    f"Device {self.__class__.__name__} missing required config key: "
                    + f"{key}"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} missing required config "
                    + f"key: {key}"
                )
            if not isinstance(getattr(self, key), value):
                logger.error(
                    f"Device {self.__class__.__name__} config key {key} "
                    + f"has wrong type: {type(getattr(self, key))} (expected {value})"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} config key {key} has "
                    + f"wrong type: {type(getattr(self, key))} (expected {value})"
                )

    def _notify(self, notif: Notification) -> None:
        notify(self.notif_queue, notif)

    async def connect(self) -> bool:
        raise NotImplementedError()

    async def disconnect(self) -> None:
        raise NotImplementedError()

    def is_connected(self) -> bool:
        raise NotImplementedError()
