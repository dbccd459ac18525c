"""A `SimulatedCalibrator` served over TCP, one reply line per query."""

from __future__ import annotations

import asyncio

from loguru import logger

from pressurecal.device.mock.mock_instrument import SimulatedCalibrator


class SimulatedInstrumentServer:
    def __init__(
        self,
        calibrator: SimulatedCalibrator | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
    ):
        self.calibrator = calibrator if calibrator is not None else SimulatedCalibrator()
        self.host = host
        self.port = port
        self.connection_count = 0
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> int:
        """Start listening. Returns the bound port (useful with port=0)."""
        self._server = await asyncio.start_server(
            self._handle_client, self.host, self.port
        )
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Simulated instrument listening on {}:{}", self.host, self.port)
        return self.port

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    def drop_clients(self) -> None:
        """Close every open client connection (the listener stays up)."""
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            self.drop_clients()
            await self._server.wait_closed()
            self._server = None
            logger.info("Simulated instrument on port {} stopped", self.port)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self.connection_count += 1
        self._writers.add(writer)
        peer = writer.get_extra_info("peername")
        logger.debug("Simulated instrument: client {} connected", peer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode("ascii", errors="replace").strip()
                if not text:
                    continue
                response = self.calibrator.handle(text)
                if response is None:
                    continue
                if self.calibrator.response_delay > 0:
                    await asyncio.sleep(self.calibrator.response_delay)
                writer.write((response + "\n").encode("ascii"))
                await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug("Simulated instrument: client {} dropped: {!r}", peer, e)
        finally:
            self._writers.discard(writer)
            writer.close()
            logger.debug("Simulated instrument: client {} disconnected", peer)
