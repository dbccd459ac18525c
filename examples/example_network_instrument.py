import asyncio

import pressurecal.device
import pressurecal.device.mock
import pressurecal.types
import pressurecal.util

# Drives the real TCP link against a simulated instrument on localhost.
# Start one first with `pressurecal mock-server -p 3490`, or set SERVE_LOCALLY.
HOST = "127.0.0.1"
PORT = 3490
SERVE_LOCALLY = True

pressurecal.util.start_log(log_to_stdout=True, log_level="DEBUG")


async def main():
    server = None
    port = PORT
    if SERVE_LOCALLY:
        server = pressurecal.device.mock.SimulatedInstrumentServer(port=0)
        port = await server.start()

    settings = pressurecal.types.InstrumentSettings(
        host=HOST,
        port=port,
        command_delay=0.1,
        enforce_settle_delay=0.1,
        poll_interval=0.2,
    )
    instrument = pressurecal.device.RealInstrument.from_settings(settings)
    await instrument.connect()
    try:
        print(f"connected to: {await instrument.identify()}")
        await instrument.run_prerequisites()
        for target in (25, 50, 25):
            measured = await instrument.set_pressure(target)
            print(f"set {target}, measured {measured}")
        await instrument.set_zero_pressure()
    finally:
        await instrument.disconnect()
        if server is not None:
            await server.stop()


asyncio.run(main())
pressurecal.util.shutdown_log()
