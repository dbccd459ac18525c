import asyncio

import pressurecal.device.mock
import pressurecal.sweep
import pressurecal.system
import pressurecal.types
import pressurecal.util
from pressurecal.types import DeviceConnectionRetry, StepReady

# Peak pressure of the sweep
MAX_PRESSURE = 150

pressurecal.util.start_log(log_to_stdout=True, log_level="INFO")


async def print_progress(queue: asyncio.Queue):
    while True:
        notif = await queue.get()
        if isinstance(notif, StepReady):
            print(
                f"step {notif.current_step}/{notif.total_steps}: "
                f"{notif.pressure} ({notif.phase}), measured {notif.measured_pressure}"
            )
        elif isinstance(notif, DeviceConnectionRetry):
            print(f"retrying {notif.device_id} ({notif.attempt}/{notif.max_attempts})")


async def main():
    queue = asyncio.Queue()
    settings = pressurecal.types.CalibrationSettings(max_pressure=MAX_PRESSURE)
    settings.instrument.simulated = True
    settings.peripheral.simulated = True
    # no need to wait around for simulated radios
    settings.peripheral.retry_delay = 0.1
    settings.peripheral.inter_connection_delay = 0.1

    instrument = pressurecal.system.make_instrument(settings.instrument, queue)
    backend = pressurecal.system.demo_peripheral_backend(instrument)
    # the second sensor needs a retry, the third reads 3 high
    backend.peripherals["SIM-02"].fail_attempts = 1
    backend.peripherals["SIM-03"].pressure_offset = 3.0
    peripherals = pressurecal.system.make_peripheral_manager(
        settings.peripheral, backend=backend, notif_queue=queue
    )

    session = pressurecal.sweep.CalibrationSession(
        instrument, peripherals, notif_queue=queue
    )
    printer = asyncio.create_task(print_progress(queue))
    try:
        await session.run(
            pressurecal.sweep.StartRequest(
                ("SIM-01", "SIM-02", "SIM-03"),
                settings.sweep_config(),
                device_info=backend.discovery_map(),
            )
        )
    finally:
        printer.cancel()

    print(f"session finished: {session.state}")
    for res in session.results:
        cert = res.certification
        print(f"{res.device_id}: certified={cert.certified} ({cert.reason})")


asyncio.run(main())
pressurecal.util.shutdown_log()
