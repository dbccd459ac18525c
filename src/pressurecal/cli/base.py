import asyncio
from typing import Optional

import click
from loguru import logger
from rich.console import Console

from pressurecal.cli.report import (
    flush_notifications,
    print_connection_results,
    print_notifications,
    print_profile,
    print_results,
    print_settings,
)
from pressurecal.device.mock import SimulatedCalibrator, SimulatedInstrumentServer
from pressurecal.sweep import (
    SESSION_STATE,
    CalibrationSession,
    StartRequest,
    require_all_connected,
)
from pressurecal.system import (
    SETTINGS_FILE,
    create_default_settings_file,
    load_settings,
    make_instrument,
    make_peripheral_manager,
)
from pressurecal.types import CalibrationError, SweepConfig
from pressurecal.util import (
    DEFAULT_LOGLEVEL,
    ResultSaver,
    format_error_response,
    get_log_filename,
    shutdown_log,
    start_log,
)


def print_tree(cmd, prefix="", parent_ctx=None):
    """Print command tree starting from given command."""
    ctx = click.Context(cmd, info_name=cmd.name, parent=parent_ctx)

    # Only print root name if no parent
    if not parent_ctx:
        click.echo(cmd.name)

    for sub in sorted(cmd.list_commands(ctx)):
        sub_cmd = cmd.get_command(ctx, sub)
        click.echo(f"{prefix}└── {sub}")
        if isinstance(sub_cmd, click.Group):
            print_tree(sub_cmd, prefix + "    ", ctx)


def tree_option(f):
    """Add --tree option to command."""

    def callback(ctx, param, value):
        if not value or ctx.resilient_parsing:
            return
        print_tree(ctx.command)
        ctx.exit()

    return click.option(
        "--tree",
        is_flag=True,
        help="Show command tree from this point",
        expose_value=False,
        is_eager=True,
        callback=callback,
    )(f)


def log_options(f):
    """Logging options shared by the long-running commands."""
    options = [
        click.option(
            "--log-to-file/--no-log-to-file",
            "-ltf/",
            default=True,
            help="Enable/disable logging to file (default: enabled)",
        ),
        click.option(
            "--log-to-stdout/--no-log-to-stdout",
            "-lts/",
            default=False,
            help="Enable/disable console logging (default: disabled)",
        ),
        click.option(
            "--log-path",
            "-lp",
            default="",
            help="Custom path for log file (default: ~/.pressurecal/pressurecal.log)",
        ),
        click.option(
            "--log-level",
            "-ll",
            default=DEFAULT_LOGLEVEL,
            help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR) (default: INFO)",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def settings_option(f):
    return click.option(
        "--settings",
        "-s",
        "settings_path",
        type=click.Path(dir_okay=False),
        default=None,
        help=f"Settings file (default: {SETTINGS_FILE} if present)",
    )(f)


def _start_log(kwargs):
    start_log(
        log_to_file=kwargs.pop("log_to_file"),
        log_to_stdout=kwargs.pop("log_to_stdout"),
        log_path=kwargs.pop("log_path"),
        log_level=kwargs.pop("log_level"),
    )


def _load(settings_path, simulate: bool):
    try:
        settings = load_settings(settings_path)
    except (FileNotFoundError, ValueError) as e:
        raise click.UsageError(str(e))
    if simulate:
        settings.instrument.simulated = True
        settings.peripheral.simulated = True
    return settings


@click.group()
@tree_option
def cli():
    """pressurecal - automated pressure sensor calibration.

    Steps a precision pressure reference through an ascending then descending
    profile, reading wireless pressure peripherals at every settled step:

    - Sequential peripheral connection with retries

    - Instrument prerequisite enforcement and verified pressure setting

    - Per-device certification against the reference
    """
    pass


@cli.command()
@settings_option
@click.option(
    "--simulate/--no-simulate",
    "-S/",
    default=False,
    help="Use a simulated instrument and simulated peripherals",
)
@click.option(
    "--device",
    "-d",
    "devices",
    multiple=True,
    help="Peripheral id to calibrate (repeatable, default: all discovered)",
)
@click.option(
    "--max-pressure",
    "-m",
    type=float,
    default=None,
    help="Peak pressure of the sweep (default: from settings)",
)
@click.option("--project", "-p", default="", help="Project name for saved results")
@click.option(
    "--save/--no-save", default=True, help="Save results as json (default: enabled)"
)
@click.option(
    "--require-all/--allow-partial",
    default=False,
    help="Abort unless every selected peripheral connects (default: allow partial)",
)
@log_options
def run(
    settings_path,
    simulate,
    devices,
    max_pressure,
    project,
    save,
    require_all,
    **kwargs,
):
    """Run a full calibration sweep.

    Connects the selected peripherals one at a time, configures and zeroes the
    reference instrument, then sweeps the pressure profile. Results are
    certified per device and optionally saved under the settings' save_dir.
    Progress is printed as the session reports it.
    """
    _start_log(kwargs)
    settings = _load(settings_path, simulate)
    if max_pressure is not None:
        settings.max_pressure = max_pressure
    try:
        sweep_config = settings.sweep_config()
    except ValueError as e:
        raise click.UsageError(str(e))

    sink = ResultSaver(settings.save_dir, project) if save else None
    log_file = get_log_filename()
    try:
        session = asyncio.run(
            _run_session(settings, sweep_config, devices, sink, require_all)
        )
    except KeyboardInterrupt:
        click.echo("Calibration interrupted.", err=True)
        raise SystemExit(130)
    finally:
        shutdown_log()

    if session.connection_results is not None:
        print_connection_results(session.connection_results)
    if session.results:
        print_results(session.results)
    if sink is not None and sink.paths:
        click.echo(f"Saved {len(sink.paths)} result file(s) to {settings.save_dir}")
    if session.state != SESSION_STATE.COMPLETED:
        reason = session.abort_reason or (
            str(session.error) if session.error is not None else ""
        )
        click.echo(f"Session {session.state}: {reason}", err=True)
        if log_file:
            click.echo(f"Details in {log_file}", err=True)
        raise SystemExit(1)


async def _run_session(
    settings, sweep_config, devices, sink, require_all=False
) -> CalibrationSession:
    queue = asyncio.Queue()
    instrument = make_instrument(settings.instrument, queue)
    peripherals = make_peripheral_manager(
        settings.peripheral, instrument=instrument, notif_queue=queue
    )
    if not devices:
        found = await peripherals.discover()
        devices = [dev.id for dev in found]
        if not devices:
            raise click.UsageError("No peripherals discovered.")
        click.echo(f"Discovered {len(devices)} peripheral(s): {', '.join(devices)}")

    session = CalibrationSession(
        instrument,
        peripherals,
        notif_queue=queue,
        partial_policy=require_all_connected if require_all else None,
        result_sink=sink,
        discrepancy_tolerance=settings.discrepancy_tolerance,
    )
    console = Console(color_system="standard")
    printer = asyncio.create_task(print_notifications(queue, console))
    try:
        await session.run(StartRequest(tuple(devices), sweep_config))
    finally:
        printer.cancel()
        try:
            await printer
        except asyncio.CancelledError:
            pass
        flush_notifications(queue, console)
    return session


@cli.command()
@settings_option
@click.option("--host", "-h", default=None, help="Instrument host (default: settings)")
@click.option(
    "--port", "-p", type=int, default=None, help="Instrument port (default: settings)"
)
@click.option(
    "--simulate/--no-simulate",
    "-S/",
    default=False,
    help="Check a simulated instrument",
)
def check(settings_path, host, port, simulate):
    """Check the reference instrument is reachable and responsive.

    Prints its identification string, current pressure and status register.
    """
    settings = _load(settings_path, simulate)
    if host is not None:
        settings.instrument.host = host
    if port is not None:
        settings.instrument.port = port

    async def _check():
        instrument = make_instrument(settings.instrument)
        await instrument.connect()
        try:
            ident = await instrument.identify()
            pressure = await instrument.read_pressure()
            status = await instrument.read_status()
        finally:
            await instrument.disconnect()
        return ident, pressure, status

    try:
        ident, pressure, status = asyncio.run(_check())
    except CalibrationError:
        click.echo(f"Error: {format_error_response()}", err=True)
        raise SystemExit(1)
    click.echo(f"\nInstrument: {ident}")
    click.echo(f"Pressure: {pressure}")
    click.echo(f"Status: {status}")
    click.echo("")


@cli.command()
@settings_option
@click.option(
    "--max-pressure",
    "-m",
    type=float,
    default=None,
    help="Peak pressure of the sweep (default: from settings)",
)
def profile(settings_path, max_pressure):
    """Show the sweep profile that `run` would execute."""
    settings = _load(settings_path, False)
    if max_pressure is not None:
        settings.max_pressure = max_pressure
    try:
        config = SweepConfig.from_max_pressure(
            settings.max_pressure, settings.instrument.pressure_tolerance
        )
    except ValueError as e:
        raise click.UsageError(str(e))
    print_profile(config)


@cli.group()
@tree_option
def settings():
    """Manage the settings file."""
    pass


@settings.command(name="init")
@click.option(
    "--path",
    "-p",
    type=click.Path(dir_okay=False),
    default=None,
    help=f"Where to write (default: {SETTINGS_FILE})",
)
@click.option(
    "--overwrite/--no-overwrite", default=False, help="Replace an existing file"
)
def init_settings(path: Optional[str], overwrite: bool):
    """Write a settings file populated with defaults."""
    written = create_default_settings_file(path, overwrite=overwrite)
    click.echo(f"Settings file: {written}")


@settings.command(name="show")
@settings_option
def show_settings(settings_path):
    """Print the effective settings."""
    print_settings(_load(settings_path, False))


@cli.command(name="mock-server")
@click.option("--host", "-h", default="127.0.0.1", help="Address to bind")
@click.option("--port", "-p", type=int, default=3490, help="Port to listen on")
@click.option(
    "--settle-polls",
    type=int,
    default=2,
    help="Status polls before a new setpoint reports settled",
)
@click.option(
    "--noise", type=float, default=0.0, help="Gaussian noise on pressure readings"
)
@log_options
def mock_server(host, port, settle_polls, noise, **kwargs):
    """Serve a simulated pressure reference over TCP.

    Point `run`/`check` at it with --host/--port (or the settings file) to
    exercise the real network link without hardware.
    """
    _start_log(kwargs)
    server = SimulatedInstrumentServer(
        SimulatedCalibrator(settle_polls=settle_polls, noise=noise), host, port
    )
    click.echo(f"Simulated instrument on {host}:{port} (Ctrl+C to stop)")
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Simulated instrument stopped by user")
    finally:
        shutdown_log()
