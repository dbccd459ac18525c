"""Rich console summaries for the command line."""

import asyncio

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pressurecal.sweep import CalibrationResult, sweep_steps
from pressurecal.types import (
    CalibrationPointWritten,
    CalibrationResultReady,
    CalibrationSettings,
    ConnectionResults,
    DeviceConnectionFailed,
    DeviceConnectionRetry,
    DeviceConnectionStarted,
    DeviceConnectionSucceeded,
    DeviceDisconnected,
    InstrumentConnected,
    InstrumentDisconnected,
    InstrumentError,
    InstrumentReconnecting,
    Notification,
    PhaseChanged,
    SessionAborted,
    SessionFailed,
    SessionStateChanged,
    StepReady,
    SweepCompleted,
    SweepConfig,
    drain_notifications,
)

ya = "[green]+[/green]"
na = "[red]-[/red]"


def _fmt(value, spec=".2f") -> str:
    return "-" if value is None else format(value, spec)


def format_notification(notif: Notification) -> str | None:
    """One line of console markup for `notif`, None for the chatty ones."""
    match notif.type:
        case InstrumentConnected.type:
            return f"{ya} Instrument connected at {notif.host}:{notif.port}"
        case InstrumentDisconnected.type:
            if notif.expected:
                return None
            return f"{na} Lost the instrument at {notif.host}:{notif.port}"
        case InstrumentReconnecting.type:
            return (
                f"Reconnecting to the instrument in {notif.delay:.1f}s "
                + f"(attempt {notif.attempt}/{notif.max_attempts})"
            )
        case InstrumentError.type:
            return f"{na} Instrument error: {escape(notif.message)}"
        case DeviceConnectionStarted.type:
            return (
                f"Connecting {escape(notif.name)} ({notif.device_id}), "
                + f"{notif.index + 1} of {notif.total}"
            )
        case DeviceConnectionRetry.type:
            return (
                f"  retrying {notif.device_id} "
                + f"({notif.attempt}/{notif.max_attempts}): {escape(notif.error)}"
            )
        case DeviceConnectionSucceeded.type:
            return (
                f"{ya} {escape(notif.display_name)} ({notif.device_id}) connected, "
                + f"firmware {escape(notif.firmware_version)}"
            )
        case DeviceConnectionFailed.type:
            return (
                f"{na} {notif.device_id} failed after {notif.attempts} attempt(s): "
                + escape(notif.reason)
            )
        case DeviceDisconnected.type:
            # routine teardown is summarised elsewhere
            if not notif.error:
                return None
            return f"{na} {notif.device_id} dropped: {escape(notif.error)}"
        case CalibrationPointWritten.type:
            return f"{ya} {notif.kind} point sent to {notif.device_id}"
        case StepReady.type:
            line = (
                f"Step {notif.current_step}/{notif.total_steps}: "
                + f"{notif.pressure:g} ({notif.phase})"
            )
            if notif.measured_pressure is not None:
                line += f", reference {notif.measured_pressure:.2f}"
            return line
        case PhaseChanged.type:
            return f"Phase {notif.old_phase} -> {notif.new_phase}"
        case SweepCompleted.type:
            return f"Sweep completed ({notif.total_steps} steps)"
        case SessionStateChanged.type:
            return f"[bold]{notif.new_state}[/bold]"
        case SessionAborted.type:
            return f"{na} Aborted: {escape(notif.reason)}"
        case SessionFailed.type:
            return f"{na} Failed ({notif.error_type}): {escape(notif.message)}"
        case CalibrationResultReady.type:
            if notif.certified:
                return f"{ya} {notif.device_id} certified"
            return f"{na} {notif.device_id} not certified"
        case _:
            return None


def print_notification(notif: Notification, console: Console):
    line = format_notification(notif)
    if line is not None:
        console.print(line)


async def print_notifications(queue: asyncio.Queue, console: Console):
    """Print session events as they arrive, until cancelled."""
    while True:
        print_notification(await queue.get(), console)


def flush_notifications(queue: asyncio.Queue, console: Console):
    for notif in drain_notifications(queue):
        print_notification(notif, console)


def print_connection_results(results: ConnectionResults):
    console = Console(color_system="standard")
    table = Table(show_header=False, box=None)
    table.add_column("Status")
    table.add_row("\n[bold]Peripheral connections:[/bold]")
    for dev in results.successful:
        table.add_row(
            f"{ya} {dev.display_name} ({dev.id}), firmware {dev.firmware_version}"
        )
    for fail in results.failed:
        table.add_row(
            f"{na} {fail.name} ({fail.id}): {fail.reason} "
            + f"after {fail.attempts} attempt(s)"
        )
    console.print(table)


def print_results(results: list[CalibrationResult]):
    console = Console(color_system="standard")
    table = Table(title="Calibration results")
    table.add_column("Device")
    table.add_column("Firmware")
    table.add_column("Readings", justify="right")
    table.add_column("Avg. disc.", justify="right")
    table.add_column("Max err.", justify="right")
    table.add_column("Lin. %FS", justify="right")
    table.add_column("Hyst.", justify="right")
    table.add_column("Certified")
    for res in results:
        cert = res.certification
        table.add_row(
            f"{res.device_name} ({res.device_id})",
            res.firmware_version,
            str(cert.total_readings),
            _fmt(cert.average_discrepancy),
            _fmt(cert.max_error),
            _fmt(cert.linearity_pct_fs, ".3f"),
            _fmt(cert.hysteresis),
            f"{ya} yes" if cert.certified else f"{na} {cert.reason}",
        )
    console.print(table)


def print_profile(config: SweepConfig):
    console = Console(color_system="standard")
    table = Table(title=f"Sweep profile ({config.total_steps} steps)")
    table.add_column("Step", justify="right")
    table.add_column("Pressure", justify="right")
    table.add_column("Phase")
    for step in sweep_steps(config):
        table.add_row(str(step.index + 1), f"{step.pressure:g}", step.phase.value)
    console.print(table)
    console.print(f"Verification tolerance: ±{config.tolerance_absolute:g}")


def print_settings(settings: CalibrationSettings):
    console = Console(color_system="standard")
    table = Table(show_header=True, box=None)
    table.add_column("Setting")
    table.add_column("Value")
    for section, values in settings.to_dict().items():
        if isinstance(values, dict):
            table.add_row(f"\n[bold]\\[{section}][/bold]", "")
            for key, value in values.items():
                table.add_row(f"  {key}", str(value))
        else:
            table.add_row(section, str(values))
    console.print(table)
