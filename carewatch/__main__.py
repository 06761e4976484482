"""
Demo of the complete monitoring pipeline against a simulated monitoring API.

Runs a few overview and roster cycles, then prints ranked patients, active
alerts, devices and the current map focus.

Run with: python -m carewatch
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from carewatch.config import get_config, print_config_summary
from carewatch.domain.models import DeviceLocation, SeverityTier
from carewatch.services.integrated_monitoring import DashboardState, IntegratedMonitoringService
from carewatch.services.notification_log import InMemoryNotificationLog
from carewatch.services.polling import SimulatedPollingSource

console = Console()

_SEVERITY_STYLES = {
    SeverityTier.CRITICAL: "bold red",
    SeverityTier.WARNING: "yellow",
    SeverityTier.CAUTION: "cyan",
    SeverityTier.NORMAL: "green",
}


def _severity_cell(tier: SeverityTier) -> str:
    return f"[{_SEVERITY_STYLES[tier]}]{tier.label.upper()}[/]"


def _patients_table(state: DashboardState) -> Table:
    table = Table(title="Patients by Heart Rate Urgency")
    table.add_column("Code", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("HR", style="magenta")
    table.add_column("RR", style="magenta")
    table.add_column("Severity")

    for record in state.patients_by_heart_rate[:10]:
        table.add_row(
            record.code,
            record.display_name,
            f"{record.heart_rate:.0f}" if record.heart_rate else "-",
            f"{record.respiratory_rate:.0f}" if record.respiratory_rate else "-",
            _severity_cell(record.severity),
        )
    return table


def _alerts_table(state: DashboardState) -> Table:
    table = Table(title=f"Active Alerts ({state.triage.total_active})")
    table.add_column("Severity")
    table.add_column("Patient", style="cyan")
    table.add_column("Category", style="magenta")
    table.add_column("Value", style="white")
    table.add_column("Message", style="white")

    for alert in state.triage.active[:10]:
        table.add_row(
            _severity_cell(alert.severity),
            alert.patient_name or alert.patient_code,
            alert.category.value,
            alert.current_value or "-",
            alert.raw_message,
        )
    return table


def _devices_table(devices: list[DeviceLocation]) -> Table:
    table = Table(title="Devices")
    table.add_column("Device", style="cyan")
    table.add_column("Patient", style="white")
    table.add_column("Status", style="white")
    table.add_column("Connection", style="white")
    table.add_column("Health")
    table.add_column("Position", style="yellow")

    for device in devices:
        table.add_row(
            device.device_id,
            device.patient_name,
            device.online_status,
            device.connection_health,
            _severity_cell(device.health_severity),
            f"{device.latitude:.4f}, {device.longitude:.4f}",
        )
    return table


async def main(cycles: int = 3) -> None:
    """Run a few monitoring cycles and print what the dashboard would show."""

    console.print(Panel("CareWatch - Monitoring Demo", style="bold blue"))
    print_config_summary()

    sink = InMemoryNotificationLog()
    service = IntegratedMonitoringService(
        SimulatedPollingSource(patient_count=8, failure_rate=0.1),
        sink=sink,
        config=get_config(),
    )

    try:
        cycle_count = 0
        async for state in service.run_continuous_monitoring():
            cycle_count += 1
            console.print(f"\n{'=' * 60}")
            console.print(Panel(f"Cycle #{cycle_count}", style="blue"))

            if state.is_stale:
                console.print(f"Refresh failed, showing last data: {state.last_error}", style="red")
            elif not state.has_data:
                console.print(f"No data yet: {state.last_error}", style="red")
                if cycle_count >= cycles:
                    break
                continue

            console.print(_patients_table(state))
            console.print(_alerts_table(state))

            roster = await service.refresh_roster()
            if roster.is_ok():
                console.print(_devices_table(roster.unwrap()))
            else:
                console.print(f"Roster refresh failed: {roster.unwrap_err()}", style="red")

            focus = service.focus
            console.print(
                f"Map focus: {focus.kind.value} {focus.device_ids or ''} "
                f"(state={service.focus_state.value}, trigger={service.arbiter.trigger})",
                style="yellow",
            )

            if cycle_count >= cycles:
                break

        if service.state.triage.active:
            first = service.state.triage.active[0]
            service.acknowledge_alert(first.id, note="Checked at bedside")
            console.print(f"Acknowledged alert {first.id}", style="green")

        console.print(f"Notification log entries: {len(sink)}", style="green")

    finally:
        await service.stop()
        console.print("Monitoring service stopped", style="green")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\nMonitoring stopped by user", style="yellow")


if __name__ == "__main__":
    run()
