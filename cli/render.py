from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _format_millis(value: Any) -> str:
    if not isinstance(value, int):
        return str(value)
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_spikes(spikes: Iterable[Mapping[str, Any]]) -> None:
    items = list(spikes)
    echo_heading(f"Spikes ({len(items)})")
    if not items:
        typer.echo("No spikes detected.")
        return
    for spike in items:
        typer.echo(
            f"  - sensor {spike.get('sensor_id')} "
            f"[{_format_millis(spike.get('window_start'))} .. {_format_millis(spike.get('window_end'))}) "
            f"average={spike.get('average_value')} current={spike.get('current_value')}"
        )


def render_stats(stats: Dict[str, Any]) -> None:
    echo_heading("Pipeline Summary")
    echo_key_values(
        [
            ("lines", stats.get("lines")),
            ("measurements", stats.get("measurements")),
            ("rejected", stats.get("rejected")),
            ("late", stats.get("late")),
            ("summaries", stats.get("summaries")),
            ("spikes", stats.get("spikes")),
        ]
    )
    dropped = stats.get("open_windows_dropped")
    if dropped:
        typer.echo(f"open_windows_dropped: {dropped}")
