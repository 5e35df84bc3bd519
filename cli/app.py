from __future__ import annotations

import signal
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import Any, Dict, List, Optional

import typer
from kafka.errors import KafkaError

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import echo_key_values, render_spikes, render_stats
from logging_config import configure_logging
from services.pipeline import SpikeDetectionPipeline, build_sink, build_source, iter_batches
from settings import ConfigurationError, Mode, resolve_pipeline_config
from transports.file import FileLineSource
from transports.kafka_topic import KafkaLineSink
from transports.mock_topic import TopicSink, build_default_broker, validate_topic


@dataclass
class CLIState:
    config: CLIConfig


app = typer.Typer(
    help="Sliding-window spike detection over raw sensor readings.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL for `submit` (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    ctx.obj = CLIState(config=load_config(base_url=base_url, timeout=timeout))


@app.command("run")
def run_command(
    mode: Optional[str] = typer.Option(None, "--mode", help="Transport: file or topic (env SPIKE_MODE)."),
    input_: Optional[str] = typer.Option(None, "--input", help="Input path or topic name."),
    output: Optional[str] = typer.Option(None, "--output", help="Output path or topic name."),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", help="Worker fan-out."),
    size: Optional[int] = typer.Option(None, "--size", help="Window length in seconds."),
    slide: Optional[int] = typer.Option(None, "--slide", help="Window slide in seconds."),
    lateness: Optional[int] = typer.Option(None, "--lateness", help="Out-of-order allowance in seconds."),
    spike_fraction: Optional[float] = typer.Option(
        None, "--spike-fraction", help="Relative deviation that counts as a spike (default 0.03)."
    ),
    watermark: Optional[str] = typer.Option(
        None, "--watermark", help="none or bounded; defaults from the mode."
    ),
    shutdown_policy: Optional[str] = typer.Option(
        None, "--shutdown-policy", help="flush or discard open windows when stopped early."
    ),
    broker_path: Optional[str] = typer.Option(None, "--broker-path", help="Topic broker directory."),
    consumer_group: Optional[str] = typer.Option(None, "--consumer-group", help="Topic consumer group."),
    bootstrap_servers: Optional[str] = typer.Option(
        None, "--bootstrap-servers", help="Kafka brokers (host:port,...); topic mode uses Kafka when set."
    ),
    monitor_interval: Optional[int] = typer.Option(
        None, "--monitor-interval", help="Re-scan a file input every N seconds instead of reading it once."
    ),
    follow: bool = typer.Option(
        True, "--follow/--no-follow", help="Keep consuming a topic until interrupted."
    ),
    batch_size: int = typer.Option(500, "--batch-size", min=1, help="Lines per processing batch."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL."),
) -> None:
    """Run the detection pipeline over a file or a topic."""
    configure_logging(log_level.upper() if log_level else None)
    try:
        config = resolve_pipeline_config(
            mode=mode,
            input=input_,
            output=output,
            parallelism=parallelism,
            window_size=size,
            window_slide=slide,
            lateness=lateness,
            spike_fraction=spike_fraction,
            watermark=watermark,
            shutdown_policy=shutdown_policy,
            broker_path=broker_path,
            consumer_group=consumer_group,
            bootstrap_servers=bootstrap_servers,
            monitor_interval=monitor_interval,
        )
        broker = (
            build_default_broker(config.broker_path)
            if config.mode is Mode.topic and not config.bootstrap_servers
            else None
        )
        stop_event = Event()
        source = build_source(config, broker, stop_event, follow=follow, batch_size=batch_size)
        sink = build_sink(config, broker)
    except ConfigurationError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc

    pipeline = SpikeDetectionPipeline(config, sink)
    previous = signal.signal(signal.SIGTERM, lambda _signum, _frame: stop_event.set())
    try:
        stats = pipeline.run(source, stop_event)
    finally:
        signal.signal(signal.SIGTERM, previous)
    render_stats(stats.to_dict())


@app.command("publish")
def publish_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="File of raw lines."),
    topic: str = typer.Argument(..., help="Destination topic."),
    broker_path: Optional[str] = typer.Option(None, "--broker-path", help="Topic broker directory."),
    bootstrap_servers: Optional[str] = typer.Option(
        None, "--bootstrap-servers", help="Publish to Kafka instead of the local broker."
    ),
) -> None:
    """Append every line of a file to a topic."""
    try:
        validate_topic(topic)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if bootstrap_servers:
        try:
            sink = KafkaLineSink(topic, bootstrap_servers)
        except KafkaError as exc:
            typer.secho(f"Cannot reach Kafka at {bootstrap_servers}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2) from exc
    else:
        sink = TopicSink(build_default_broker(broker_path), topic)
    count = 0
    try:
        for line in FileLineSource(file):
            sink.write(line)
            count += 1
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        sink.close()
    typer.secho(f"Published {count} lines to {topic}.", fg=typer.colors.GREEN)


@app.command("submit")
def submit_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="File of raw lines."),
    flush: bool = typer.Option(
        False, "--flush/--no-flush", help="Close all open windows after the last batch."
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Lines per request."),
) -> None:
    """Send a file to a running service and show the spikes it reports."""
    state = _get_state(ctx)
    size = batch_size or state.config.batch_size
    client = ApiClient(state.config)
    ctx.call_on_close(client.close)

    typer.echo(f"Submitting {file} to {state.config.base_url} ...")
    totals = {"lines": 0, "accepted": 0, "rejected": 0}
    spikes: List[Dict[str, Any]] = []
    for batch in iter_batches(FileLineSource(file), size):
        payload = client.send_lines(batch)
        for key in totals:
            totals[key] += int(payload.get(key) or 0)
        spikes.extend(payload.get("spikes") or [])
    if flush:
        spikes.extend(client.flush())

    echo_key_values(totals.items())
    typer.echo()
    render_spikes(spikes)
