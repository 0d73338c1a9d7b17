"""Command line interface: interactive chat, one-shot ingestion and the HTTP server."""

import sys
import threading

import click
from tqdm import tqdm

from .backends import check_backend_health
from .config import AssistantConfig
from .errors import ConfigurationError, KBAssistantError
from .logs import setup_logging
from .pipeline import (
    IngestionReport,
    PipelineOrchestrator,
    ProgressEvent,
    ProgressReporter,
    QueryOutcome,
    create_orchestrator,
    find_url,
)

PHASE_LABELS = {
    "crawl": "Scraping pages",
    "process": "Processing documents",
    "index": "Storing chunks",
    "idle": "Done",
}


def _build(config: AssistantConfig) -> PipelineOrchestrator:
    try:
        return create_orchestrator(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _progress(orchestrator: PipelineOrchestrator, config: AssistantConfig):
    """Return a ProgressReporter drawing a tqdm bar on stderr."""
    bar = tqdm(desc=PHASE_LABELS["crawl"], unit="item", disable=not config.SHOW_PROGRESS, file=sys.stderr, leave=False)

    def render(event: ProgressEvent):
        current = {"crawl": event.pages_scraped, "process": event.documents_processed, "index": event.chunks_stored}
        bar.set_description_str(PHASE_LABELS.get(event.phase, event.phase), refresh=False)
        bar.n = current.get(event.phase, event.chunks_stored)
        bar.set_postfix_str(
            f"pages={event.pages_scraped} docs={event.documents_processed} "
            f"chunks={event.chunks_stored} {event.throughput:.1f}/s",
            refresh=False,
        )
        bar.refresh()

    class _Reporter(ProgressReporter):
        def stop(self):
            super().stop()
            bar.close()

    return _Reporter(orchestrator.progress, render, interval=config.PROGRESS_INTERVAL)


def _wait(worker: threading.Thread, timeout: float):
    worker.join(timeout)


def _run_cancellable(func):
    """Run func(cancel_event) on a worker thread.

    Ctrl-C sets the event instead of unwinding the caller, so the work stops at
    its next cancellation point and its result (e.g. a cancelled report) is
    still returned.
    """
    cancel = threading.Event()
    outcome = {}

    def work():
        try:
            outcome["result"] = func(cancel)
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=work, name="kb-ingest", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            _wait(worker, 0.1)
        except KeyboardInterrupt:
            if not cancel.is_set():
                click.secho("\nCancelling...", fg="yellow", err=True)
            cancel.set()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


def _print_report(report: IngestionReport):
    status = "cancelled" if report.cancelled else "complete"
    click.secho(f"Ingestion {status}: {report.url}", fg="yellow" if report.cancelled else "green")
    click.echo(f"  Pages scraped:       {report.pages_scraped}")
    click.echo(f"  Documents processed: {report.documents_processed}")
    click.echo(f"  Chunks stored:       {report.chunks_stored}")
    click.echo(f"  Time:                {report.elapsed:.1f}s")
    if report.failed_batches:
        click.secho(f"  Failed batches:      {report.failed_batches}", fg="red")
    for error in report.errors:
        click.secho(f"  ! {error}", fg="red")


def _print_outcome(outcome: QueryOutcome):
    if outcome.ingestion is not None:
        _print_report(outcome.ingestion)

    if outcome.kind == "error":
        click.secho(f"Error: {outcome.error}", fg="red", err=True)
    elif outcome.kind == "answer":
        click.echo(click.style("Assistant: ", fg="green") + outcome.answer.text)
        if outcome.answer.sources_text:
            click.secho(outcome.answer.sources_text, dim=True)
    elif outcome.kind == "stream":
        stream = outcome.stream
        click.echo(click.style("Assistant: ", fg="green"), nl=False)
        with stream:
            try:
                for fragment in stream:
                    click.echo(fragment, nl=False)
            except KBAssistantError as e:
                click.echo()
                click.secho(f"Error: {e}", fg="red", err=True)
                return
            except KeyboardInterrupt:
                click.echo()
                click.secho("(response interrupted)", fg="yellow")
                return
        click.echo()
        if stream.sources_text:
            click.secho(stream.sources_text, dim=True)


@click.group()
@click.option("--env-prefix", default="", help="Prefix for environment variables (e.g. KB_).")
@click.option("-v", "--verbose", is_flag=True, help="Log progress details to the console.")
@click.pass_context
def cli(ctx, env_prefix, verbose):
    """Documentation knowledge-base assistant."""
    try:
        config = AssistantConfig.from_env(env_prefix)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    log_file = setup_logging(config, verbose=verbose)
    if log_file:
        click.echo(f"Debug logging enabled: {log_file}", err=True)
    ctx.obj = config


@cli.command()
@click.option("--docs-url", default=None, help="Documentation site to ingest before chatting.")
@click.option("--stream/--no-stream", default=None, help="Stream responses as they are generated.")
@click.pass_obj
def chat(config, docs_url, stream):
    """Ask questions about ingested documentation interactively."""
    orchestrator = _build(config)

    if config.HEALTH_CHECK_ON_STARTUP:
        is_healthy, message = check_backend_health(config)
        click.secho(message, fg="green" if is_healthy else "yellow")

    if docs_url:
        try:
            with _progress(orchestrator, config):
                report = _run_cancellable(lambda cancel: orchestrator.ingest(docs_url, cancel))
        except KBAssistantError as e:
            raise click.ClickException(f"Failed to ingest {docs_url}: {e}") from e
        _print_report(report)

    click.echo("Ask a question, paste a URL to ingest it, or type 'exit' to quit.")
    while True:
        try:
            text = click.prompt(click.style("You", fg="cyan"), default="", show_default=False, prompt_suffix=": ")
        except click.Abort:
            click.echo()
            break

        if find_url(text):
            with _progress(orchestrator, config):
                outcome = _run_cancellable(
                    lambda cancel: orchestrator.handle_query(text, stream=stream, cancel_event=cancel)
                )
        else:
            outcome = orchestrator.handle_query(text, stream=stream)

        if outcome.kind == "exit":
            break
        _print_outcome(outcome)

    click.echo("Goodbye!")


@cli.command()
@click.argument("url")
@click.pass_obj
def ingest(config, url):
    """Crawl URL and index its pages."""
    orchestrator = _build(config)
    try:
        with _progress(orchestrator, config):
            report = _run_cancellable(lambda cancel: orchestrator.ingest(url, cancel))
    except KBAssistantError as e:
        raise click.ClickException(str(e)) from e
    _print_report(report)


@cli.command()
@click.option("--host", default=None, help="Host to bind to (defaults to HOST or 127.0.0.1).")
@click.option("--port", default=None, type=int, help="Port to listen on (defaults to PORT or 8000).")
@click.option("--debug", is_flag=True, help="Enable Flask debug mode.")
@click.pass_obj
def serve(config, host, port, debug):
    """Run the HTTP API."""
    from .server import KBServer

    server = KBServer(config, _build(config))
    server.run(port=port, host=host, debug=debug)


def main():
    cli(prog_name="kb-assistant")


if __name__ == "__main__":
    main()
