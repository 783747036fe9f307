"""Command line entry point for Parley."""

import asyncio
import signal as signals

import typer
from rich.console import Console
from rich.table import Table

from parley.config import Config, set_config
from parley.logging import configure_logging, set_log_sink
from parley.models import Chat, ChatSettings
from parley.orchestrator import TurnOrchestrator, TurnResult
from parley.state import COMPARE_SECTION, NOTICE
from parley.store import create_store

app = typer.Typer(help="Parley - chat with one or more models from the terminal")
console = Console()
err_console = Console(stderr=True)


def _print_log_line(line: str) -> None:
    err_console.print(line, style="dim", markup=False, highlight=False)


def _metrics_table(result: TurnResult) -> Table:
    table = Table(title="Metrics")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("TTFT (ms)", justify="right")
    table.add_column("Total (ms)", justify="right")
    table.add_column("Tokens/s", justify="right")
    for session in result.sessions:
        message = result.messages.get(session.model_id)
        metrics = message.metrics if message else None
        table.add_row(
            session.model_id,
            session.status.value,
            str(metrics.ttft_ms) if metrics and metrics.ttft_ms is not None else "-",
            str(metrics.completion_ms) if metrics else "-",
            str(metrics.tokens_per_sec) if metrics and metrics.tokens_per_sec is not None else "-",
        )
    return table


async def _ask(prompt: str, models: list[str], search: bool, tutor: bool, system: str) -> None:
    compare = len(models) > 1
    stream_id: dict[str, str | None] = {"current": None}

    def _on_delta(message_id: str, kind: str, delta: str) -> None:
        # Interleaved output is unreadable; compare results are printed at the end.
        if compare or kind != "content":
            return
        stream_id["current"] = message_id
        console.print(delta, end="", markup=False, highlight=False)

    orchestrator = TurnOrchestrator(store=None if compare else create_store(), on_delta=_on_delta)
    chat = Chat(
        settings=ChatSettings(
            model=models[0] if models else "",
            system=system,
            search_enabled=search,
            tutor_enabled=tutor,
        )
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signals.SIGINT, orchestrator.abort_all)
    except NotImplementedError:
        pass

    try:
        if compare:
            result = await orchestrator.compare(chat, prompt, models)
            runs = orchestrator.state.get(COMPARE_SECTION) or {}
            for model_id in models:
                run = runs.get(model_id, {})
                console.rule(f"[bold]{model_id}[/bold] ({run.get('status', '?')})")
                console.print(run.get("content") or "", markup=False, highlight=False)
        else:
            result = await orchestrator.send(chat, prompt, models or None)
            if stream_id["current"] is not None:
                console.print()
            # Short-circuited turns never stream; show the committed answer instead.
            for message in result.messages.values():
                if stream_id["current"] != message.id and message.content:
                    console.print(message.content, markup=False, highlight=False)
    finally:
        try:
            loop.remove_signal_handler(signals.SIGINT)
        except NotImplementedError:
            pass
        await orchestrator.close()

    notice = orchestrator.state.get(NOTICE)
    if notice:
        console.print(f"[yellow]{notice}[/yellow]")
    console.print(_metrics_table(result))


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    model: list[str] = typer.Option([], "-m", "--model", help="Model id; repeat for compare mode"),
    search: bool = typer.Option(False, "--search", help="Offer web search to the model"),
    tutor: bool = typer.Option(False, "--tutor", help="Offer tutoring tools to the model"),
    system: str = typer.Option("", "-s", "--system", help="System prompt"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one turn and print the streamed answer."""
    set_config(Config.load(config or None))
    set_log_sink(_print_log_line)
    configure_logging("DEBUG" if verbose else None)
    asyncio.run(_ask(prompt, model, search, tutor, system))


@app.command()
def version() -> None:
    """Show version information."""
    from parley import __version__

    console.print(f"Parley v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
