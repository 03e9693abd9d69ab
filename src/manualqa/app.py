# /manualqa/app.py
"""
Operator CLI for the manual Q&A service.
Ingests manuals, lists documents, runs a Q&A session and searches the manual
using the same components the HTTP API is built from.
"""
import sys

# Rich UI Components
from rich import box
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

# Local module imports
from .config import CHAT_MODEL_NAME, EMBEDDING_MODEL_NAME, MANUAL_SOURCE, MANUAL_TITLE, MANUAL_VERSION, console
from .errors import IngestionAbortedError, ManualQAError, SynthesisError
from .ingestion import MODE_FULL_REBUILD, MODE_INCREMENTAL, DocumentSource
from .observability import get_logger
from .rag_pipeline import build_services

logger = get_logger(__name__)

CLI_USER_ID = "cli"


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]Manual Q&A - Diving Manual Assistant[/bold magenta]",
        subtitle="[cyan]Hybrid keyword + semantic retrieval[/cyan]",
        expand=False
    ))
    console.print(f"[green]Embeddings: {EMBEDDING_MODEL_NAME} | Chat: {CHAT_MODEL_NAME}[/green]")


def format_citations(citations) -> Table:
    table = Table(title="Sources", border_style="yellow", header_style="bold", box=box.SQUARE)
    table.add_column("#", style="dim")
    table.add_column("Volume", style="cyan")
    table.add_column("Chapter", style="magenta")
    table.add_column("Page", style="yellow")
    table.add_column("Snippet", style="white", overflow="fold")
    for idx, citation in enumerate(citations, start=1):
        snippet = " ".join(citation.snippet.split())
        table.add_row(
            str(idx),
            citation.volume or "Unknown",
            citation.chapter or "Unknown",
            str(citation.page_number),
            snippet[:120],
        )
    return table


# --- Menu Handlers ---

def handle_ingest(services, mode: str):
    source_ref = Prompt.ask("Path or URL of the manual PDF", default=MANUAL_SOURCE or None)
    if not source_ref:
        console.print("[bold red]A manual source is required.[/bold red]")
        return
    title = Prompt.ask("Document title", default=MANUAL_TITLE)
    source = DocumentSource(source_ref=source_ref, title=title, version=MANUAL_VERSION)
    try:
        result = services.ingestion.ingest(source, mode)
    except IngestionAbortedError as exc:
        progress = exc.progress
        console.print(
            f"[bold red]Ingestion aborted:[/bold red] {exc.message}\n"
            f"[yellow]{progress.chunks_created} chunks were stored before the failure.[/yellow]"
        )
        return
    except ManualQAError as exc:
        logger.error("cli_ingest_failed", mode=mode, error_kind=exc.kind, error=exc.message)
        console.print(f"[bold red]Ingestion failed:[/bold red] {exc.message}")
        return
    console.print(
        Panel(
            f"Document: {result.document_id}\n"
            f"Pages: {result.total_pages}\n"
            f"Chunks created: {result.chunks_created}\n"
            f"Chunks skipped: {result.chunks_skipped}\n"
            f"Total chunks: {result.total_chunks}",
            title=f"Ingestion complete ({mode})",
            border_style="green",
        )
    )


def list_documents(services):
    """Displays a table of all ingested documents."""
    documents = services.store.list_documents()
    if not documents:
        console.print("[yellow]No documents ingested yet.[/yellow]")
        return

    table = Table(title="Ingested Documents", border_style="blue", header_style="bold", box=box.SQUARE)
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="magenta")
    table.add_column("Pages", style="yellow")
    table.add_column("Chunks", style="white")
    for doc in documents:
        table.add_row(doc.id, doc.title, str(doc.total_pages or "-"), str(services.store.count_chunks(doc.id)))
    console.print(table)


def handle_qa_session(services):
    """Enters the Q&A loop on a fresh conversation."""
    session_id = None
    console.print("\n[bold green]Q&A Session Started.[/bold green] [italic]Type 'back' to return to menu.[/italic]")
    while True:
        query = Prompt.ask("[bold cyan]Ask a question (or type 'back' to go back to the menu)[/bold cyan]")
        if query.lower() == "back":
            break
        if not query.strip():
            continue
        try:
            with console.status("[bold cyan]Searching the manual...[/bold cyan]", spinner="dots"):
                result = services.processor.process(query, user_id=CLI_USER_ID, session_id=session_id)
        except SynthesisError as exc:
            console.print(f"[bold red]{exc.user_message}[/bold red]")
            continue
        except ManualQAError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc.message}")
            continue
        session_id = result.session_id
        console.print(Panel(Markdown(result.response), title="Answer", border_style="blue"))
        if result.citations:
            console.print(format_citations(result.citations))


def handle_search(services):
    query = Prompt.ask("Search the manual")
    if not query.strip():
        return
    search_type = Prompt.ask("Search type", choices=["fulltext", "semantic"], default="fulltext")
    safety = Prompt.ask("Safety filter", choices=["all", "WARNING", "CAUTION", "NOTE"], default="all")
    volume = Prompt.ask("Volume filter", choices=["all", *services.store.list_volumes()], default="all")
    try:
        page = services.search.search(
            query,
            search_type=search_type,
            volume_filter=volume,
            safety_filter=safety,
            user_id=CLI_USER_ID,
        )
    except ManualQAError as exc:
        console.print(f"[bold red]Search failed:[/bold red] {exc.message}")
        return
    if not page.results:
        console.print("[yellow]No results.[/yellow]")
        return
    table = Table(
        title=f"Results ({page.total_count} total)",
        border_style="blue",
        header_style="bold",
        box=box.SQUARE,
    )
    table.add_column("Title", style="cyan")
    table.add_column("Page", style="yellow")
    table.add_column("Type", style="red")
    table.add_column("Score", style="green")
    table.add_column("Excerpt", style="white", overflow="fold")
    for item in page.results:
        table.add_row(
            item["title"],
            item["page"],
            item["type"],
            f"{item['relevanceScore']:.2f}",
            " ".join(item["excerpt"].split())[:160],
        )
    console.print(table)


def main():
    """Main application loop."""
    display_welcome_banner()
    services = build_services(verbose=True)

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Ingest Manual (incremental)[/green]")
                console.print("[green]2. Rebuild Manual (clear and re-ingest)[/green]")
                console.print("[cyan]3. List Documents[/cyan]")
                console.print("[blue]4. Start Q&A Session[/blue]")
                console.print("[magenta]5. Search Manual[/magenta]")
                console.print("[red]6. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4", "5", "6"])

                if choice == "1":
                    handle_ingest(services, MODE_INCREMENTAL)
                elif choice == "2":
                    handle_ingest(services, MODE_FULL_REBUILD)
                elif choice == "3":
                    list_documents(services)
                elif choice == "4":
                    handle_qa_session(services)
                elif choice == "5":
                    handle_search(services)
                elif choice == "6":
                    break
            except KeyboardInterrupt:
                break
    finally:
        services.close()

    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()
