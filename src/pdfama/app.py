# /pdfama/app.py
"""
Interactive console front end.

Runs the router and the worker in-process and plays the sidebar's part on a
rich console: open a PDF (local path or URL), then ask questions and watch the
answer stream in.
"""
from __future__ import annotations

import asyncio
import sys

from rich.panel import Panel
from rich.prompt import Prompt

from .config import EMBEDDING_MODEL_NAME, LOCAL_MODEL_NAME, TOKEN_LIMIT, console
from .observability import get_logger
from .protocol import (
    AmaChunk,
    AmaComplete,
    AmaCompleteBuffered,
    AmaTerminated,
    AskQuestion,
    Component,
    ErrorMessage,
    InitChat,
    Message,
    NotPdf,
    PdfActivated,
    QuestionData,
    StartProcessing,
    StatusUpdate,
)
from .router import Channel, Router
from .session_store import SessionStore
from .vector_store import VectorStore
from .worker import default_worker_factory

logger = get_logger(__name__)


def display_welcome_banner():
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]pdfAMA - Ask Me Anything about your PDF[/bold magenta]",
        subtitle=f"[cyan]{LOCAL_MODEL_NAME} + {EMBEDDING_MODEL_NAME}[/cyan]",
        expand=False
    ))
    console.print(f"[green]Documents over {TOKEN_LIMIT} characters are answered with retrieval.[/green]")


class ConsoleSidebar:
    """Stands in for the sidebar UI: renders everything the router sends it."""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.document_ready = asyncio.Event()
        self.answer_finished = asyncio.Event()

    async def run(self):
        async for message in self.channel:
            self.render(message)

    def render(self, message: Message):
        if isinstance(message, StatusUpdate):
            console.print(f"[dim]{message.data.message}[/dim]")
        elif isinstance(message, InitChat):
            turns = len(message.data.history)
            if turns:
                console.print(f"[green]Restored conversation with {turns} messages.[/green]")
            self.document_ready.set()
        elif isinstance(message, AmaChunk):
            console.print(message.data.chunk, end="", markup=False, highlight=False)
        elif isinstance(message, (AmaComplete, AmaCompleteBuffered)):
            console.print()
            self.answer_finished.set()
        elif isinstance(message, AmaTerminated):
            console.print("\n[yellow]Response terminated.[/yellow]")
            self.answer_finished.set()
        elif isinstance(message, ErrorMessage):
            console.print(f"[bold red]{message.data.message}[/bold red]")
            self.answer_finished.set()
            self.document_ready.set()
        elif isinstance(message, PdfActivated):
            console.print(f"[cyan]Active document: {message.url}[/cyan]")
        elif isinstance(message, NotPdf):
            console.print("[yellow]That location is not a PDF document.[/yellow]")


async def _ask(prompt: str, **kwargs) -> str:
    return await asyncio.to_thread(Prompt.ask, prompt, **kwargs)


async def open_document(router: Router, sidebar: ConsoleSidebar, tabs: dict[str, int], location: str) -> str | None:
    """Shows `location` in its own tab and waits until the document is ready to chat."""
    tab_id = tabs.setdefault(location, len(tabs) + 1)
    before = router.documents.foreground_document()
    sidebar.document_ready.clear()
    document_id = await router.activate_tab(tab_id, location)
    if document_id is None:
        return None
    if document_id == before:
        await router.submit(StartProcessing(url=document_id))
    with console.status("[bold cyan]Preparing document...[/bold cyan]", spinner="dots"):
        await sidebar.document_ready.wait()
    return document_id


async def qa_loop(router: Router, sidebar: ConsoleSidebar, document_id: str):
    console.print("\n[bold green]Q&A Session Started.[/bold green] [italic]Type 'back' to return to menu.[/italic]")
    while True:
        question = await _ask("[bold cyan]Ask a question (or type 'back' to go back to the menu)[/bold cyan]")
        if question.strip().lower() == "back":
            break
        if not question.strip():
            continue
        sidebar.answer_finished.clear()
        await router.submit(AskQuestion(url=document_id, data=QuestionData(question=question.strip())))
        await sidebar.answer_finished.wait()


async def run_console():
    sessions = SessionStore()
    vectors = VectorStore()
    router = Router(default_worker_factory(sessions, vectors))
    sidebar = ConsoleSidebar(router.connect(Component.SIDEBAR))
    renderer = asyncio.create_task(sidebar.run())
    tabs: dict[str, int] = {}
    current: str | None = None

    try:
        while True:
            console.print("\n[bold]Main Menu:[/bold]")
            console.print("[green]1. Open a PDF (path or URL)[/green]")
            console.print("[cyan]2. List saved documents[/cyan]")
            console.print("[blue]3. Ask questions about the open document[/blue]")
            console.print("[red]4. Exit[/red]")
            choice = await _ask("Choose an option", choices=["1", "2", "3", "4"])

            if choice == "1":
                location = (await _ask("Enter the path or URL of the PDF")).strip().strip('"').strip("'")
                if location:
                    current = await open_document(router, sidebar, tabs, location) or current
            elif choice == "2":
                urls = await asyncio.to_thread(sessions.urls)
                if not urls:
                    console.print("[yellow]No documents saved yet.[/yellow]")
                for url in urls:
                    console.print(f"- {url}")
            elif choice == "3":
                if current is None:
                    console.print("[bold red]Open a PDF first.[/bold red]")
                    continue
                await qa_loop(router, sidebar, current)
            elif choice == "4":
                break
    finally:
        await router.close()
        renderer.cancel()
        await asyncio.gather(renderer, return_exceptions=True)
        sessions.close()
        vectors.close()


def main():
    """Main application loop."""
    display_welcome_banner()
    try:
        asyncio.run(run_console())
    except KeyboardInterrupt:
        logger.info("console_interrupted")
    console.print("\n[bold magenta]Goodbye! Hope you had a productive session.[/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
