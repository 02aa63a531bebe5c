"""
Terminal focus view for chatflow.

Shows the active node's conversation and turns slash commands into store
operations. Replies stream from the gateway through ChatRunner.
"""

import asyncio
import signal
from pathlib import Path
from typing import List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from chatflow.chat import ChatRunner
from chatflow.store import ChatFlowStore, ChatNode, Message, save_state, truncate
from chatflow.tree import build_tree

HELP_TEXT = """[bold]Commands[/bold]
  /branch <text> | <question>   branch off the active node about <text>
  /tree                         show the conversation tree
  /go <n>                       focus node <n> from /tree
  /remove                       delete the active branch and its children
  /sessions                     list sessions
  /new                          start a new session
  /switch <n>                   switch to session <n>
  /delete [n]                   delete session <n> (default: active)
  /quit                         leave
Anything else is sent as a message. Ctrl-C stops a reply."""


def render_message(message: Message, node: ChatNode):
    text = message.text
    if message.role == "user":
        return Panel(Text(text), title="[bold cyan]You[/bold cyan]", border_style="cyan", title_align="left")

    body = Markdown(text or "…")
    branched = [h.text for h in node.highlights if h.message_id == message.id or h.text in text]
    if branched:
        marks = ", ".join(f"[yellow]{escape(truncate(t, 30))}[/yellow]" for t in branched)
        body = Group(body, f"[dim]branched:[/dim] {marks}")
    return Panel(body, title="[bold green]Assistant[/bold green]", border_style="green", title_align="left")


def render_node(node: ChatNode):
    parts = []
    if node.reference:
        parts.append(Panel(Text(node.reference), title="[bold yellow]Branch reference[/bold yellow]",
                           border_style="yellow", title_align="left"))
    parts.extend(render_message(m, node) for m in node.messages)
    if not parts:
        parts.append("[dim]Empty conversation. Type a message to start.[/dim]")
    return Group(*parts)


def node_label(node: ChatNode) -> str:
    if node.reference:
        return f"“{truncate(node.reference, 30)}”"
    first_user = next((m for m in node.messages if m.role == "user"), None)
    return truncate(first_user.text, 30) if first_user else "(empty)"


class ChatView:
    """Interactive chat loop over a store."""

    def __init__(self, store: ChatFlowStore, runner: ChatRunner,
                 console: Optional[Console] = None, state_path: Optional[Path] = None):
        self.store = store
        self.runner = runner
        self.console = console or Console()
        self.state_path = state_path

    def save(self) -> None:
        if self.state_path is not None:
            save_state(self.store, self.state_path)

    @property
    def active_node(self) -> Optional[ChatNode]:
        return self.store.find_node(self.store.active_node_id)

    def tree_order(self) -> List[str]:
        """Node ids in the order /tree numbers them."""
        session = self.store.active_session
        root = build_tree(self.store.nodes, self.store.edges, session.root_node_id, self.store.active_node_id)
        return [tree_node.node.id for _, tree_node in root.walk()] if root else []

    def show_tree(self) -> None:
        session = self.store.active_session
        root = build_tree(self.store.nodes, self.store.edges, session.root_node_id, self.store.active_node_id)
        if root is None:
            self.console.print("[red]Session has no root node[/red]")
            return

        branches = {}
        for depth, tree_node in root.walk():
            number = len(branches) + 1
            label = f"{number}. {escape(node_label(tree_node.node))}"
            if tree_node.is_active:
                label = f"[bold green]{label} ←[/bold green]"
            if depth == 0:
                tree = Tree(label)
                branches[tree_node.node.id] = tree
            else:
                parent_id = next(e.source for e in self.store.edges if e.target == tree_node.node.id)
                branches[tree_node.node.id] = branches[parent_id].add(label)

        self.console.print(tree)

    def show_sessions(self) -> None:
        table = Table(show_header=True, box=None, padding=(0, 1))
        table.add_column("#")
        table.add_column("Title")
        table.add_column("Nodes")
        for number, session in enumerate(self.store.sessions, start=1):
            active = session.id == self.store.active_session_id
            title = escape(self.store.session_title(session))
            table.add_row(str(number), f"[bold green]{title}[/bold green]" if active else title,
                          str(len(session.nodes)))
        self.console.print(table)

    def show_node(self) -> None:
        node = self.active_node
        if node is not None:
            self.console.print(render_node(node))

    def _session_at(self, arg: str):
        try:
            return self.store.sessions[int(arg) - 1]
        except (ValueError, IndexError):
            self.console.print(f"[red]No session {arg}[/red]")
            return None

    async def handle(self, line: str) -> bool:
        """
        Apply one line of input.

        Returns:
            bool: False when the user asked to quit
        """
        line = line.strip()
        if not line:
            return True

        command, _, arg = line.partition(" ")
        arg = arg.strip()

        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            self.console.print(HELP_TEXT)
        elif command == "/tree":
            self.show_tree()
        elif command == "/sessions":
            self.show_sessions()
        elif command == "/new":
            self.store.create_session()
            self.console.print("[green]✓ New session[/green]")
        elif command == "/switch":
            session = self._session_at(arg)
            if session is not None:
                self.store.switch_session(session.id)
                self.show_node()
        elif command == "/delete":
            session = self._session_at(arg) if arg else self.store.active_session
            if session is not None:
                self.store.delete_session(session.id)
                self.console.print(f"[green]✓ Deleted {escape(self.store.session_title(session))}[/green]")
        elif command == "/go":
            await self._go(arg)
        elif command == "/remove":
            self._remove()
        elif command == "/branch":
            await self._branch(arg)
        elif command.startswith("/"):
            self.console.print(f"[red]Unknown command {command}[/red] (try /help)")
        else:
            await self._send(line)

        self.save()
        return True

    async def _go(self, arg: str) -> None:
        order = self.tree_order()
        try:
            node_id = order[int(arg) - 1]
        except (ValueError, IndexError):
            self.console.print(f"[red]No node {arg}[/red]")
            return
        self.store.set_active_node(node_id)
        self.show_node()
        await self._run_pending()

    def _remove(self) -> None:
        session = self.store.active_session
        if self.store.active_node_id == session.root_node_id:
            self.console.print("[red]The root node cannot be removed[/red]")
            return
        self.store.remove_node(self.store.active_node_id)
        self.console.print("[green]✓ Branch removed[/green]")

    async def _branch(self, arg: str) -> None:
        selected, _, prompt = arg.partition("|")
        selected, prompt = selected.strip(), prompt.strip()
        node = self.active_node
        if not selected or node is None:
            self.console.print("[red]Usage: /branch <text> | <question>[/red]")
            return

        source = next((m for m in reversed(node.messages) if selected in m.text), None)
        new_node_id = self.store.create_branch(node.id, selected, source.id if source else None, prompt or None)
        self.console.print(f"[green]✓ Branched on[/green] [yellow]{escape(truncate(selected, 40))}[/yellow]")
        self.show_node()
        if new_node_id:
            await self._run_pending()

    async def _run_pending(self) -> None:
        node = self.active_node
        if node is not None and node.pending_ai_request:
            await self._stream(self.runner.run_pending(self.store, node.id), node.id)

    async def _send(self, text: str) -> None:
        node = self.active_node
        if node is None:
            return
        messages = list(node.messages) + [Message("user", text)]
        self.store.update_node_data(node.id, messages=messages)
        await self._stream(self.runner.send(self.store, node.id, messages), node.id)

    async def _stream(self, coro, node_id: str) -> None:
        """Run a reply, redrawing the last message until it finishes. Ctrl-C cancels it."""
        task = asyncio.ensure_future(coro)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, task.cancel)
        except (NotImplementedError, RuntimeError):
            pass

        try:
            with Live(console=self.console, refresh_per_second=8, transient=True) as live:
                while not task.done():
                    node = self.store.find_node(node_id)
                    if node is not None and node.messages:
                        live.update(render_message(node.messages[-1], node))
                    await asyncio.sleep(0.1)
            await task
        except asyncio.CancelledError:
            self.console.print("[dim]Reply stopped[/dim]")
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

        node = self.store.find_node(node_id)
        if node is not None and node.messages:
            self.console.print(render_message(node.messages[-1], node))

    async def run(self) -> None:
        import questionary

        self.console.print(Panel.fit("[bold cyan]chatflow[/bold cyan]  [dim]/help for commands[/dim]",
                                     border_style="cyan"))
        self.show_node()
        await self._run_pending()

        while True:
            line = await questionary.text(">").ask_async()
            if line is None or not await self.handle(line):
                break

        self.save()
