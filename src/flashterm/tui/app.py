"""Minimal multi-tab shell front end on top of ``ShellEngine``.

Each tab is one engine session (session id == tab id). The input line
is shared; submissions go to the active tab. Output arrives through the
engine's consumer callback and is appended to that tab's log.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.css.query import NoMatches
from textual.widgets import Footer, Header, Input, RichLog, Static, TabbedContent, TabPane

from ..engine import EngineConfig, ShellEngine


PAYLOAD_STYLES = {"error": "red", "info": "cyan"}


class FlashTermApp(App):
    TITLE = "Flash Terminal"

    CSS = """
    #prompt {
        height: 1;
        padding: 0 1;
        color: $accent;
    }
    #command-input {
        dock: bottom;
    }
    RichLog {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("ctrl+t", "new_tab", "New tab", priority=True),
        Binding("ctrl+w", "close_tab", "Close tab", priority=True),
        Binding("ctrl+q", "quit", "Quit"),
    ]

    def __init__(self, config: Optional[EngineConfig] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.engine = ShellEngine(config=config, consumer=self._on_output)
        self._tab_counter = 0

    def compose(self) -> ComposeResult:
        yield Header()
        yield TabbedContent(id="tabs")
        yield Static("", id="prompt")
        yield Input(placeholder="Type a command, 'help' for built-ins", id="command-input")
        yield Footer()

    async def on_mount(self) -> None:
        await self.action_new_tab()
        self.query_one("#command-input", Input).focus()

    @property
    def active_tab(self) -> Optional[str]:
        active = self.query_one("#tabs", TabbedContent).active
        return active or None

    async def action_new_tab(self) -> None:
        self._tab_counter += 1
        tab_id = f"tab-{self._tab_counter}"
        pane = TabPane(
            f"Terminal {self._tab_counter}",
            RichLog(id=f"log-{tab_id}", wrap=True, markup=False, highlight=False),
            id=tab_id,
        )
        tabs = self.query_one("#tabs", TabbedContent)
        await tabs.add_pane(pane)
        tabs.active = tab_id
        self._update_prompt()

    async def action_close_tab(self) -> None:
        tab_id = self.active_tab
        if tab_id is None:
            return
        await self._close_tab(tab_id)

    async def _close_tab(self, tab_id: str) -> None:
        self.engine.destroy(tab_id)
        tabs = self.query_one("#tabs", TabbedContent)
        await tabs.remove_pane(tab_id)
        if tabs.tab_count == 0:
            self.exit()
            return
        self._update_prompt()

    def on_tabbed_content_tab_activated(self, event: TabbedContent.TabActivated) -> None:
        self._update_prompt()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        tab_id = self.active_tab
        if tab_id is None:
            return
        text = event.value
        event.input.value = ""
        secret = self.engine.awaiting_secret(tab_id)
        if not secret and text.strip() in ("clear", "cls") and self.engine.remote_label(tab_id) is None:
            log = self._log_for(tab_id)
            if log is not None:
                log.clear()
            return
        if not secret and text.strip():
            self._write(tab_id, f"> {text}", "bold")
        # workers start in submission order; the engine keeps per-tab FIFO
        self.run_worker(self._submit(tab_id, text), group=f"cmd-{tab_id}")

    async def _submit(self, tab_id: str, text: str) -> None:
        result = await self.engine.execute(tab_id, tab_id, text)
        if result.get("close_tab"):
            await self._close_tab(tab_id)
            return
        if not result.get("success"):
            self.engine.log_manager.add("errors", f"[{tab_id}] {result.get('error')}")
        if tab_id == self.active_tab:
            self.query_one("#command-input", Input).password = self.engine.awaiting_secret(tab_id)
        self._update_prompt()

    async def on_unmount(self) -> None:
        await self.engine.shutdown()

    def _on_output(self, tab_id: str, payload: Dict[str, Any]) -> None:
        if payload.get("type") == "cwd-update":
            self._update_prompt()
            return
        text = payload.get("stdout") or payload.get("stderr") or ""
        if text:
            self._write(tab_id, text.rstrip("\n"), PAYLOAD_STYLES.get(payload.get("type", ""), ""))

    def _write(self, tab_id: str, text: str, style: str = "") -> None:
        log = self._log_for(tab_id)
        if log is None:
            return
        rendered = Text.from_ansi(text)
        if style:
            rendered.stylize(style)
        log.write(rendered)

    def _log_for(self, tab_id: str) -> Optional[RichLog]:
        try:
            return self.query_one(f"#log-{tab_id}", RichLog)
        except NoMatches:
            return None

    def _update_prompt(self) -> None:
        tab_id = self.active_tab
        prompt = self.query_one("#prompt", Static)
        if tab_id is None:
            prompt.update("")
            return
        location = self.engine.remote_label(tab_id) or self.engine.get_cwd(tab_id)
        prompt.update(Text(f"{location}>"))
