"""Watch the vault for renames and deletions and keep the index in step."""

import logging
import threading
import time
from typing import Callable

from rich.console import Console
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import TaskAlreadyRunningError
from .documents import VaultDocumentStore

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[list[tuple[str, str]], list[str]], None]


class VaultEventHandler(FileSystemEventHandler):
    """Collects move and delete events and debounces them."""

    def __init__(self, documents: VaultDocumentStore, debounce: float = 2.0):
        super().__init__()
        self.documents = documents
        self._moves: list[tuple[str, str]] = []
        self._deletes: list[str] = []
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._debounce = debounce
        self._callback: ChangeCallback | None = None

    def set_callback(self, callback: ChangeCallback):
        self._callback = callback

    def _relevant(self, location: str | None, is_directory: bool) -> bool:
        if location is None:
            return False
        return is_directory or self.documents.is_tracked(location)

    def on_moved(self, event):
        src = self.documents.location_of(event.src_path)
        dest = self.documents.location_of(event.dest_path)
        if not self._relevant(src, event.is_directory):
            return
        with self._lock:
            if self._relevant(dest, event.is_directory):
                self._moves.append((src, dest))
            else:
                # Moved out of the vault or into an excluded folder
                self._deletes.append(src)
        self._schedule()

    def on_deleted(self, event):
        location = self.documents.location_of(event.src_path)
        if not self._relevant(location, event.is_directory):
            return
        with self._lock:
            self._deletes.append(location)
        self._schedule()

    def _schedule(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self):
        with self._lock:
            moves, deletes = self._moves, self._deletes
            self._moves, self._deletes = [], []
            self._timer = None
        if (moves or deletes) and self._callback:
            self._callback(moves, deletes)


class VaultWatcher:
    """Applies vault renames and deletions to the index as they happen."""

    def __init__(self, workflow, debounce: float = 2.0, console: Console | None = None):
        self.workflow = workflow
        self.console = console or Console()
        self.handler = VaultEventHandler(workflow.documents, debounce=debounce)
        self.handler.set_callback(self._apply)
        self.observer = Observer()

    def _apply(self, moves: list[tuple[str, str]], deletes: list[str]):
        try:
            result = self.workflow.apply_changes(moves, deletes)
        except TaskAlreadyRunningError as e:
            # The next run or clean picks these changes up
            logger.warning("Skipped %d vault change(s): %s", len(moves) + len(deletes), e)
            return
        except Exception:
            logger.exception("Failed to apply vault changes")
            return
        for old, new in moves:
            self.console.print(f"  [dim]Moved: {old} → {new}[/]")
        for location in deletes:
            self.console.print(f"  [dim]Deleted: {location}[/]")
        if result.changed:
            self.console.print(f"  [green]✓ Updated links (+{result.added} -{result.removed})[/]")

    def run(self):
        """Start watching (blocks until Ctrl+C)."""
        vault_path = self.workflow.documents.vault_path
        self.observer.schedule(self.handler, str(vault_path), recursive=True)
        self.observer.start()

        self.console.print(f"[bold]Watching {vault_path} for renames and deletions... (Ctrl+C to stop)[/]")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            self.console.print("\n[yellow]Stopping watcher...[/]")
            self.observer.stop()
        self.observer.join()
        self.workflow.close()
        self.console.print("[green]✓ Watcher stopped.[/]")
