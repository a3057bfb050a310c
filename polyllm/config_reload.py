"""Hot reload of the gateway configuration file via watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import load_config
from .gateway_service import GatewayService
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


def watchdog_path_matches_config(path: str | bytes | Path | None, watch_name: str) -> bool:
    """Return true when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == watch_name


class _ConfigFileHandler(FileSystemEventHandler):
    """Forward events touching one file name to the event loop."""

    def __init__(self, watch_name: str, notify: Callable[[], None]) -> None:
        super().__init__()
        self._watch_name = watch_name
        self._notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in {"opened", "closed_no_write"}:
            return
        paths = (event.src_path, getattr(event, "dest_path", None))
        if any(watchdog_path_matches_config(path, self._watch_name) for path in paths):
            self._notify()


class ConfigReloadWatcher:
    """Watch one config file and await ``on_reload`` after each change."""

    def __init__(self, config_file: Path, on_reload: Callable[[Path], Awaitable[None]]) -> None:
        self.config_file = config_file
        self._on_reload = on_reload

    async def _reload(self) -> None:
        LOG.info("Configuration change detected at %s, reloading...", self.config_file)
        try:
            await self._on_reload(self.config_file)
        except Exception as exc:
            LOG.warning("Configuration reload failed, keeping current config: %s", exc)
            return
        LOG.info("Configuration reloaded successfully")

    async def run_forever(self) -> None:
        """Run until cancelled; editors often emit bursts, so changes are debounced."""
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigFileHandler(self.config_file.name, lambda: loop.call_soon_threadsafe(changed.set))

        observer = Observer()
        observer.schedule(handler, str(self.config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                await asyncio.sleep(0.2)
                changed.clear()
                await self._reload()
        finally:
            observer.stop()
            with contextlib.suppress(RuntimeError):
                await asyncio.to_thread(observer.join, 2.0)


def service_reloader(service: GatewayService) -> Callable[[Path], Awaitable[None]]:
    """Build the reload callback that swaps a running service's configuration."""

    async def reload(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    return reload
