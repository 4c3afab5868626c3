"""Scoped ownership of one Chromium process per portal session.

Chromium is started as a child process with a remote-debugging port and
Playwright attaches over CDP, so the guard always holds a process handle it
can terminate or kill when a graceful close stalls.
"""
from __future__ import annotations

import asyncio
import shutil
import socket
import tempfile
from typing import Optional

import requests
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from . import config
from .error_codes import CpnuError, ErrorCategory
from .logging_utils import _sync_event


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def _probe_debug_endpoint(url: str, timeout: float) -> bool:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return True
    except requests.RequestException:
        return False


class BrowserGuard:
    """Async context manager yielding a ready :class:`Page`.

    ``release()`` is idempotent and never raises; it runs on every exit path,
    including cancellation by the session timeout.
    """

    def __init__(
        self,
        *,
        headless: Optional[bool] = None,
        close_timeout: Optional[float] = None,
        startup_timeout: Optional[float] = None,
    ) -> None:
        self.headless = config.CPNU_HEADLESS if headless is None else headless
        self.close_timeout = close_timeout or config.BROWSER_CLOSE_TIMEOUT_SECONDS
        self.startup_timeout = startup_timeout or config.BROWSER_STARTUP_TIMEOUT_SECONDS
        self.page: Optional[Page] = None
        self.released = False
        self.force_killed = False
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._user_data_dir: Optional[str] = None

    async def __aenter__(self) -> Page:
        try:
            return await self._start()
        except BaseException:
            await self.release()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.release()
        return False

    def _chrome_path(self) -> str:
        if config.CPNU_CHROME_PATH:
            return config.CPNU_CHROME_PATH
        assert self._playwright is not None
        return self._playwright.chromium.executable_path

    async def _start(self) -> Page:
        self._playwright = await async_playwright().start()
        port = _free_port()
        self._user_data_dir = tempfile.mkdtemp(prefix="cpnu-chrome-")

        args = [
            self._chrome_path(),
            f"--remote-debugging-port={port}",
            f"--user-data-dir={self._user_data_dir}",
            "--no-first-run",
            "--no-default-browser-check",
            *config.browser_launch_args(),
        ]
        if self.headless:
            args.append("--headless=new")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise CpnuError(f"Failed to initialize browser: {exc}", ErrorCategory.CONNECTION) from exc

        endpoint = f"http://127.0.0.1:{port}"
        await self._wait_for_debug_endpoint(f"{endpoint}/json/version")

        self._browser = await self._playwright.chromium.connect_over_cdp(endpoint)
        self._context = await self._browser.new_context(
            user_agent=config.USER_AGENT,
            viewport=config.VIEWPORT,
            locale="es-CO",
        )
        self.page = await self._context.new_page()
        self.page.set_default_timeout(config.RESULTS_TIMEOUT_SECONDS * 1000)
        self.page.set_default_navigation_timeout(config.NAV_TIMEOUT_SECONDS * 1000)
        _sync_event("browser", phase="launched", pid=self._process.pid, port=port)
        return self.page

    async def _wait_for_debug_endpoint(self, url: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while True:
            if self._process is not None and self._process.returncode is not None:
                raise CpnuError(
                    f"Failed to initialize browser: chromium exited with {self._process.returncode}",
                    ErrorCategory.CONNECTION,
                )
            if await asyncio.to_thread(_probe_debug_endpoint, url, 1.0):
                return
            if loop.time() >= deadline:
                raise CpnuError(
                    f"Failed to initialize browser: debug endpoint not ready after {self.startup_timeout:g}s",
                    ErrorCategory.CONNECTION,
                )
            await asyncio.sleep(config.POLL_INTERVAL_SECONDS)

    async def release(self) -> None:
        if self.released:
            return
        self.released = True

        try:
            await self._close_browser()
        finally:
            try:
                await self._stop_process()
            except asyncio.CancelledError:
                self._kill_process()
                raise
            finally:
                if self._user_data_dir:
                    shutil.rmtree(self._user_data_dir, ignore_errors=True)
                await self._stop_playwright()

        _sync_event("browser", phase="released", force_killed=self.force_killed)

    async def _close_browser(self) -> None:
        if self._context is not None:
            for page in list(self._context.pages):
                try:
                    await asyncio.wait_for(page.close(), self.close_timeout)
                except Exception as exc:  # noqa: BLE001
                    _sync_event("warning", phase="browser_release", step="page_close", error=repr(exc))

        if self._browser is not None:
            try:
                await asyncio.wait_for(self._browser.close(), self.close_timeout)
            except Exception as exc:  # noqa: BLE001
                _sync_event("warning", phase="browser_release", step="browser_close", error=repr(exc))

    async def _stop_playwright(self) -> None:
        if self._playwright is None:
            return
        try:
            await asyncio.wait_for(self._playwright.stop(), self.close_timeout)
        except Exception as exc:  # noqa: BLE001
            _sync_event("warning", phase="browser_release", step="playwright_stop", error=repr(exc))

    def _kill_process(self) -> None:
        """Kill the child without waiting; used when release itself is cancelled."""

        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        self.force_killed = True
        try:
            proc.kill()
        except ProcessLookupError:
            return
        _sync_event("warning", phase="browser_release", step="kill_on_cancel", pid=proc.pid)

    async def _stop_process(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), self.close_timeout)
            return
        except ProcessLookupError:
            return
        except Exception as exc:  # noqa: BLE001
            _sync_event("warning", phase="browser_release", step="terminate", error=repr(exc))

        self.force_killed = True
        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), self.close_timeout)
        except ProcessLookupError:
            return
        except Exception as exc:  # noqa: BLE001
            _sync_event("error", phase="browser_release", step="kill", pid=proc.pid, error=repr(exc))


__all__ = ["BrowserGuard"]
