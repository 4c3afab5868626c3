"""Drive the CPNU consulta-por-radicado SPA for a single radicado.

A session walks the portal through a fixed sequence of states, locating each
control through ordered fallbacks and waiting by polling page snapshots. The
whole session is raced against a hard timeout and the browser is released on
every exit path.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import config
from .browser_guard import BrowserGuard
from .error_codes import CpnuError, ErrorCategory, duplicate_record_error, enrich_error
from .extractor import (
    ExtractionContext,
    ResultsPage,
    ResultsState,
    actuaciones_ready,
    extract_actuaciones,
    extract_parties,
    extract_process_metadata,
    has_process_metadata,
    normalize_text,
    parties_ready,
    read_results_page,
)
from .logging_utils import _sync_event
from .models import CaseRecord, PartyRecord, validate_radicado
from .selectors_cpnu import (
    ACTUACIONES_TAB_LABEL,
    CPNU_SELECTORS,
    FILTER_RECENT_LABEL,
    FILTER_TARGET_LABEL,
    PARTIES_TAB_LABEL,
)
from .utils import utc_now_iso


class SessionState(str, Enum):
    INIT = "init"
    SEARCH_PAGE_LOADED = "search_page_loaded"
    RADICADO_ENTERED = "radicado_entered"
    FILTER_SELECTED = "filter_selected"
    SUBMITTED = "submitted"
    RESULTS_LOADED = "results_loaded"
    RECORD_SELECTED = "record_selected"
    PROCESS_DATA_READ = "process_data_read"
    PARTIES_READ = "parties_read"
    ACTUACIONES_READ = "actuaciones_read"
    COMPLETE = "complete"
    # Terminal failures
    NOT_FOUND = "not_found"
    DUPLICATE_RECORD = "duplicate_record"
    TIMEOUT = "timeout"
    CONNECTION_FAILURE = "connection_failure"
    OTHER = "other"


def terminal_state_for(error: CpnuError) -> SessionState:
    if error.is_duplicate_record:
        return SessionState.DUPLICATE_RECORD
    return {
        ErrorCategory.NOT_FOUND: SessionState.NOT_FOUND,
        ErrorCategory.TIMEOUT: SessionState.TIMEOUT,
        ErrorCategory.CONNECTION: SessionState.CONNECTION_FAILURE,
    }.get(error.category, SessionState.OTHER)


@dataclass
class SessionSettings:
    nav_timeout: float = field(default_factory=lambda: config.NAV_TIMEOUT_SECONDS)
    element_timeout: float = field(default_factory=lambda: config.ELEMENT_TIMEOUT_SECONDS)
    input_timeout: float = field(default_factory=lambda: config.TAB_TIMEOUT_SECONDS)
    results_timeout: float = field(default_factory=lambda: config.RESULTS_TIMEOUT_SECONDS)
    detail_timeout: float = field(default_factory=lambda: config.DETAIL_TIMEOUT_SECONDS)
    tab_timeout: float = field(default_factory=lambda: config.TAB_TIMEOUT_SECONDS)
    actuaciones_timeout: float = field(default_factory=lambda: config.ACTUACIONES_TIMEOUT_SECONDS)
    poll_interval: float = field(default_factory=lambda: config.POLL_INTERVAL_SECONDS)
    record_fixtures: bool = field(default_factory=lambda: config.RECORD_REPLAY_FIXTURES)


# ---------------------------------------------------------------------------
# Filter radio selection
# ---------------------------------------------------------------------------


@dataclass
class RadioOption:
    index: int
    label: str
    checked: bool = False
    name: str = ""


def _by_target_label(options: Sequence[RadioOption]) -> Optional[int]:
    for option in options:
        if FILTER_TARGET_LABEL in normalize_text(option.label):
            return option.index
    return None


def _sibling_of_recent(options: Sequence[RadioOption]) -> Optional[int]:
    recent_groups = {
        option.name
        for option in options
        if option.checked and FILTER_RECENT_LABEL in normalize_text(option.label)
    }
    for option in options:
        if option.name in recent_groups and not option.checked:
            return option.index
    return None


def _unchecked_not_recent(options: Sequence[RadioOption]) -> Optional[int]:
    for option in options:
        if not option.checked and FILTER_RECENT_LABEL not in normalize_text(option.label):
            return option.index
    return None


def _any_unchecked(options: Sequence[RadioOption]) -> Optional[int]:
    for option in options:
        if not option.checked:
            return option.index
    return None


FILTER_STRATEGIES: tuple[Callable[[Sequence[RadioOption]], Optional[int]], ...] = (
    _by_target_label,
    _sibling_of_recent,
    _unchecked_not_recent,
    _any_unchecked,
)


def choose_filter_option(options: Sequence[RadioOption]) -> Optional[int]:
    """Return the index of the "Todos los procesos" radio, or ``None``."""

    for strategy in FILTER_STRATEGIES:
        index = strategy(options)
        if index is not None:
            return index
    return None


_RADIO_SCRIPT = """
() => Array.from(document.querySelectorAll("input[type='radio']")).map((el, index) => {
  const wrapper = el.closest('.v-radio') || el.parentElement;
  const labelled = el.labels && el.labels.length ? el.labels[0].textContent : '';
  const label = labelled || (wrapper ? wrapper.textContent : '') || el.getAttribute('aria-label') || el.value || '';
  return {index, label: label.trim(), checked: !!el.checked, name: el.name || ''};
})
"""

# Emits one input event per character, then change and blur, so the Vue
# model sees the same sequence as real typing.
_TYPE_SCRIPT = """
(el, value) => {
  el.focus();
  el.value = '';
  el.dispatchEvent(new Event('input', {bubbles: true}));
  for (const ch of value) {
    el.value += ch;
    el.dispatchEvent(new InputEvent('input', {bubbles: true, data: ch, inputType: 'insertText'}));
  }
  el.dispatchEvent(new Event('change', {bubbles: true}));
  el.dispatchEvent(new Event('blur', {bubbles: true}));
  return el.value;
}
"""


class PortalSession:
    """One lookup of ``radicado`` on an already acquired page."""

    def __init__(
        self,
        radicado: str,
        page: Any,
        *,
        ctx: ExtractionContext | None = None,
        settings: SessionSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.radicado = radicado
        self.page = page
        self.ctx = ctx or ExtractionContext(radicado=radicado)
        self.settings = settings or SessionSettings()
        self.state = SessionState.INIT
        self._sleep = sleep
        self._fixture_dir: Optional[Path] = None

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _advance(self, state: SessionState, **fields: Any) -> None:
        self.state = state
        _sync_event("state", phase="session", radicado=self.radicado, state=state.value, **fields)

    async def _poll(self, probe: Callable[[], Awaitable[Any]], *, timeout: float, label: str) -> Any:
        """Call ``probe`` every poll interval until it returns a truthy value."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await probe()
            if result:
                return result
            if loop.time() >= deadline:
                _sync_event(
                    "state",
                    phase="wait_timeout",
                    radicado=self.radicado,
                    step=label,
                    timeout_seconds=timeout,
                )
                return result
            await self._sleep(self.settings.poll_interval)

    async def _snapshot(self, label: str | None = None) -> str:
        html = await self.page.content()
        if label and self.settings.record_fixtures:
            self._record_fixture(label, html)
        return html

    def _record_fixture(self, label: str, html: str) -> None:
        try:
            if self._fixture_dir is None:
                stamp = time.strftime("%Y%m%d_%H%M%S")
                self._fixture_dir = config.REPLAY_FIXTURES_DIR / f"{self.radicado}_{stamp}"
                self._fixture_dir.mkdir(parents=True, exist_ok=True)
            (self._fixture_dir / f"{label}.html").write_text(html, encoding="utf-8")
        except OSError as exc:
            _sync_event("warning", phase="replay_record", label=label, error=repr(exc))

    async def _first_visible(self, selectors: Sequence[str]) -> Any:
        for selector in selectors:
            locator = self.page.locator(selector)
            try:
                count = await locator.count()
            except PlaywrightError:
                continue
            for index in range(count):
                candidate = locator.nth(index)
                try:
                    if await candidate.is_visible():
                        return candidate
                except PlaywrightError:
                    continue
        return None

    async def _click(self, element: Any) -> None:
        try:
            await element.click(timeout=self.settings.element_timeout * 1000)
        except PlaywrightError:
            await element.evaluate("el => el.click()")

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def load_search_page(self) -> None:
        try:
            response = await self.page.goto(
                config.CPNU_BASE_URL,
                wait_until="domcontentloaded",
                timeout=self.settings.nav_timeout * 1000,
            )
        except PlaywrightTimeoutError as exc:
            raise CpnuError(f"Navigation to CPNU timed out: {exc}", ErrorCategory.TIMEOUT) from exc
        except PlaywrightError as exc:
            raise CpnuError(f"CPNU connection failed: {exc}", ErrorCategory.CONNECTION) from exc
        if response is not None and response.status >= 500:
            raise CpnuError(
                f"CPNU connection failed: portal answered HTTP {response.status}",
                ErrorCategory.CONNECTION,
            )
        self._advance(SessionState.SEARCH_PAGE_LOADED)

    async def _find_radicado_input(self) -> Any:
        for selector in CPNU_SELECTORS.radicado_inputs:
            locator = self.page.locator(selector)
            try:
                count = await locator.count()
            except PlaywrightError:
                continue
            for index in range(count):
                candidate = locator.nth(index)
                try:
                    if not await candidate.is_visible():
                        continue
                    maxlength = await candidate.get_attribute("maxlength")
                    placeholder = await candidate.get_attribute("placeholder") or ""
                except PlaywrightError:
                    continue
                if maxlength == "23" or "radicacion" in normalize_text(placeholder):
                    return candidate
        return None

    async def enter_radicado(self) -> None:
        field_input = await self._poll(
            self._find_radicado_input,
            timeout=self.settings.input_timeout,
            label="radicado_input",
        )
        if field_input is None:
            raise CpnuError("Radicado input not found on CPNU page", ErrorCategory.OTHER)

        await field_input.evaluate(_TYPE_SCRIPT, self.radicado)
        if await field_input.input_value() != self.radicado:
            _sync_event("state", phase="value_entry", radicado=self.radicado, kind="alternate_dispatch")
            await field_input.fill("")
            await field_input.press_sequentially(self.radicado, delay=20)
            await field_input.dispatch_event("change")
            await field_input.dispatch_event("blur")
            if await field_input.input_value() != self.radicado:
                raise CpnuError("Failed to set radicado in input field", ErrorCategory.OTHER)
        self._advance(SessionState.RADICADO_ENTERED)

    async def select_filter(self) -> None:
        raw_options = await self.page.evaluate(_RADIO_SCRIPT) or []
        options = [RadioOption(**option) for option in raw_options]
        if not options:
            # Portal variant without the filter; it already searches every process.
            self.ctx.note("filter", kind="no_radios")
            self._advance(SessionState.FILTER_SELECTED, skipped=True)
            return

        index = choose_filter_option(options)
        if index is None:
            raise CpnuError("Could not select the 'Todos los procesos' filter", ErrorCategory.OTHER)

        radio = self.page.locator(CPNU_SELECTORS.radio_inputs).nth(index)
        try:
            await radio.check(force=True, timeout=self.settings.element_timeout * 1000)
        except PlaywrightError:
            await radio.evaluate("el => el.click()")
        self._advance(SessionState.FILTER_SELECTED, option=options[index].label)

    async def submit(self) -> None:
        button = await self._poll(
            lambda: self._first_visible(CPNU_SELECTORS.consultar_buttons),
            timeout=self.settings.element_timeout,
            label="consultar_button",
        )
        if button is None:
            raise CpnuError("Consultar button not found on CPNU page", ErrorCategory.OTHER)
        if await button.is_disabled():
            raise CpnuError(
                "Consultar button is disabled; the radicado is invalid for the portal",
                ErrorCategory.VALIDATION,
            )
        await self._click(button)
        self._advance(SessionState.SUBMITTED)

    async def await_results(self) -> ResultsPage:
        async def probe() -> Optional[ResultsPage]:
            page = read_results_page(await self._snapshot(), self.radicado)
            return page if page.state != ResultsState.PENDING else None

        outcome = await self._poll(probe, timeout=self.settings.results_timeout, label="results")
        if outcome is None:
            raise CpnuError("Radicado not found in results table", ErrorCategory.NOT_FOUND)
        if outcome.state == ResultsState.NO_RESULTS:
            raise CpnuError(
                f"No results found for radicado {self.radicado}",
                ErrorCategory.NOT_FOUND,
            )
        if outcome.state == ResultsState.DUPLICATE:
            _sync_event(
                "state",
                phase="duplicate_record",
                radicado=self.radicado,
                matches=outcome.matches,
                message=outcome.message,
            )
            raise duplicate_record_error()
        self._advance(SessionState.RESULTS_LOADED, matches=outcome.matches)
        return outcome

    async def open_record(self) -> None:
        selectors = [template.format(radicado=self.radicado) for template in CPNU_SELECTORS.result_button_templates]
        button = await self._first_visible(selectors)
        if button is None:
            raise CpnuError("Radicado not found in results table", ErrorCategory.NOT_FOUND)
        await self._click(button)

        async def detail_loaded() -> bool:
            return has_process_metadata(await self._snapshot())

        if not await self._poll(detail_loaded, timeout=self.settings.detail_timeout, label="detail"):
            raise CpnuError("Timed out waiting for the case detail page", ErrorCategory.TIMEOUT)
        self._advance(SessionState.RECORD_SELECTED)

    async def read_process_data(self):
        html = await self._snapshot("detail")
        metadata = extract_process_metadata(html, self.ctx)
        self._advance(SessionState.PROCESS_DATA_READ, fields=sorted(metadata.to_dict()))
        return metadata

    async def _open_tab(self, label: str) -> bool:
        selectors = [template.format(label=label) for template in CPNU_SELECTORS.tab_templates]
        tab = await self._first_visible(selectors)
        if tab is None:
            self.ctx.warn("tab not found", tab=label)
            return False
        await self._click(tab)
        return True

    async def read_parties(self) -> PartyRecord:
        parties = PartyRecord()
        if await self._open_tab(PARTIES_TAB_LABEL):

            async def ready() -> bool:
                return parties_ready(await self._snapshot())

            await self._poll(ready, timeout=self.settings.tab_timeout, label="parties")
            parties = extract_parties(await self._snapshot("parties"), self.ctx)
        self._advance(SessionState.PARTIES_READ)
        return parties

    async def read_actuaciones(self):
        entries = []
        if await self._open_tab(ACTUACIONES_TAB_LABEL):

            async def ready() -> bool:
                return actuaciones_ready(await self._snapshot())

            if not await self._poll(ready, timeout=self.settings.actuaciones_timeout, label="actuaciones"):
                self.ctx.warn("actuaciones table still loading; extracting settled rows only")
            entries = extract_actuaciones(await self._snapshot("actuaciones"), self.ctx)
        self._advance(SessionState.ACTUACIONES_READ, count=len(entries))
        return entries

    async def run(self) -> CaseRecord:
        try:
            await self.load_search_page()
            await self.enter_radicado()
            await self.select_filter()
            await self.submit()
            await self.await_results()
            await self.open_record()
            metadata = await self.read_process_data()
            parties = await self.read_parties()
            actuaciones = await self.read_actuaciones()
        except CpnuError as error:
            self.state = terminal_state_for(error)
            raise
        except PlaywrightError as exc:
            error = enrich_error(exc)
            self.state = terminal_state_for(error)
            raise error from exc

        record = CaseRecord(
            radicado=self.radicado,
            datos_proceso=metadata,
            sujetos_procesales=parties,
            actuaciones=actuaciones,
            scraped_at=utc_now_iso(),
        )
        self._advance(SessionState.COMPLETE, actuaciones=len(actuaciones))
        return record


async def scrape_cpnu(
    radicado: str,
    *,
    timeout_seconds: float | None = None,
    guard_factory: Callable[[], Any] = BrowserGuard,
    session_factory: Callable[..., PortalSession] = PortalSession,
) -> CaseRecord:
    """Look up ``radicado`` on CPNU within a hard overall timeout.

    Raises :class:`CpnuError` for every failure. The browser guard is released
    whether the session completes, fails or is cancelled by the timeout.
    """

    radicado = validate_radicado(radicado)
    timeout = timeout_seconds or config.SESSION_TIMEOUT_SECONDS
    guard = guard_factory()
    started = time.monotonic()
    _sync_event("scrape", phase="start", radicado=radicado, timeout_seconds=timeout)

    async def _session() -> CaseRecord:
        async with guard as page:
            return await session_factory(radicado, page).run()

    try:
        record = await asyncio.wait_for(_session(), timeout)
    except asyncio.TimeoutError as exc:
        error = CpnuError(
            f"CPNU scraping timed out after {timeout:g} seconds",
            ErrorCategory.TIMEOUT,
        )
        _sync_event("error", phase="scrape", radicado=radicado, **error.to_payload())
        raise error from exc
    except CpnuError as error:
        _sync_event("error", phase="scrape", radicado=radicado, **error.to_payload())
        raise
    except Exception as exc:  # noqa: BLE001
        error = enrich_error(exc)
        _sync_event("error", phase="scrape", radicado=radicado, **error.to_payload())
        raise error from exc
    finally:
        release = getattr(guard, "release", None)
        if release is not None:
            await release()

    _sync_event(
        "scrape",
        phase="complete",
        radicado=radicado,
        actuaciones=len(record.actuaciones),
        duration_seconds=round(time.monotonic() - started, 2),
    )
    return record


__all__ = [
    "SessionState",
    "SessionSettings",
    "PortalSession",
    "RadioOption",
    "choose_filter_option",
    "terminal_state_for",
    "scrape_cpnu",
]
