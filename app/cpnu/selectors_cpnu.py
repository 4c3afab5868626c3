"""Selectors and text hints for the CPNU consulta-por-radicado page.

The portal is a Vuetify SPA whose generated ids change between deployments,
so each interactive element is located through several structural queries
tried in order.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class CpnuSelectors:
    radicado_inputs: Tuple[str, ...] = (
        "input[maxlength='23']",
        "input[placeholder*='Radicación']",
        "input[placeholder*='radicación']",
        "input[placeholder*='23']",
        "input[id^='input-']",
        "input[type='text']",
    )
    consultar_buttons: Tuple[str, ...] = (
        "xpath=//span[contains(@class,'v-btn__content') and normalize-space(text())='Consultar']/ancestor::button",
        "xpath=//button[contains(., 'Consultar')]",
        "xpath=//span[normalize-space(text())='Consultar']",
        "button:has-text('Consultar')",
    )
    radio_inputs: str = "input[type='radio']"
    alert_selectors: Tuple[str, ...] = (
        ".error",
        ".v-messages__message",
        "[role='alert']",
        ".v-alert",
    )
    result_button_templates: Tuple[str, ...] = (
        "xpath=//table//button[.//span[contains(@class,'v-btn__content') and normalize-space(text())='{radicado}']]",
        "xpath=//table//button[contains(., '{radicado}')]",
        "table button:has-text('{radicado}')",
        "text={radicado}",
    )
    detail_marker: str = "th.text-left.subtitle-1.font-weight-bold"
    tab_templates: Tuple[str, ...] = (
        "div.v-tab:has-text('{label}')",
        "[role='tab']:has-text('{label}')",
        "xpath=//div[contains(@class,'v-tab') and contains(., '{label}')]",
        "text={label}",
    )


CPNU_SELECTORS = CpnuSelectors()

FILTER_TARGET_LABEL = "todos los procesos"
FILTER_RECENT_LABEL = "recientes"

PARTIES_TAB_LABEL = "Sujetos Procesales"
ACTUACIONES_TAB_LABEL = "Actuaciones"

NO_RESULTS_PHRASES: Tuple[str, ...] = (
    "no se encontraron",
    "no encontrado",
    "sin resultados",
    "no hay resultados",
    "no existe",
)

__all__ = [
    "CpnuSelectors",
    "CPNU_SELECTORS",
    "FILTER_TARGET_LABEL",
    "FILTER_RECENT_LABEL",
    "PARTIES_TAB_LABEL",
    "ACTUACIONES_TAB_LABEL",
    "NO_RESULTS_PHRASES",
]
