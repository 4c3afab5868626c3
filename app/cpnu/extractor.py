"""Structured field extraction from CPNU page snapshots.

The portal session hands over ``page.content()`` HTML at each stage; this
module turns it into process metadata, party roles and the actuaciones table.
Everything here is pure so it can be exercised against captured fixtures.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from bs4 import BeautifulSoup, Tag

from .date_utils import is_bare_date, parse_portal_date
from .error_codes import is_duplicate_message
from .logging_utils import _sync_event
from .models import ActuacionEntry, PartyRecord, ProcessMetadata
from .selectors_cpnu import CPNU_SELECTORS, NO_RESULTS_PHRASES

LOADING_PHRASES = ("cargando", "por favor espere", "loading", "espere")

_WS_RE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Lower-case, strip accents and collapse whitespace."""

    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS_RE.sub(" ", stripped).strip().lower()


def clean_text(text: str | None) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def is_loading_text(text: str | None) -> bool:
    lowered = normalize_text(text)
    return any(phrase in lowered for phrase in LOADING_PHRASES)


def is_control_artifact(text: str | None) -> bool:
    """Return ``True`` for cells that only hold button or icon residue."""

    value = (text or "").strip()
    if not value:
        return True
    if "button" in value.lower() or "fa-" in value:
        return True
    return not any(ch.isalnum() for ch in value)


@dataclass
class ExtractionContext:
    """Per-session scratch state threaded through each extraction stage."""

    radicado: str = ""
    notes: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def note(self, stage: str, **fields: Any) -> None:
        self.notes.append({"stage": stage, **fields})

    def warn(self, message: str, **fields: Any) -> None:
        self.warnings.append(message)
        _sync_event("warning", phase="extract", radicado=self.radicado, message=message, **fields)


@dataclass
class TableSnapshot:
    headers: list[str]
    rows: list[list[str]]


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html5lib")


def _table_snapshot(table: Tag) -> TableSnapshot:
    headers = [clean_text(th.get_text(" ")) for th in table.select("thead th")]
    rows: list[list[str]] = []
    for tr in table.find_all("tr"):
        if tr.find_parent("thead") is not None:
            continue
        cells = tr.find_all(["td", "th"], recursive=False)
        if not cells:
            continue
        texts = [clean_text(cell.get_text(" ")) for cell in cells]
        if not headers and not rows and all(cell.name == "th" for cell in cells):
            headers = texts
            continue
        if all(cell.name == "th" for cell in cells):
            continue
        rows.append(texts)
    return TableSnapshot(headers=headers, rows=rows)


def table_snapshots(html: str) -> list[TableSnapshot]:
    return [_table_snapshot(table) for table in _soup(html).find_all("table")]


# ---------------------------------------------------------------------------
# Process metadata
# ---------------------------------------------------------------------------

_METADATA_LABELS = {
    "despacho": "despacho",
    "clase de proceso": "clase_proceso",
    "fecha de radicacion": "fecha_radicacion",
    "tipo de proceso": "tipo_proceso",
}


def _adjacent_value(label_cell: Tag) -> Optional[str]:
    sibling = label_cell.find_next_sibling(["td", "th"])
    if sibling is not None:
        value = clean_text(sibling.get_text(" "))
        if value:
            return value
    row = label_cell.find_parent("tr")
    if row is not None:
        cells = row.find_all("td")
        for cell in cells:
            if cell is label_cell:
                continue
            value = clean_text(cell.get_text(" "))
            if value:
                return value
    return None


def extract_process_metadata(html: str, ctx: ExtractionContext | None = None) -> ProcessMetadata:
    """Read "Datos del proceso" by label; missing labels leave fields unset."""

    metadata = ProcessMetadata()
    for cell in _soup(html).find_all(["th", "td"]):
        label = normalize_text(cell.get_text(" ")).rstrip(":").strip()
        attr = _METADATA_LABELS.get(label)
        if attr is None or getattr(metadata, attr):
            continue
        value = _adjacent_value(cell)
        if value and not is_loading_text(value):
            setattr(metadata, attr, value)

    if ctx is not None:
        ctx.note("process_metadata", fields=sorted(metadata.to_dict()))
    return metadata


def has_process_metadata(html: str) -> bool:
    soup = _soup(html)
    if soup.select_one(CPNU_SELECTORS.detail_marker) is not None:
        return True
    return any(
        normalize_text(cell.get_text(" ")).rstrip(":").strip() == "despacho"
        for cell in soup.find_all(["th", "td"])
    )


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------


def classify_party_role(label: str | None) -> Optional[str]:
    """Map a portal role label onto a :class:`PartyRecord` attribute name.

    Returns ``"defensor"`` for an unqualified defender label.
    """

    norm = normalize_text(label)
    if not norm:
        return None
    if "defensor" in norm:
        if "privado" in norm:
            return "defensor_privado"
        if "publico" in norm:
            return "defensor_publico"
        return "defensor"
    if "demandante" in norm or "accionante" in norm:
        return "demandante"
    if "demandado" in norm or "indiciado" in norm or "causante" in norm:
        return "demandado"
    return None


def _find_header_index(headers: Sequence[str], *needles: str) -> int:
    for index, header in enumerate(headers):
        norm = normalize_text(header)
        if any(needle in norm for needle in needles):
            return index
    return -1


def _parties_table(tables: Sequence[TableSnapshot]) -> Optional[TableSnapshot]:
    for table in tables:
        headers = [normalize_text(h) for h in table.headers]
        has_tipo = any("tipo" in h for h in headers)
        has_nombre = any("nombre" in h or "razon" in h for h in headers)
        if has_tipo and has_nombre:
            return table
    # Headerless layout: first table whose rows carry a role in the first cell.
    for table in tables:
        if any(len(row) >= 2 and classify_party_role(row[0]) for row in table.rows):
            return table
    return None


def parties_ready(html: str) -> bool:
    table = _parties_table(table_snapshots(html))
    if table is None or not table.rows:
        return False
    return not any(is_loading_text(" ".join(row)) for row in table.rows)


def extract_parties(html: str, ctx: ExtractionContext | None = None) -> PartyRecord:
    """Read the "Sujetos Procesales" table into a :class:`PartyRecord`."""

    parties = PartyRecord()
    table = _parties_table(table_snapshots(html))
    if table is None:
        if ctx is not None:
            ctx.warn("parties table not found")
        return parties

    idx_tipo = _find_header_index(table.headers, "tipo")
    idx_nombre = _find_header_index(table.headers, "nombre", "razon")
    idx_tipo = idx_tipo if idx_tipo >= 0 else 0
    idx_nombre = idx_nombre if idx_nombre >= 0 else 1

    for row in table.rows:
        if max(idx_tipo, idx_nombre) >= len(row):
            continue
        name = row[idx_nombre]
        if not name or is_loading_text(name):
            continue
        role = classify_party_role(row[idx_tipo])
        if role is None:
            continue
        if role == "defensor":
            if not parties.defensor_privado and not parties.defensor_publico:
                parties.defensor_privado = name
            continue
        if not getattr(parties, role):
            setattr(parties, role, name)

    if parties.defensor_privado:
        parties.defensor_publico = None

    if ctx is not None:
        ctx.note("parties", roles=sorted(k for k, v in parties.to_dict().items() if v))
    return parties


# ---------------------------------------------------------------------------
# Actuaciones
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StrategyResult:
    found: bool
    value: Optional[str] = None
    strategy: str = ""

    @classmethod
    def hit(cls, value: str, strategy: str) -> "StrategyResult":
        return cls(True, value, strategy)


MISSING = StrategyResult(False)


@dataclass
class RowContext:
    cells: list[str]
    idx_fecha_registro: int
    idx_fecha_actuacion: int
    idx_descripcion: int
    fecha_registro: Optional[str]
    fecha_actuacion: Optional[str]

    def cell(self, index: int) -> str:
        if 0 <= index < len(self.cells):
            return self.cells[index]
        return ""

    def is_valid_description(self, text: str) -> bool:
        value = (text or "").strip()
        if not value or is_loading_text(value) or is_bare_date(value):
            return False
        if value == (self.fecha_registro or "").strip():
            return False
        if value == (self.fecha_actuacion or "").strip():
            return False
        return True


ColumnStrategy = Callable[[RowContext], StrategyResult]


def registro_first_strategy(row: RowContext) -> StrategyResult:
    if row.idx_fecha_registro == 0 and len(row.cells) > 1:
        candidate = row.cell(1)
        if row.is_valid_description(candidate):
            return StrategyResult.hit(candidate, "registro_first")
    return MISSING


def header_match_strategy(row: RowContext) -> StrategyResult:
    if row.idx_descripcion >= 0:
        candidate = row.cell(row.idx_descripcion)
        if row.is_valid_description(candidate):
            return StrategyResult.hit(candidate, "header_match")
    return MISSING


def column_one_strategy(row: RowContext) -> StrategyResult:
    if len(row.cells) > 1 and 1 not in (row.idx_fecha_registro, row.idx_fecha_actuacion):
        candidate = row.cell(1)
        if row.is_valid_description(candidate):
            return StrategyResult.hit(candidate, "column_one")
    return MISSING


def scan_strategy(row: RowContext) -> StrategyResult:
    for index, candidate in enumerate(row.cells):
        if index in (row.idx_fecha_registro, row.idx_fecha_actuacion):
            continue
        if row.is_valid_description(candidate) and not is_control_artifact(candidate):
            return StrategyResult.hit(candidate, "scan")
    return MISSING


DESCRIPTION_STRATEGIES: tuple[ColumnStrategy, ...] = (
    registro_first_strategy,
    header_match_strategy,
    column_one_strategy,
    scan_strategy,
)


def resolve_description(row: RowContext, strategies: Sequence[ColumnStrategy] = DESCRIPTION_STRATEGIES) -> StrategyResult:
    for strategy in strategies:
        result = strategy(row)
        if result.found:
            return result
    return MISSING


@dataclass
class ActuacionesLayout:
    table: TableSnapshot
    idx_fecha_registro: int
    idx_fecha_actuacion: int
    idx_descripcion: int
    idx_anotacion: int


def _description_header_index(headers: Sequence[str]) -> int:
    normalized = [normalize_text(h) for h in headers]
    primary = ("actuacion", "descripcion")
    secondary = ("actu", "descrip", "motivo", "observacion")
    for needles in (primary, secondary):
        for index, header in enumerate(normalized):
            if header.startswith("fecha"):
                continue
            if any(needle in header for needle in needles):
                return index
    return -1


def _first_data_row(table: TableSnapshot) -> Optional[list[str]]:
    for row in table.rows:
        if row and not is_loading_text(" ".join(row)):
            return row
    return None


def locate_actuaciones_table(html: str) -> Optional[ActuacionesLayout]:
    tables = table_snapshots(html)
    for table in tables:
        if _find_header_index(table.headers, "fecha de registro") >= 0:
            return ActuacionesLayout(
                table=table,
                idx_fecha_registro=_find_header_index(table.headers, "fecha de registro"),
                idx_fecha_actuacion=_find_header_index(
                    table.headers, "fecha de actuacion", "fecha actuacion"
                ),
                idx_descripcion=_description_header_index(table.headers),
                idx_anotacion=_find_header_index(table.headers, "anotacion"),
            )

    # Headerless layout: a table whose first column holds registro dates.
    for table in tables:
        if table.headers:
            continue
        first_row = _first_data_row(table)
        if first_row and is_bare_date(first_row[0]):
            return ActuacionesLayout(
                table=table,
                idx_fecha_registro=0,
                idx_fecha_actuacion=-1,
                idx_descripcion=-1,
                idx_anotacion=-1,
            )
    return None


def actuaciones_ready(html: str) -> bool:
    """Return ``True`` once the actuaciones table holds rows that are not placeholders."""

    layout = locate_actuaciones_table(html)
    if layout is None or not layout.table.rows:
        return False
    return not any(is_loading_text(" ".join(row)) for row in layout.table.rows)


def _row_entry(row: list[str], layout: ActuacionesLayout, ctx: ExtractionContext | None) -> Optional[ActuacionEntry]:
    fecha_registro = row[layout.idx_fecha_registro] if layout.idx_fecha_registro < len(row) else ""
    if not fecha_registro or is_loading_text(fecha_registro):
        return None

    fecha_actuacion = ""
    if 0 <= layout.idx_fecha_actuacion < len(row):
        fecha_actuacion = row[layout.idx_fecha_actuacion]
    if is_loading_text(fecha_actuacion):
        fecha_actuacion = ""

    context = RowContext(
        cells=row,
        idx_fecha_registro=layout.idx_fecha_registro,
        idx_fecha_actuacion=layout.idx_fecha_actuacion,
        idx_descripcion=layout.idx_descripcion,
        fecha_registro=fecha_registro,
        fecha_actuacion=fecha_actuacion or None,
    )
    result = resolve_description(context)
    descripcion = result.value if result.found else None

    if 0 <= layout.idx_anotacion < len(row):
        anotacion = row[layout.idx_anotacion]
        if anotacion and not is_loading_text(anotacion) and anotacion != descripcion:
            descripcion = f"{descripcion} - {anotacion}" if descripcion else anotacion

    if descripcion is not None:
        trimmed = descripcion.strip()
        if trimmed == fecha_registro.strip() or is_bare_date(trimmed):
            descripcion = None

    registro_valid = parse_portal_date(fecha_registro) is not None
    if not registro_valid and descripcion is None:
        return None

    if ctx is not None and not result.found:
        ctx.warn("description column not resolved", fecha_registro=fecha_registro)

    return ActuacionEntry(
        fecha_registro=fecha_registro if registro_valid else None,
        fecha_actuacion=fecha_actuacion or None,
        descripcion=descripcion,
    )


def sort_actuaciones(entries: Sequence[ActuacionEntry]) -> list[ActuacionEntry]:
    """Newest registro date first; unparsable dates keep their order at the end."""

    dated = [(parse_portal_date(entry.fecha_registro), entry) for entry in entries]
    parsed = [pair for pair in dated if pair[0] is not None]
    unparsed = [entry for day, entry in dated if day is None]
    parsed.sort(key=lambda pair: pair[0], reverse=True)
    return [entry for _, entry in parsed] + unparsed


def extract_actuaciones(html: str, ctx: ExtractionContext | None = None) -> list[ActuacionEntry]:
    layout = locate_actuaciones_table(html)
    if layout is None:
        if ctx is not None:
            ctx.warn("actuaciones table not found")
        return []

    entries = [
        entry
        for entry in (_row_entry(row, layout, ctx) for row in layout.table.rows)
        if entry is not None
    ]
    if ctx is not None:
        ctx.note(
            "actuaciones",
            rows=len(layout.table.rows),
            kept=len(entries),
            idx_fecha_registro=layout.idx_fecha_registro,
            idx_descripcion=layout.idx_descripcion,
        )
    return sort_actuaciones(entries)


# ---------------------------------------------------------------------------
# Results list
# ---------------------------------------------------------------------------


class ResultsState:
    PENDING = "pending"
    NO_RESULTS = "no_results"
    DUPLICATE = "duplicate"
    SINGLE = "single"


@dataclass
class ResultsPage:
    state: str
    matches: int = 0
    message: Optional[str] = None


def _alert_texts(soup: BeautifulSoup) -> list[str]:
    texts: list[str] = []
    for selector in CPNU_SELECTORS.alert_selectors:
        for node in soup.select(selector):
            text = clean_text(node.get_text(" "))
            if text:
                texts.append(text)
    return texts


def count_result_rows(soup: BeautifulSoup, radicado: str) -> int:
    """Count result-table rows whose record button shows ``radicado``."""

    count = 0
    for row in soup.select("table tr"):
        if row.find_parent("thead") is not None:
            continue
        buttons = row.find_all("button")
        labels = [re.sub(r"\D", "", button.get_text()) for button in buttons]
        if not buttons:
            labels = [re.sub(r"\D", "", cell.get_text()) for cell in row.find_all("td")]
        if radicado in labels:
            count += 1
    return count


def read_results_page(html: str, radicado: str) -> ResultsPage:
    """Classify the page shown after submitting a radicado."""

    soup = _soup(html)
    for alert in _alert_texts(soup):
        if is_duplicate_message(alert):
            return ResultsPage(ResultsState.DUPLICATE, message=alert)

    body_text = normalize_text(soup.get_text(" "))
    for phrase in NO_RESULTS_PHRASES:
        if phrase in body_text:
            return ResultsPage(ResultsState.NO_RESULTS, message=phrase)

    matches = count_result_rows(soup, radicado)
    if matches > 1:
        return ResultsPage(ResultsState.DUPLICATE, matches=matches)
    if matches == 1:
        return ResultsPage(ResultsState.SINGLE, matches=1)
    return ResultsPage(ResultsState.PENDING)


__all__ = [
    "ExtractionContext",
    "StrategyResult",
    "RowContext",
    "DESCRIPTION_STRATEGIES",
    "normalize_text",
    "is_loading_text",
    "is_control_artifact",
    "classify_party_role",
    "extract_process_metadata",
    "extract_parties",
    "extract_actuaciones",
    "sort_actuaciones",
    "locate_actuaciones_table",
    "has_process_metadata",
    "parties_ready",
    "actuaciones_ready",
    "read_results_page",
    "ResultsState",
    "ResultsPage",
]
