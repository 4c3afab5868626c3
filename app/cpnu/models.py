"""Record types exchanged between the portal session, the change detector and
the sync orchestrator.

``to_dict`` methods produce the JSON shapes returned by the API and stored in
run telemetry.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .error_codes import CpnuError, ErrorCategory

RADICADO_RE = re.compile(r"^\d{23}$")


def validate_radicado(value: Any) -> str:
    """Return the 23-digit radicado or raise a validation :class:`CpnuError`."""

    candidate = str(value or "").strip()
    if not RADICADO_RE.match(candidate):
        raise CpnuError("Radicado must be exactly 23 digits", ErrorCategory.VALIDATION)
    return candidate


@dataclass
class ProcessMetadata:
    despacho: Optional[str] = None
    clase_proceso: Optional[str] = None
    fecha_radicacion: Optional[str] = None
    tipo_proceso: Optional[str] = None

    def to_dict(self) -> dict[str, str]:
        pairs = (
            ("despacho", self.despacho),
            ("claseProceso", self.clase_proceso),
            ("fechaRadicacion", self.fecha_radicacion),
            ("tipoProceso", self.tipo_proceso),
        )
        return {key: value for key, value in pairs if value}


@dataclass
class PartyRecord:
    demandante: Optional[str] = None
    demandado: Optional[str] = None
    defensor_privado: Optional[str] = None
    defensor_publico: Optional[str] = None

    @property
    def attorney(self) -> Optional[str]:
        return self.defensor_privado or self.defensor_publico

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "demandante": self.demandante,
            "demandado": self.demandado,
            "defensorPrivado": self.defensor_privado,
            "defensorPublico": self.defensor_publico,
        }


@dataclass
class ActuacionEntry:
    fecha_registro: Optional[str] = None
    fecha_actuacion: Optional[str] = None
    descripcion: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "fecha_registro": self.fecha_registro,
            "fecha_actuacion": self.fecha_actuacion,
            "descripcion": self.descripcion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActuacionEntry":
        return cls(
            fecha_registro=data.get("fecha_registro"),
            fecha_actuacion=data.get("fecha_actuacion"),
            descripcion=data.get("descripcion"),
        )


@dataclass
class CaseRecord:
    radicado: str
    datos_proceso: ProcessMetadata
    sujetos_procesales: PartyRecord
    actuaciones: list[ActuacionEntry]
    scraped_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "radicado": self.radicado,
            "datosProceso": self.datos_proceso.to_dict(),
            "sujetosProcesales": self.sujetos_procesales.to_dict(),
            "actuaciones": [entry.to_dict() for entry in self.actuaciones],
            "scrapedAt": self.scraped_at,
        }


class SyncStatus:
    SUCCESS = "success"
    ERROR = "error"
    NO_CHANGES = "no_changes"


@dataclass
class SyncCursor:
    latest_fecha_registro: Optional[str] = None
    last_sync_status: Optional[str] = None
    last_sync_at: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "latestFechaRegistro": self.latest_fecha_registro,
            "lastSyncStatus": self.last_sync_status,
            "lastSyncAt": self.last_sync_at,
        }


@dataclass
class LinkedCase:
    case_id: str
    user_id: Optional[str]
    radicado: str


@dataclass
class SyncBatchResult:
    processed: int = 0
    updated: int = 0
    no_changes: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "noChanges": self.no_changes,
            "errors": self.errors,
            "errorDetails": list(self.error_details),
        }


__all__ = [
    "validate_radicado",
    "ProcessMetadata",
    "PartyRecord",
    "ActuacionEntry",
    "CaseRecord",
    "SyncStatus",
    "SyncCursor",
    "LinkedCase",
    "SyncBatchResult",
]
