from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from ..errors import UnknownCodeError


# Labels must match the SiRADIG menus character for character (accents included).
CATEGORY_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "ALQUILER_VIVIENDA": "Alquileres",
        "CUOTAS_MEDICO_ASISTENCIALES": "Cuotas Medico Asistenciales",
        "GASTOS_MEDICOS": "Gastos Medicos y Paramédicos",
        "PRIMAS_SEGURO_MUERTE": "Primas de Seguro para caso de muerte",
        "DONACIONES": "Donaciones",
        "SERVICIO_DOMESTICO": "Casas Particulares",
        "INTERESES_HIPOTECARIOS": "Intereses Credito Hipotecario",
        "HONORARIOS_ASISTENCIA_SANITARIA": "Honorarios Servicio Asistencia Sanitaria, Médica y Paramédica",
        "GASTOS_EDUCATIVOS": "Gastos de Educación",
        "GASTOS_SEPELIO": "Gastos de Sepelio",
        "INDUMENTARIA_EQUIPAMIENTO": "Indumentaria y Equipamiento",
        "VEHICULO": "Vehículo",
        "VIANDAS_TRANSPORTE": "Viandas y Transporte",
        "HERRAMIENTAS_EDUCATIVAS": "Herramientas Educativas",
    }
)

DOCUMENT_TYPE_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "FACTURA_A": "Factura A",
        "FACTURA_B": "Factura B",
        "FACTURA_C": "Factura C",
        "NOTA_DEBITO_A": "Nota de Débito A",
        "NOTA_DEBITO_B": "Nota de Débito B",
        "NOTA_DEBITO_C": "Nota de Débito C",
        "NOTA_CREDITO_A": "Nota de Crédito A",
        "NOTA_CREDITO_B": "Nota de Crédito B",
        "NOTA_CREDITO_C": "Nota de Crédito C",
        "RECIBO": "Recibo",
        "TICKET": "Ticket",
    }
)

MONTH_NAMES: Mapping[int, str] = MappingProxyType(
    {
        1: "Enero",
        2: "Febrero",
        3: "Marzo",
        4: "Abril",
        5: "Mayo",
        6: "Junio",
        7: "Julio",
        8: "Agosto",
        9: "Septiembre",
        10: "Octubre",
        11: "Noviembre",
        12: "Diciembre",
    }
)


def category_label(code: str) -> str:
    try:
        return CATEGORY_LABELS[code]
    except KeyError:
        raise UnknownCodeError(f"Unknown deduction category code: {code!r}") from None


def document_type_label(code: str) -> str:
    try:
        return DOCUMENT_TYPE_LABELS[code]
    except KeyError:
        raise UnknownCodeError(f"Unknown document type code: {code!r}") from None


def month_name(month: int) -> str:
    try:
        return MONTH_NAMES[int(month)]
    except (KeyError, ValueError, TypeError):
        raise ValueError(f"month must be 1..12, got {month!r}") from None
