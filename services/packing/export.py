# NG-HEADER: Nombre de archivo: export.py
# NG-HEADER: Ubicación: services/packing/export.py
# NG-HEADER: Descripción: Exportación XLSX de los rollos de una OC.
# NG-HEADER: Lineamientos: Ver AGENTS.md

from __future__ import annotations

from io import BytesIO
from typing import Dict, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from .models import CANTIDAD, COLOR, FECHA_INGRESO, LOTE, ROLL_ID, STATUS, TELA, UNIDAD, Roll

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADERS = ["ROLLO", "TELA", "COLOR", "LOTE", "CANTIDAD", "UNIDAD", "STATUS", "FECHA INGRESO"]
_FIELDS = [ROLL_ID, TELA, COLOR, LOTE, CANTIDAD, UNIDAD, STATUS, FECHA_INGRESO]


def _sheet_title(oc: str) -> str:
    # Excel limita títulos a 31 caracteres y prohíbe algunos símbolos
    title = "".join(ch for ch in oc if ch not in '[]:*?/\\').strip()
    return (title or "OC")[:31]


def build_order_workbook(oc: str, rolls: Sequence[Roll]) -> bytes:
    """Planilla con los rollos de la OC y una fila de total por unidad."""
    wb = Workbook()
    ws = wb.active
    ws.title = _sheet_title(oc)
    ws.append(HEADERS)
    # Encabezado: fondo oscuro, texto claro y negrita, centrado
    header_fill = PatternFill(start_color="FF333333", end_color="FF333333", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFFFF")
    header_alignment = Alignment(horizontal="center")
    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = header_alignment

    totals: Dict[str, float] = {}
    widths = [len(h) for h in HEADERS]
    for roll in rolls:
        row = []
        for i, key in enumerate(_FIELDS):
            value = roll.get(key)
            if value is None:
                value = ""
            row.append(value)
            widths[i] = max(widths[i], len(str(value)))
        ws.append(row)
        cantidad = roll.get(CANTIDAD)
        if isinstance(cantidad, (int, float)) and not isinstance(cantidad, bool):
            unidad = str(roll.get(UNIDAD) or "")
            totals[unidad] = totals.get(unidad, 0) + cantidad

    for unidad in sorted(totals):
        ws.append([f"TOTAL {unidad}".strip(), "", "", "", totals[unidad], unidad, "", ""])
        ws.cell(row=ws.max_row, column=1).font = Font(bold=True)
        ws.cell(row=ws.max_row, column=5).font = Font(bold=True)

    for i, width in enumerate(widths):
        ws.column_dimensions[chr(ord("A") + i)].width = min(max(10, width + 2), 40)

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()
