# NG-HEADER: Nombre de archivo: views.py
# NG-HEADER: Ubicación: services/packing/views.py
# NG-HEADER: Descripción: Vistas de lectura de rollos (agrupado por lote, órdenes, rollos por OC) y bajas por venta.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Transformaciones puras sobre los rollos de los packing lists.

Los documentos guardan rollos planos; el catálogo de ventas los consume
agrupados por (tela, color, lote) con ``roll_number`` numérico.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .matching import key_part, normalize_oc
from .models import CANTIDAD, COLOR, FECHA_INGRESO, LOTE, OC, ROLL_ID, STATUS, TELA, UNIDAD, Roll


logger = logging.getLogger("telas.packing.views")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def roll_number(value: Any) -> Optional[int]:
    """Número de rollo a partir de ``rollo_id`` (dígitos iniciales, como parseInt)."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value else None
    m = _LEADING_INT.match(str(value))
    return int(m.group(1)) if m else None


def _as_weight(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def matches_group(roll: Roll, tela: str, color: str, lote: Any) -> bool:
    """tela/color sin distinguir mayúsculas; lote exacto."""
    return (
        str(roll.get(TELA) or "").lower() == tela.lower()
        and str(roll.get(COLOR) or "").lower() == color.lower()
        and key_part(roll.get(LOTE)) == key_part(lote)
    )


def group_by_lot(raw_rolls: Iterable[Any], default_almacen: str = "CDMX") -> List[Dict[str, Any]]:
    grouped: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for raw in raw_rolls:
        if not isinstance(raw, dict) or not all(raw.get(k) for k in (TELA, COLOR, LOTE, ROLL_ID)):
            logger.warning("Rollo inválido omitido: %s", raw)
            continue
        key = (str(raw[TELA]), str(raw[COLOR]), key_part(raw[LOTE]))
        entry = grouped.setdefault(
            key,
            {"fabric_type": key[0], "color": key[1], "lot": key[2], "rolls": {}},
        )
        number = roll_number(raw[ROLL_ID])
        if number is None or number <= 0:
            logger.warning("Roll number inválido omitido: %s para %s", raw[ROLL_ID], "-".join(key))
            continue
        entry["rolls"][number] = {
            "roll_number": number,
            "weight": _as_weight(raw.get(CANTIDAD)),
            "almacen": raw.get("almacen") or default_almacen,
            "OC": raw.get(OC) or "",
            "unidad": raw.get(UNIDAD) or "",
            "fecha_ingreso": raw.get(FECHA_INGRESO) or "",
            "status": raw.get(STATUS) or "",
        }
    out = []
    for entry in grouped.values():
        entry["rolls"] = [entry["rolls"][n] for n in sorted(entry["rolls"])]
        out.append(entry)
    return out


def filter_by_fabric(entries: Iterable[Dict[str, Any]], tela: str, color: str) -> List[Dict[str, Any]]:
    t, c = tela.lower(), color.lower()
    return [
        e
        for e in entries
        if str(e.get("fabric_type") or "").lower() == t and str(e.get("color") or "").lower() == c
    ]


def consolidate_entries(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Une entradas del mismo lote que vienen de documentos distintos.

    Ante números de rollo repetidos gana la última aparición.
    """
    merged: Dict[Tuple[Any, Any, Any], Dict[str, Any]] = {}
    by_number: Dict[Tuple[Any, Any, Any], Dict[int, Dict[str, Any]]] = {}
    for e in entries:
        key = (e.get("fabric_type"), e.get("color"), e.get("lot"))
        if key not in merged:
            merged[key] = {**e}
            by_number[key] = {}
        for r in e.get("rolls") or []:
            by_number[key][r["roll_number"]] = r
    for key, entry in merged.items():
        entry["rolls"] = [by_number[key][n] for n in sorted(by_number[key])]
    return list(merged.values())


def _iso(ts: Optional[datetime]) -> str:
    return (ts or datetime.utcnow()).isoformat()


def available_orders(documents: Sequence[Tuple[str, Optional[datetime], Sequence[Roll]]]) -> List[Dict[str, Any]]:
    """OCs únicas (recortadas) con su archivo, cantidad de rollos y fecha.

    ``documents`` son tuplas (clave, última modificación, rollos) en orden de
    listado; ante OCs repetidas gana el primer documento.
    """
    seen = set()
    orders: List[Dict[str, Any]] = []
    for key, modified, rolls in documents:
        counts: Dict[str, int] = {}
        for r in rolls:
            oc = str(r.get(OC) or "").strip()
            if oc:
                counts[oc] = counts.get(oc, 0) + 1
        for oc, count in counts.items():
            if oc in seen:
                continue
            seen.add(oc)
            orders.append(
                {
                    "oc": oc,
                    "fileName": key.rsplit("/", 1)[-1],
                    "rollCount": count,
                    "lastModified": _iso(modified),
                }
            )
    orders.sort(key=lambda o: o["oc"])
    return orders


def _order_sort_key(roll: Roll) -> Tuple[int, Any]:
    n = roll_number(roll.get(ROLL_ID))
    if n is not None:
        return (0, n)
    return (1, key_part(roll.get(ROLL_ID)))


def order_rolls(rolls: Iterable[Roll], oc: str) -> List[Roll]:
    """Rollos de la OC ordenados por ``rollo_id`` numérico."""
    wanted = normalize_oc(oc)
    return sorted((r for r in rolls if wanted and normalize_oc(r.get(OC)) == wanted), key=_order_sort_key)


def remove_sold_rolls(
    rolls: Sequence[Roll], tela: str, color: str, lote: Any, roll_numbers: Iterable[int]
) -> List[Roll]:
    sold = set(roll_numbers)
    return [
        r
        for r in rolls
        if not (matches_group(r, tela, color, lote) and roll_number(r.get(ROLL_ID)) in sold)
    ]
