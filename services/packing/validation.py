# NG-HEADER: Nombre de archivo: validation.py
# NG-HEADER: Ubicación: services/packing/validation.py
# NG-HEADER: Descripción: Validación previa (todo o nada) de cambios y rollos antes de tocar S3.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Validación de payloads de edición de rollos.

Se valida el lote completo antes de leer o escribir cualquier documento: un
solo cambio inválido rechaza la request entera.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from .matching import normalize_oc
from .models import (
    CANTIDAD,
    CHANGE_TYPES,
    COLOR,
    LOTE,
    OC,
    ROLL_ID,
    STATUS,
    TELA,
    UNIDAD,
    VALID_STATUSES,
    VALID_UNITS,
    RollChange,
)


class ChangeValidationError(ValueError):
    """Payload inválido; el mensaje se devuelve tal cual al cliente (400)."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_roll_data(data: Dict[str, Any]) -> Optional[str]:
    """Valida solo los campos presentes (datos parciales). Devuelve el error o None."""
    unidad = data.get(UNIDAD)
    if unidad and unidad not in VALID_UNITS:
        return "Unidad inválida: debe ser KG o MTS"
    if CANTIDAD in data:
        cantidad = data[CANTIDAD]
        if not _is_number(cantidad) or cantidad < 0:
            return "Cantidad inválida: debe ser un número mayor o igual a 0"
    status = data.get(STATUS)
    if status and status not in VALID_STATUSES:
        return f"Status inválido: debe ser uno de {', '.join(VALID_STATUSES)}"
    return None


def validate_full_roll(roll: Dict[str, Any]) -> Optional[str]:
    """Valida un rollo completo (edición por OC)."""
    rid = roll.get(ROLL_ID)
    if not all(roll.get(k) not in (None, "") for k in (ROLL_ID, OC, TELA, COLOR, LOTE)):
        return f"Campos requeridos faltantes en rollo {rid}"
    if roll.get(UNIDAD) not in VALID_UNITS:
        return f"Unidad inválida para rollo {rid}: debe ser KG o MTS"
    cantidad = roll.get(CANTIDAD)
    if not _is_number(cantidad) or cantidad < 0:
        return f"Cantidad inválida para rollo {rid}: debe ser un número mayor o igual a 0"
    status = roll.get(STATUS)
    if status and status not in VALID_STATUSES:
        return f"Status inválido para rollo {rid}: debe ser uno de {', '.join(VALID_STATUSES)}"
    return None


def parse_changes(raw: Optional[List[Any]]) -> List[RollChange]:
    """Convierte el payload de bulk-edit en ``RollChange`` o levanta ``ChangeValidationError``."""
    if raw is None:
        raise ChangeValidationError("Cambios son requeridos y deben ser un array")
    if not raw:
        raise ChangeValidationError("Debe proporcionar al menos un cambio")
    out: List[RollChange] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ChangeValidationError("Cada cambio debe ser un objeto")
        kind = item.get("type")
        if kind not in CHANGE_TYPES:
            raise ChangeValidationError(f"Tipo de cambio inválido: {kind}")
        target = item.get("rollId")
        if not target or not isinstance(target, str):
            raise ChangeValidationError("rollId es requerido para cada cambio")
        data = item.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ChangeValidationError(f"Datos inválidos para rollo {target}: data debe ser un objeto")
        original = item.get("originalData")
        if original is not None and not isinstance(original, dict):
            raise ChangeValidationError(f"Datos inválidos para rollo {target}: originalData debe ser un objeto")
        err = validate_roll_data(data)
        if err:
            raise ChangeValidationError(f"Datos inválidos para rollo {target}: {err}")
        out.append(RollChange(kind=kind, target_id=target, data=dict(data), original=original))
    return out


def parse_edit_rolls(oc: Optional[str], rolls: Optional[List[Any]]) -> List[RollChange]:
    """Rollos completos de una OC -> cambios ``update`` por ``rollo_id``."""
    if not oc or not oc.strip() or rolls is None:
        raise ChangeValidationError("OC y rollos actualizados son requeridos")
    if not rolls:
        raise ChangeValidationError("Debe proporcionar al menos un rollo para actualizar")
    wanted = normalize_oc(oc)
    out: List[RollChange] = []
    for roll in rolls:
        if not isinstance(roll, dict):
            raise ChangeValidationError("Cada rollo debe ser un objeto")
        err = validate_full_roll(roll)
        if err:
            raise ChangeValidationError(err)
        if normalize_oc(roll.get(OC)) != wanted:
            raise ChangeValidationError(f"Rollo {roll.get(ROLL_ID)} no pertenece a la OC {oc}")
        out.append(RollChange(kind="update", target_id=str(roll[ROLL_ID]), data=dict(roll)))
    return out


def parse_mark_sold(
    tela: Optional[str], color: Optional[str], lot: Any, sold_rolls: Optional[List[Any]]
) -> Tuple[str, str, str, List[int]]:
    """Valida el pedido de venta. Devuelve (tela, color, lote, números de rollo)."""
    if not tela or not color or lot in (None, "") or not sold_rolls:
        raise ChangeValidationError("Todos los campos son requeridos")
    if any(not isinstance(n, int) or isinstance(n, bool) for n in sold_rolls):
        raise ChangeValidationError("Todos los números de rollo deben ser válidos")
    return tela, color, str(lot), list(sold_rolls)
