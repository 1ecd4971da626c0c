# NG-HEADER: Nombre de archivo: matching.py
# NG-HEADER: Ubicación: services/packing/matching.py
# NG-HEADER: Descripción: Identificación de rollos dentro de un documento y chequeo de integridad.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Ubicación de un rollo dentro de un packing list.

``rollo_id`` solo es único dentro de (OC, tela, color, lote), así que el
front puede mandar un id compuesto ``OC_tela_color_lote_rollo_id``. Los
criterios se prueban en orden y el primero que encuentra algo gana:

1. id compuesto (solo si el id trae ``_``)
2. ``rollo_id`` directo
3. ``rollo_id`` de ``originalData``

Después, si vino ``originalData``, se exige que tela/color/lote/OC coincidan
con el rollo encontrado; si no, el cambio se rechaza.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from .models import COLOR, IDENTITY_FIELDS, LOTE, OC, ROLL_ID, TELA, Roll


logger = logging.getLogger("telas.packing.matching")


def key_part(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def composite_key(roll: Roll) -> str:
    """``OC_tela_color_lote_rollo_id`` de un rollo (campos ausentes quedan vacíos)."""
    return "_".join(key_part(roll.get(k)) for k in (OC, TELA, COLOR, LOTE, ROLL_ID))


def normalize_oc(value: object) -> str:
    """OC comparable: sin espacios en los extremos y en minúsculas."""
    if value is None:
        return ""
    return str(value).strip().lower()


@dataclass
class RollMatch:
    index: int
    roll: Roll
    method: str


class RollMatcher(Protocol):
    name: str

    def try_match(
        self, rolls: Sequence[Roll], target_id: str, original: Optional[Roll], data: Optional[Roll] = None
    ) -> Optional[int]: ...


class CompositeKeyMatcher:
    name = "composite_id"

    def try_match(
        self, rolls: Sequence[Roll], target_id: str, original: Optional[Roll], data: Optional[Roll] = None
    ) -> Optional[int]:
        if "_" not in target_id:
            return None
        hits = [i for i, r in enumerate(rolls) if composite_key(r) == target_id]
        if not hits:
            return None
        if len(hits) > 1:
            # Documento con id compuesto duplicado: se toma el primero, pero queda registrado
            logger.warning(
                "id compuesto ambiguo %s: %d rollos coinciden (indices %s); se usa el primero",
                target_id,
                len(hits),
                hits,
            )
        return hits[0]


class RollIdMatcher:
    name = "direct_rollo_id"

    def try_match(
        self, rolls: Sequence[Roll], target_id: str, original: Optional[Roll], data: Optional[Roll] = None
    ) -> Optional[int]:
        for i, r in enumerate(rolls):
            if key_part(r.get(ROLL_ID)) == target_id:
                return i
        return None


class OriginalRollIdMatcher:
    name = "original_data"

    def try_match(
        self, rolls: Sequence[Roll], target_id: str, original: Optional[Roll], data: Optional[Roll] = None
    ) -> Optional[int]:
        if original is None or original.get(ROLL_ID) is None:
            return None
        wanted = key_part(original.get(ROLL_ID))
        for i, r in enumerate(rolls):
            if key_part(r.get(ROLL_ID)) == wanted:
                return i
        return None


class AmbiguousRoll(LookupError):
    """Varios rollos de la OC comparten el ``rollo_id`` y nada permite elegir uno."""


class OrderScopedRollIdMatcher:
    """``rollo_id`` dentro de una OC (edición por OC).

    El rollo recibido es completo, así que primero se busca por tela/color/lote
    además del id. Solo por id se acepta cuando hay un único rollo de la OC con
    ese ``rollo_id``; si hay varios se levanta ``AmbiguousRoll``.
    """

    name = "oc_rollo_id"

    def __init__(self, oc: str) -> None:
        self.oc = normalize_oc(oc)

    def try_match(
        self, rolls: Sequence[Roll], target_id: str, original: Optional[Roll], data: Optional[Roll] = None
    ) -> Optional[int]:
        in_oc = [
            i
            for i, r in enumerate(rolls)
            if normalize_oc(r.get(OC)) == self.oc and key_part(r.get(ROLL_ID)) == target_id
        ]
        if not in_oc:
            return None
        if data:
            same_group = [
                i for i in in_oc if all(key_part(rolls[i].get(k)) == key_part(data.get(k)) for k in (TELA, COLOR, LOTE))
            ]
            if same_group:
                if len(same_group) > 1:
                    logger.warning("Rollo %s repetido en OC %s (indices %s); se usa el primero", target_id, self.oc, same_group)
                return same_group[0]
        if len(in_oc) == 1:
            return in_oc[0]
        raise AmbiguousRoll(f"{len(in_oc)} rollos de la OC {self.oc} tienen rollo_id {target_id}")


DEFAULT_MATCHERS: tuple[RollMatcher, ...] = (
    CompositeKeyMatcher(),
    RollIdMatcher(),
    OriginalRollIdMatcher(),
)


def locate_roll(
    rolls: Sequence[Roll],
    target_id: str,
    original: Optional[Roll] = None,
    matchers: Sequence[RollMatcher] = DEFAULT_MATCHERS,
    data: Optional[Roll] = None,
) -> Optional[RollMatch]:
    """Primer matcher con resultado gana; ``None`` si ninguno encuentra el rollo.

    Propaga ``AmbiguousRoll`` si un matcher no puede decidir.
    """
    for matcher in matchers:
        idx = matcher.try_match(rolls, target_id, original, data)
        if idx is not None:
            return RollMatch(index=idx, roll=rolls[idx], method=matcher.name)
    return None


def integrity_ok(candidate: Roll, original: Optional[Roll]) -> bool:
    """True si el rollo encontrado es el que el usuario espera (o no hay expectativa)."""
    if original is None:
        return True
    return all(candidate.get(k) == original.get(k) for k in IDENTITY_FIELDS)
