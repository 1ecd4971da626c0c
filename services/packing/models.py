# NG-HEADER: Nombre de archivo: models.py
# NG-HEADER: Ubicación: services/packing/models.py
# NG-HEADER: Descripción: Tipos de rollos, cambios y payloads de las rutas de packing list.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Tipos del dominio de packing lists.

Los rollos se manejan como ``dict`` tal cual están en el JSON de S3 para no
perder campos que el backend no conoce (almacen, costos, etc.).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

# Claves de un rollo en los documentos JSON
ROLL_ID = "rollo_id"
OC = "OC"
TELA = "tela"
COLOR = "color"
LOTE = "lote"
UNIDAD = "unidad"
CANTIDAD = "cantidad"
FECHA_INGRESO = "fecha_ingreso"
STATUS = "status"

IDENTITY_FIELDS = (TELA, COLOR, LOTE, OC)

VALID_UNITS = ("KG", "MTS")
VALID_STATUSES = ("pending", "active", "sold", "returned")
CHANGE_TYPES = ("add", "update", "delete")

ChangeKind = Literal["add", "update", "delete"]
Roll = Dict[str, Any]


@dataclass
class RollChange:
    """Cambio pedido sobre un rollo.

    ``original`` es lo que el usuario cree que hay hoy en el documento; si
    viene, se usa para verificar que el rollo encontrado sea el esperado.
    """

    kind: ChangeKind
    target_id: str
    data: Roll = field(default_factory=dict)
    original: Optional[Roll] = None

    @property
    def oc(self) -> Optional[str]:
        """OC con la que se ubica el documento: primero la original, luego la nueva."""
        if self.original and self.original.get(OC):
            return str(self.original[OC])
        if self.data.get(OC):
            return str(self.data[OC])
        return None


class BulkEditIn(BaseModel):
    changes: Optional[List[Any]] = None


class EditRollsIn(BaseModel):
    oc: Optional[str] = None
    updated_rolls: Optional[List[Any]] = Field(default=None, alias="updatedRolls")


class MarkSoldIn(BaseModel):
    tela: Optional[str] = None
    color: Optional[str] = None
    lot: Optional[Union[str, int]] = None
    sold_rolls: Optional[List[Any]] = Field(default=None, alias="soldRolls")
