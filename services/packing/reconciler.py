# NG-HEADER: Nombre de archivo: reconciler.py
# NG-HEADER: Ubicación: services/packing/reconciler.py
# NG-HEADER: Descripción: Aplicación de altas/ediciones/bajas de rollos sobre los documentos JSON de S3.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Reconciliación de cambios de rollos contra los packing lists.

Flujo de ``bulk_edit``:

1. agrupar los cambios por OC (``originalData.OC`` primero, luego ``data.OC``)
2. ubicar el documento de cada OC (una búsqueda por OC distinta)
3. por documento: releer, aplicar los cambios en memoria, escribir un backup
   del contenido previo y reescribir el documento completo
4. invalidar las vistas cacheadas

Los cambios que no encuentran su rollo, o cuyo ``originalData`` no coincide
con el rollo encontrado, se saltean y quedan informados en el reporte; el resto
del lote sigue. No hay rollback entre documentos: si falla la escritura del
segundo, el primero queda escrito.

Sin escritura condicional, dos requests concurrentes sobre la misma OC
terminan en last-write-wins a nivel documento. Con
``conditional_writes=True`` el PUT lleva el ETag leído y el perdedor recibe
``error="conflict"`` en su resultado por archivo.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from services.cache import ResponseCache, invalidate_read_caches
from services.logging.ctx_logger import log_event_sync, make_correlation_id
from services.storage.s3 import ObjectInfo, ObjectStore, StorageError, WriteConflict

from .backups import backup_key, write_backup
from .documents import (
    dump_rolls,
    list_packing_list_files,
    locate_document,
    parse_rolls,
)
from .matching import (
    DEFAULT_MATCHERS,
    AmbiguousRoll,
    OrderScopedRollIdMatcher,
    RollMatcher,
    composite_key,
    integrity_ok,
    locate_roll,
    normalize_oc,
)
from .models import FECHA_INGRESO, OC, ROLL_ID, Roll, RollChange
from .views import matches_group, remove_sold_rolls, roll_number


logger = logging.getLogger("telas.packing.reconciler")

REASON_NOT_FOUND = "not_found"
REASON_INTEGRITY = "integrity_mismatch"
REASON_OC_MISSING = "oc_missing"
REASON_OC_NOT_FOUND = "oc_not_found"
REASON_STORAGE = "storage_error"
REASON_CONFLICT = "conflict"
REASON_EMPTY = "empty_document"
REASON_AMBIGUOUS = "ambiguous"


class NoDocuments(LookupError):
    """No hay ningún packing list bajo el prefijo configurado."""


class DocumentNotFound(LookupError):
    """Ningún documento contiene lo pedido (OC o grupo de rollos)."""


@dataclass
class ChangeResult:
    target_id: str
    kind: str
    applied: bool
    reason: Optional[str] = None
    match_method: Optional[str] = None
    file_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollId": self.target_id,
            "type": self.kind,
            "applied": self.applied,
            "reason": self.reason,
            "matchMethod": self.match_method,
            "file": self.file_key,
        }


@dataclass
class FileResult:
    changes_applied: int
    total_changes: int
    backup_file: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "changesApplied": self.changes_applied,
            "totalChanges": self.total_changes,
            "backupFile": self.backup_file,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class ReconcileReport:
    changes_requested: int
    results: Dict[str, FileResult] = field(default_factory=dict)
    changes: List[ChangeResult] = field(default_factory=list)
    cache_patterns: List[str] = field(default_factory=list)

    @property
    def changes_applied(self) -> int:
        return sum(r.changes_applied for r in self.results.values())

    @property
    def files_processed(self) -> int:
        return sum(1 for r in self.results.values() if r.error is None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changesRequested": self.changes_requested,
            "changesApplied": self.changes_applied,
            "filesProcessed": self.files_processed,
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "changes": [c.to_dict() for c in self.changes],
        }


def _merge(existing: Roll, data: Roll) -> Roll:
    merged = {**existing, **data}
    # fecha_ingreso vacía en el patch no pisa la guardada
    if FECHA_INGRESO in data and not data[FECHA_INGRESO] and FECHA_INGRESO in existing:
        merged[FECHA_INGRESO] = existing[FECHA_INGRESO]
    return merged


def apply_changes(
    rolls: Sequence[Roll],
    changes: Sequence[RollChange],
    matchers: Sequence[RollMatcher] = DEFAULT_MATCHERS,
) -> Tuple[List[Roll], List[ChangeResult]]:
    """Aplica ``changes`` sobre una copia de ``rolls``.

    Devuelve el nuevo contenido del documento y un resultado por cambio, en el
    mismo orden que ``changes``. No toca la lista recibida.
    """
    working: List[Roll] = [dict(r) for r in rolls]
    results: List[ChangeResult] = []
    for ch in changes:
        if ch.kind == "add":
            working.append(dict(ch.data))
            results.append(ChangeResult(ch.target_id, ch.kind, True))
            continue

        try:
            match = locate_roll(working, ch.target_id, ch.original, matchers, data=ch.data)
        except AmbiguousRoll as e:
            logger.warning("Rollo ambiguo para %s %s: %s; cambio rechazado", ch.kind, ch.target_id, e)
            results.append(ChangeResult(ch.target_id, ch.kind, False, REASON_AMBIGUOUS))
            continue
        if match is None:
            logger.warning(
                "Rollo no encontrado para %s: %s (originalData=%s)",
                ch.kind,
                ch.target_id,
                bool(ch.original),
            )
            results.append(ChangeResult(ch.target_id, ch.kind, False, REASON_NOT_FOUND))
            continue

        if not integrity_ok(match.roll, ch.original):
            logger.error(
                "Integridad: %s %s esperaba %s pero se encontró %s (método %s); cambio rechazado",
                ch.kind,
                ch.target_id,
                {k: (ch.original or {}).get(k) for k in ("tela", "color", "lote", OC)},
                composite_key(match.roll),
                match.method,
            )
            results.append(ChangeResult(ch.target_id, ch.kind, False, REASON_INTEGRITY, match.method))
            continue

        if ch.kind == "update":
            working[match.index] = _merge(match.roll, ch.data)
        else:
            del working[match.index]
        results.append(ChangeResult(ch.target_id, ch.kind, True, None, match.method))
    return working, results


def _now_ms() -> int:
    return int(time.time() * 1000)


class RollReconciler:
    """Aplica cambios de rollos sobre los documentos de un ``ObjectStore``.

    Store y cache se inyectan para poder usar dobles en tests.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        prefix: str,
        marker: str = "detalle_",
        cache: Optional[ResponseCache] = None,
        conditional_writes: bool = False,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.marker = marker
        self.cache = cache or ResponseCache(None)
        self.conditional_writes = conditional_writes
        self.clock = clock

    async def list_files(self) -> List[ObjectInfo]:
        return await list_packing_list_files(self.store, self.prefix, self.marker)

    async def _require_files(self) -> List[ObjectInfo]:
        files = await self.list_files()
        if not files:
            raise NoDocuments("No se encontraron archivos de packing list")
        return files

    # --- escritura -------------------------------------------------------

    async def _backup(self, file_key: str, rolls: Sequence[Roll], tag: str, reason: str, actor: Optional[str]) -> Optional[str]:
        key = backup_key(self.prefix, file_key, tag, self.clock())
        try:
            return await write_backup(self.store, key, rolls, reason, actor)
        except StorageError:
            # El backup no bloquea la escritura principal
            logger.exception("No se pudo escribir backup %s", key)
            return None

    async def _persist(
        self,
        file_key: str,
        before: Sequence[Roll],
        after: Sequence[Roll],
        *,
        tag: str,
        reason: str,
        operation: str,
        actor: Optional[str],
        etag: Optional[str],
        extra_meta: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Backup del contenido previo + PUT del documento. Devuelve la clave del backup."""
        backup = await self._backup(file_key, before, tag, reason, actor)
        meta = {
            "last-updated": datetime.now(timezone.utc).isoformat(),
            "updated-by": actor or "",
            "operation": operation,
        }
        meta.update(extra_meta or {})
        await self.store.put_object(
            file_key,
            dump_rolls(after),
            content_type="application/json",
            metadata=meta,
            if_match=etag if self.conditional_writes else None,
        )
        return backup

    async def _process_file(
        self,
        file_key: str,
        changes: Sequence[RollChange],
        *,
        matchers: Sequence[RollMatcher],
        tag: str,
        reason: str,
        operation: str,
        actor: Optional[str],
        cid: str,
    ) -> Tuple[FileResult, List[ChangeResult], List[Roll]]:
        total = len(changes)

        def _failed(why: str, error: str) -> Tuple[FileResult, List[ChangeResult], List[Roll]]:
            log_event_sync(cid, file_key, "file:error", level="ERROR", message=error, reason=why)
            return (
                FileResult(0, total, None, error=error),
                [ChangeResult(c.target_id, c.kind, False, why, file_key=file_key) for c in changes],
                [],
            )

        try:
            obj = await self.store.get_object(file_key)
        except StorageError as e:
            return _failed(REASON_STORAGE, str(e))
        current = parse_rolls(obj.body, file_key) if obj else []
        if not current:
            logger.warning("Archivo vacío: %s", file_key)
            return _failed(REASON_EMPTY, f"Archivo vacío: {file_key}")

        updated, results = apply_changes(current, changes, matchers)
        applied = sum(1 for r in results if r.applied)
        for r in results:
            r.file_key = file_key
            if not r.applied:
                log_event_sync(cid, file_key, "change:skipped", level="WARNING", roll_id=r.target_id, type=r.kind, reason=r.reason)

        backup: Optional[str] = None
        if applied:
            try:
                backup = await self._persist(
                    file_key,
                    current,
                    updated,
                    tag=tag,
                    reason=reason,
                    operation=operation,
                    actor=actor,
                    etag=obj.etag if obj else None,
                    extra_meta={"changes-applied": str(applied)},
                )
            except WriteConflict as e:
                logger.warning("Conflicto de escritura en %s: %s", file_key, e)
                return _failed(REASON_CONFLICT, REASON_CONFLICT)
            except StorageError as e:
                return _failed(REASON_STORAGE, str(e))
        else:
            logger.info("Ningún cambio aplicable en %s; documento sin reescribir", file_key)

        logger.info("%s: %d de %d cambios aplicados en %s", operation, applied, total, file_key)
        log_event_sync(cid, file_key, "file:done", applied=applied, total=total, backup=backup)
        return FileResult(applied, total, backup), results, updated

    async def _invalidate(self, report: ReconcileReport) -> None:
        if report.changes_applied:
            report.cache_patterns = await invalidate_read_caches(self.cache)

    # --- entradas públicas ---------------------------------------------------

    async def _assign(
        self, changes: Sequence[RollChange], files: Sequence[ObjectInfo]
    ) -> Tuple[Dict[str, List[int]], Dict[int, ChangeResult]]:
        """Documento destino de cada cambio (por posición) y los que no se pudieron ubicar."""
        loaded: Dict[str, List[Roll]] = {}
        oc_files: Dict[str, Optional[str]] = {}
        plan: Dict[str, List[int]] = {}
        unresolved: Dict[int, ChangeResult] = {}
        for pos, ch in enumerate(changes):
            candidates: List[str] = []
            for raw in ((ch.original or {}).get(OC), ch.data.get(OC)):
                if raw and normalize_oc(raw) and normalize_oc(raw) not in candidates:
                    candidates.append(normalize_oc(raw))
            if not candidates:
                unresolved[pos] = ChangeResult(ch.target_id, ch.kind, False, REASON_OC_MISSING)
                continue
            target: Optional[str] = None
            for oc in candidates:
                if oc not in oc_files:
                    oc_files[oc] = await locate_document(self.store, files, oc, loaded)
                target = oc_files[oc]
                if target:
                    break
            if target is None:
                unresolved[pos] = ChangeResult(ch.target_id, ch.kind, False, REASON_OC_NOT_FOUND)
                continue
            plan.setdefault(target, []).append(pos)
        return plan, unresolved

    async def bulk_edit(
        self,
        changes: Sequence[RollChange],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> ReconcileReport:
        """Cambios heterogéneos (add/update/delete) sobre cualquier cantidad de OCs."""
        cid = correlation_id or make_correlation_id()
        files = await self._require_files()
        plan, unresolved = await self._assign(changes, files)
        if not plan:
            raise DocumentNotFound("No se encontraron archivos para los cambios especificados")

        report = ReconcileReport(changes_requested=len(changes))
        slots: List[Optional[ChangeResult]] = [unresolved.get(i) for i in range(len(changes))]
        for file_key, positions in plan.items():
            file_result, results, _ = await self._process_file(
                file_key,
                [changes[i] for i in positions],
                matchers=DEFAULT_MATCHERS,
                tag="bulk",
                reason="pre-bulk-edit-backup",
                operation="bulk-edit",
                actor=actor,
                cid=cid,
            )
            report.results[file_key] = file_result
            for pos, res in zip(positions, results):
                slots[pos] = res
        report.changes = [s for s in slots if s is not None]
        await self._invalidate(report)
        logger.info(
            "bulk-edit por %s: %d/%d cambios aplicados en %d archivos",
            actor,
            report.changes_applied,
            report.changes_requested,
            report.files_processed,
        )
        return report

    async def edit_rolls(
        self,
        oc: str,
        changes: Sequence[RollChange],
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Tuple[str, ReconcileReport, int]:
        """Edición de rollos completos de una OC.

        Devuelve (documento, reporte, rollos de la OC tras la edición).
        """
        cid = correlation_id or make_correlation_id()
        files = await self._require_files()
        file_key = await locate_document(self.store, files, oc)
        if not file_key:
            raise DocumentNotFound(f"No se encontró archivo que contenga la OC: {oc}")

        file_result, results, updated = await self._process_file(
            file_key,
            changes,
            matchers=(OrderScopedRollIdMatcher(oc),),
            tag="edit",
            reason="pre-edit-backup",
            operation="edit-rolls",
            actor=actor,
            cid=cid,
        )
        report = ReconcileReport(changes_requested=len(changes), results={file_key: file_result}, changes=results)
        if file_result.changes_applied < len(changes):
            logger.warning(
                "Solo se aplicaron %d de %d actualizaciones para OC %s",
                file_result.changes_applied,
                len(changes),
                oc,
            )
        await self._invalidate(report)
        wanted = normalize_oc(oc)
        total_in_oc = sum(1 for r in updated if normalize_oc(r.get(OC)) == wanted)
        return file_key, report, total_in_oc

    async def mark_sold(
        self,
        tela: str,
        color: str,
        lote: str,
        roll_numbers: Sequence[int],
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Quita del packing list los rollos vendidos de un grupo tela/color/lote."""
        files = await self._require_files()
        wanted = set(roll_numbers)
        for f in files:
            try:
                obj = await self.store.get_object(f.key)
            except StorageError:
                logger.exception("Error leyendo %s al buscar rollos vendidos", f.key)
                continue
            current = parse_rolls(obj.body, f.key) if obj else []
            if not any(
                matches_group(r, tela, color, lote) and roll_number(r.get(ROLL_ID)) in wanted
                for r in current
            ):
                continue
            updated = remove_sold_rolls(current, tela, color, lote, roll_numbers)
            backup = await self._persist(
                f.key,
                current,
                updated,
                tag="sold",
                reason="pre-sale-backup",
                operation="update-rolls-sold",
                actor=actor,
                etag=obj.etag if obj else None,
            )
            report = ReconcileReport(changes_requested=len(roll_numbers))
            report.results[f.key] = FileResult(len(current) - len(updated), len(roll_numbers), backup)
            await self._invalidate(report)
            remaining = sum(1 for r in updated if matches_group(r, tela, color, lote))
            logger.info("[SOLD] %s marcó vendidos %s de %s/%s/%s", actor, list(roll_numbers), tela, color, lote)
            return {
                "updatedFile": f.key,
                "backupFile": backup,
                "rollsRemoved": list(roll_numbers),
                "remainingRolls": remaining,
                "cachePatterns": report.cache_patterns,
            }
        raise DocumentNotFound(
            f"No se encontraron los rollos especificados para {tela} - {color} - Lote: {lote}"
        )
