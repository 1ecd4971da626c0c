#!/usr/bin/env python
# NG-HEADER: Nombre de archivo: test_packing_list_api.py
# NG-HEADER: Ubicación: tests/test_packing_list_api.py
# NG-HEADER: Descripción: Pruebas de endpoints /packing-list (mutaciones, lecturas cacheadas, export, permisos y rate limit).
# NG-HEADER: Lineamientos: Ver AGENTS.md
import io

import pytest
from openpyxl import load_workbook
from sqlalchemy import select

from conftest import PREFIX, roll

from db.models import AuditLog
from services.api import app
from services.auth import SessionData, current_session

DOC_1 = f"{PREFIX}detalle_oc1.json"
DOC_2 = f"{PREFIX}detalle_oc2.json"


@pytest.fixture()
def seeded(store):
    store.seed(DOC_1, [roll(rollo_id="1"), roll(rollo_id="2", cantidad=20)])
    store.seed(DOC_2, [roll(oc="OC-2", tela="SEDA", color="ROJO", lote="L9", rollo_id="1")])
    return store


@pytest.mark.asyncio
async def test_bulk_edit_applies_and_invalidates(client, seeded, cache, fake_redis, db_session):
    fake_redis.data["cache:api:s3:get-rolls:pathname:/x:search:"] = "[]"
    payload = {
        "changes": [
            {
                "type": "update",
                "rollId": "OC-1_LINO_AZUL_L1_1",
                "data": {"cantidad": 12.5},
                "originalData": roll(rollo_id="1"),
            },
            {"type": "delete", "rollId": "1", "originalData": roll(oc="OC-2", tela="SEDA", color="ROJO", lote="L9")},
            {"type": "add", "rollId": "3", "data": roll(rollo_id="3", cantidad=7)},
        ]
    }
    r = await client.put("/packing-list/bulk-edit", json=payload)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["data"]["changesRequested"] == 3
    assert body["data"]["changesApplied"] == 3
    assert body["data"]["filesProcessed"] == 2
    assert body["cache"]["invalidated"] is True
    assert fake_redis.data == {}

    doc1 = seeded.rolls(DOC_1)
    assert [r["rollo_id"] for r in doc1] == ["1", "2", "3"]
    assert doc1[0]["cantidad"] == 12.5
    assert seeded.rolls(DOC_2) == []
    backups = [k for k in seeded.objects if k.startswith(f"{PREFIX}backups/")]
    assert len(backups) == 2

    rows = (await db_session.execute(select(AuditLog).where(AuditLog.action == "bulk-edit"))).scalars().all()
    assert len(rows) == 1
    assert rows[0].meta["changes_applied"] == 3


@pytest.mark.asyncio
async def test_audit_row_shares_response_correlation_id(client, seeded, db_session):
    payload = {"changes": [{"type": "update", "rollId": "2", "data": {"cantidad": 1}, "originalData": roll(rollo_id="2")}]}
    r = await client.put("/packing-list/bulk-edit", json=payload)
    assert r.status_code == 200, r.text
    cid = r.headers["X-Correlation-Id"]
    row = (await db_session.execute(select(AuditLog).where(AuditLog.action == "bulk-edit"))).scalars().one()
    assert row.meta["correlation_id"] == cid

    r = await client.put("/packing-list/bulk-edit", json=payload, headers={"X-Correlation-Id": "cid-del-front"})
    assert r.headers["X-Correlation-Id"] == "cid-del-front"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,detail",
    [
        ({}, "Cambios son requeridos y deben ser un array"),
        ({"changes": []}, "Debe proporcionar al menos un cambio"),
        ({"changes": [{"type": "update", "rollId": "1", "data": {"unidad": "LB"}}]}, "Datos inválidos para rollo 1"),
    ],
)
async def test_bulk_edit_validation_400(client, seeded, payload, detail):
    r = await client.put("/packing-list/bulk-edit", json=payload)
    assert r.status_code == 400
    assert r.json()["detail"].startswith(detail)
    assert seeded.puts == []


@pytest.mark.asyncio
async def test_bulk_edit_404_when_no_documents(client, store):
    payload = {"changes": [{"type": "delete", "rollId": "1", "originalData": roll()}]}
    r = await client.put("/packing-list/bulk-edit", json=payload)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_bulk_edit_404_when_no_document_has_the_oc(client, seeded):
    payload = {"changes": [{"type": "delete", "rollId": "1", "originalData": roll(oc="OC-404")}]}
    r = await client.put("/packing-list/bulk-edit", json=payload)
    assert r.status_code == 404
    assert "No se encontraron archivos" in r.json()["detail"]


@pytest.mark.asyncio
async def test_edit_rolls_replaces_and_keeps_fecha(client, seeded):
    updated = roll(rollo_id="2", cantidad=0, status="sold", fecha_ingreso="")
    r = await client.put("/packing-list/edit-rolls", json={"oc": " OC-1 ", "updatedRolls": [updated]})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["oc"] == "OC-1"
    assert data["updatedFile"] == DOC_1
    assert data["rollsUpdated"] == 1
    assert data["totalRollsInOC"] == 2
    assert data["backupFile"].startswith(f"{PREFIX}backups/detalle_oc1_backup_edit_")
    stored = seeded.rolls(DOC_1)[1]
    assert stored["cantidad"] == 0
    assert stored["status"] == "sold"
    assert stored["fecha_ingreso"] == "2024-01-10"


@pytest.mark.asyncio
async def test_edit_rolls_validation_and_missing_oc(client, seeded):
    r = await client.put("/packing-list/edit-rolls", json={"updatedRolls": [roll()]})
    assert r.status_code == 400
    assert r.json()["detail"] == "OC y rollos actualizados son requeridos"

    r = await client.put("/packing-list/edit-rolls", json={"oc": "OC-1", "updatedRolls": [roll(oc="OC-2")]})
    assert r.status_code == 400

    r = await client.put("/packing-list/edit-rolls", json={"oc": "OC-404", "updatedRolls": [roll(oc="OC-404")]})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_edit_rolls_storage_failure_is_502(client, seeded):
    seeded.fail_put.add(DOC_1)
    r = await client.put("/packing-list/edit-rolls", json={"oc": "OC-1", "updatedRolls": [roll(cantidad=3)]})
    assert r.status_code == 502
    assert seeded.rolls(DOC_1)[0]["cantidad"] == 10


@pytest.mark.asyncio
async def test_update_rolls_removes_sold(client, seeded):
    r = await client.post(
        "/packing-list/update-rolls",
        json={"tela": "lino", "color": "AZUL", "lot": "L1", "soldRolls": [1]},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["updatedFile"] == DOC_1
    assert body["rollsRemoved"] == [1]
    assert body["remainingRolls"] == 1
    assert body["backupFile"].startswith(f"{PREFIX}backups/detalle_oc1_backup_sold_")
    assert [r["rollo_id"] for r in seeded.rolls(DOC_1)] == ["2"]


@pytest.mark.asyncio
async def test_update_rolls_400_and_404(client, seeded):
    r = await client.post("/packing-list/update-rolls", json={"tela": "LINO", "color": "AZUL", "soldRolls": [1]})
    assert r.status_code == 400
    assert r.json()["detail"] == "Todos los campos son requeridos"

    r = await client.post(
        "/packing-list/update-rolls",
        json={"tela": "LINO", "color": "AZUL", "lot": "L1", "soldRolls": ["uno"]},
    )
    assert r.status_code == 400

    r = await client.post(
        "/packing-list/update-rolls",
        json={"tela": "LINO", "color": "AZUL", "lot": "L7", "soldRolls": [1]},
    )
    assert r.status_code == 404
    assert seeded.puts == []


@pytest.mark.asyncio
async def test_get_rolls_grouped_and_cached(client, seeded, fake_redis):
    r = await client.get("/packing-list/get-rolls", params={"tela": "lino", "color": "azul"})
    assert r.status_code == 200
    entries = r.json()
    assert len(entries) == 1
    assert entries[0]["lot"] == "L1"
    assert [x["roll_number"] for x in entries[0]["rolls"]] == [1, 2]
    assert any(k.startswith("cache:api:s3:get-rolls:pathname:/packing-list/get-rolls") for k in fake_redis.data)

    # Un cambio directo en S3 no se ve hasta invalidar o refrescar
    seeded.seed(DOC_1, [roll(rollo_id="5")])
    cached = await client.get("/packing-list/get-rolls", params={"tela": "lino", "color": "azul"})
    assert cached.json() == entries
    fresh = await client.get("/packing-list/get-rolls", params={"tela": "lino", "color": "azul", "refresh": "true"})
    assert [x["roll_number"] for x in fresh.json()[0]["rolls"]] == [5]


@pytest.mark.asyncio
async def test_get_rolls_requires_params_and_documents(client, store):
    r = await client.get("/packing-list/get-rolls", params={"tela": "LINO"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Tela y color son requeridos"
    r = await client.get("/packing-list/get-rolls", params={"tela": "LINO", "color": "AZUL"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_list_files_only_packing_lists(client, seeded):
    seeded.seed(f"{PREFIX}backups/detalle_oc1_backup_bulk_1.json", [])
    r = await client.get("/packing-list/list-files")
    assert r.status_code == 200
    assert [f["key"] for f in r.json()["files"]] == [DOC_1, DOC_2]


@pytest.mark.asyncio
async def test_available_orders_and_invalidation(client, seeded, fake_redis):
    r = await client.get("/packing-list/get-available-orders")
    assert r.status_code == 200
    orders = r.json()
    assert [(o["oc"], o["fileName"], o["rollCount"]) for o in orders] == [
        ("OC-1", "detalle_oc1.json", 2),
        ("OC-2", "detalle_oc2.json", 1),
    ]
    assert any(k.startswith("cache:api:packing-list:available-orders") for k in fake_redis.data)

    r = await client.post("/packing-list/get-available-orders")
    assert r.status_code == 200
    assert r.json()["cache"] == {"invalidated": True}
    assert not any(k.startswith("cache:api:packing-list:available-orders") for k in fake_redis.data)


@pytest.mark.asyncio
async def test_get_order_rolls(client, seeded, fake_redis):
    seeded.seed(DOC_1, [roll(rollo_id="10"), roll(rollo_id="2"), roll(oc="OC-3", rollo_id="1")])
    r = await client.get("/packing-list/get-order-rolls", params={"oc": "oc-1"})
    assert r.status_code == 200
    body = r.json()
    assert body["fileName"] == "detalle_oc1.json"
    assert [x["rollo_id"] for x in body["rolls"]] == ["2", "10"]

    missing = await client.get("/packing-list/get-order-rolls", params={"oc": "OC-404"})
    assert missing.status_code == 200
    assert missing.json() is None

    bad = await client.get("/packing-list/get-order-rolls", params={"oc": "  "})
    assert bad.status_code == 400

    r = await client.post("/packing-list/get-order-rolls")
    assert r.status_code == 200
    assert not any(k.startswith("cache:api:packing-list:order-rolls") for k in fake_redis.data)


@pytest.mark.asyncio
async def test_export_order_rolls_xlsx(client, seeded):
    r = await client.get("/packing-list/order-rolls/export.xlsx", params={"oc": "OC-1"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert "rollos_OC-1.xlsx" in r.headers["content-disposition"]
    ws = load_workbook(io.BytesIO(r.content)).active
    assert ws.cell(row=2, column=1).value == "1"
    assert ws.cell(row=4, column=5).value == 30

    r = await client.get("/packing-list/order-rolls/export.xlsx", params={"oc": "OC-404"})
    assert r.status_code == 404


@pytest.mark.asyncio
@pytest.mark.no_auth_override
async def test_guest_gets_401(client, seeded):
    r = await client.get("/packing-list/get-rolls", params={"tela": "LINO", "color": "AZUL"})
    assert r.status_code == 401
    r = await client.put("/packing-list/bulk-edit", json={"changes": []})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_seller_reads_but_cannot_edit(client, seeded):
    app.dependency_overrides[current_session] = lambda: SessionData(None, None, "seller")
    r = await client.get("/packing-list/get-rolls", params={"tela": "LINO", "color": "AZUL"})
    assert r.status_code == 200
    r = await client.put("/packing-list/edit-rolls", json={"oc": "OC-1", "updatedRolls": [roll()]})
    assert r.status_code == 403
    r = await client.get("/packing-list/get-available-orders")
    assert r.status_code == 403
    assert seeded.puts == []


@pytest.mark.asyncio
async def test_mutations_rate_limited(client, seeded):
    for _ in range(5):
        r = await client.put("/packing-list/bulk-edit", json={"changes": []})
        assert r.status_code == 400
    r = await client.put("/packing-list/bulk-edit", json={"changes": []})
    assert r.status_code == 429
    assert r.headers["X-RateLimit-Limit"] == "5"
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert int(r.headers["Retry-After"]) >= 0
    assert "Demasiadas actualizaciones masivas" in r.json()["detail"]
