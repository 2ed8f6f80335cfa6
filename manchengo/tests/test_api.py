from datetime import timedelta

from manchengo.app.db.models.core_types import Role
from manchengo.services.clock import today


def auth(user) -> dict:
    return {"X-User-Id": str(user.id)}


def test_health(client):
    resp = client.get("/v1/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_authentication_and_roles(client, make):
    prod = make.user(Role.production)

    assert client.get("/v1/suppliers").status_code == 401
    assert client.get("/v1/suppliers", headers={"X-User-Id": "999999"}).status_code == 401
    assert client.get("/v1/suppliers", headers=auth(prod)).status_code == 200

    resp = client.post("/v1/suppliers", json={"code": "FRN-X", "name": "X"}, headers=auth(prod))
    assert resp.status_code == 403


def test_supplier_create_duplicate_and_paginate(client, make):
    """
    GIVEN
    - 3 fournisseurs créés par l'appro

    THEN
    - code en double -> 409
    - pages de 2 : la 2e page (via next_cursor) contient le dernier
    - chaque création est tracée dans l'audit (offset, page 1 de 2)
    """
    appro = make.user(Role.appro)
    admin = make.user(Role.admin)

    # ---------- ARRANGE ----------
    for code in ("FRN-A", "FRN-B", "FRN-C"):
        resp = client.post("/v1/suppliers", json={"code": code, "name": f"Laiterie {code}"}, headers=auth(appro))
        assert resp.status_code == 201

    # ---------- ACT ----------
    dup = client.post("/v1/suppliers", json={"code": "FRN-A", "name": "Doublon"}, headers=auth(appro))
    first = client.get("/v1/suppliers", params={"limit": 2}, headers=auth(appro)).json()
    second = client.get(
        "/v1/suppliers",
        params={"limit": 2, "cursor": first["pagination"]["next_cursor"]},
        headers=auth(appro),
    ).json()
    audit = client.get(
        "/v1/audit", params={"page": 1, "limit": 2, "action": "SUPPLIER_CREATED"}, headers=auth(admin)
    ).json()

    # ---------- ASSERT ----------
    assert dup.status_code == 409
    assert len(first["data"]) == 2
    assert first["pagination"]["has_more"] is True
    assert len(second["data"]) == 1
    assert second["pagination"]["has_more"] is False
    codes = {s["code"] for s in first["data"] + second["data"]}
    assert codes == {"FRN-A", "FRN-B", "FRN-C"}

    assert audit["pagination"]["total"] == 3
    assert audit["pagination"]["total_pages"] == 2
    assert audit["pagination"]["has_next"] is True
    assert len(audit["data"]) == 2


def test_audit_is_admin_only(client, make):
    appro = make.user(Role.appro)

    assert client.get("/v1/audit", headers=auth(appro)).status_code == 403


def test_purchase_order_flow(client, make):
    """
    GIVEN
    - un fournisseur avec email, une MP

    THEN
    - création BROUILLON, envoi idempotent (même message_id au rejeu)
    - PDF téléchargeable
    - réception complète : BC RECEIVED, stock en entrée
    """
    appro = make.user(Role.appro)
    supplier = make.supplier(code="FRN-LAIT")
    mp = make.mp(code="MP-LAIT")

    # ---------- ACT: create ----------
    resp = client.post(
        "/v1/purchase-orders",
        json={
            "supplier_id": supplier.id,
            "expected_delivery": str(today() + timedelta(days=5)),
            "lines": [{"product_mp_id": mp.id, "quantity": 100, "unit_price": "85.00"}],
        },
        headers=auth(appro),
    )
    assert resp.status_code == 201
    po = resp.json()
    assert po["status"] == "DRAFT"
    assert po["reference"] == f"BC-{today():%Y}-00001"
    assert po["total_ht"] == 8500
    assert "envoyer" in po["available_actions"]

    # ---------- ACT: send twice ----------
    headers = {**auth(appro), "Idempotency-Key": "send-1"}
    sent = client.post(f"/v1/purchase-orders/{po['id']}/send", json={"send_via": "EMAIL"}, headers=headers)
    replay = client.post(f"/v1/purchase-orders/{po['id']}/send", json={"send_via": "EMAIL"}, headers=headers)

    assert sent.status_code == 200
    assert sent.json()["replayed"] is False
    assert sent.json()["purchase_order"]["status"] == "SENT"
    assert replay.json()["replayed"] is True
    assert replay.json()["message_id"] == sent.json()["message_id"]

    # ---------- ACT: pdf ----------
    pdf = client.get(f"/v1/purchase-orders/{po['id']}/pdf", headers=auth(appro))
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")
    assert f"{po['reference']}.pdf" in pdf.headers["content-disposition"]

    # ---------- ACT: receive ----------
    item_id = po["items"][0]["id"]
    received = client.post(
        f"/v1/purchase-orders/{po['id']}/receive",
        json={"lines": [{"item_id": item_id, "quantity_received": 100, "lot_number": "LAIT-0001"}]},
        headers=auth(appro),
    )

    # ---------- ASSERT ----------
    assert received.status_code == 200
    assert received.json()["purchase_order"]["status"] == "RECEIVED"
    stock = client.get("/v1/stock/mp", headers=auth(appro)).json()
    assert [(row["code"], row["stock"]) for row in stock] == [("MP-LAIT", 100)]


def test_domain_errors_are_structured(client, make):
    appro = make.user(Role.appro)
    supplier = make.supplier(email=None)
    mp = make.mp()
    po = client.post(
        "/v1/purchase-orders",
        json={"supplier_id": supplier.id, "lines": [{"product_mp_id": mp.id, "quantity": 1, "unit_price": 1}]},
        headers=auth(appro),
    ).json()

    missing_email = client.post(
        f"/v1/purchase-orders/{po['id']}/send", json={"send_via": "EMAIL"}, headers=auth(appro)
    )
    assert missing_email.status_code == 400
    assert missing_email.json()["detail"]["code"] == "SUPPLIER_EMAIL_REQUIRED"

    conflict = client.post(
        f"/v1/purchase-orders/{po['id']}/send",
        json={"send_via": "MANUAL", "proof_note": "Remis en main propre", "expected_version": 99},
        headers=auth(appro),
    )
    assert conflict.status_code == 409
    detail = conflict.json()["detail"]
    assert detail["code"] == "VERSION_CONFLICT"
    assert detail["expected_version"] == 99
    assert detail["current_version"] == po["version"]

    not_found = client.get("/v1/production/orders/424242", headers=auth(make.user(Role.production)))
    assert not_found.status_code == 404
    assert not_found.json()["detail"]["code"] == "NOT_FOUND"


def test_cancel_is_admin_only(client, make):
    appro = make.user(Role.appro)
    admin = make.user(Role.admin)
    supplier = make.supplier()
    mp = make.mp()
    po = client.post(
        "/v1/purchase-orders",
        json={"supplier_id": supplier.id, "lines": [{"product_mp_id": mp.id, "quantity": 1, "unit_price": 1}]},
        headers=auth(appro),
    ).json()
    body = {"reason": "Fournisseur en rupture de lait cru"}

    assert client.post(f"/v1/purchase-orders/{po['id']}/cancel", json=body, headers=auth(appro)).status_code == 403

    resp = client.post(f"/v1/purchase-orders/{po['id']}/cancel", json=body, headers=auth(admin))
    assert resp.status_code == 200
    assert resp.json()["purchase_order"]["status"] == "CANCELLED"


def test_demande_hides_validation_fields_from_production(client, make):
    prod = make.user(Role.production)
    appro = make.user(Role.appro)
    mp = make.mp()

    created = client.post(
        "/v1/demandes",
        json={"lines": [{"product_mp_id": mp.id, "quantite_demandee": 20}]},
        headers=auth(prod),
    )
    assert created.status_code == 201
    demande_id = created.json()["id"]
    client.post(f"/v1/demandes/{demande_id}/submit", headers=auth(prod))
    validated = client.post(f"/v1/demandes/{demande_id}/validate", headers=auth(appro))

    assert validated.status_code == 200
    assert validated.json()["status"] == "VALIDEE"
    assert validated.json()["validated_by"] == appro.id

    seen_by_prod = client.get(f"/v1/demandes/{demande_id}", headers=auth(prod)).json()
    assert "validated_by" not in seen_by_prod
    assert "validated_at" not in seen_by_prod
    listed = client.get("/v1/demandes", headers=auth(prod)).json()
    assert "validated_by" not in listed["data"][0]


def test_fifo_preview(client, make):
    appro = make.user(Role.appro)
    mp = make.mp()
    make.stock(mp, 5, actor=appro, lot_number="L-OLD")
    make.stock(mp, 10, actor=appro, lot_number="L-NEW")

    resp = client.get("/v1/stock/fifo-preview", params={"product_mp_id": mp.id, "quantity": 8}, headers=auth(appro))

    assert resp.status_code == 200
    assert [(a["lot_number"], a["quantity"]) for a in resp.json()["allocations"]] == [("L-OLD", 5), ("L-NEW", 3)]

    short = client.get(
        "/v1/stock/fifo-preview", params={"product_mp_id": mp.id, "quantity": 50}, headers=auth(appro)
    )
    assert short.status_code == 400


def test_run_checks_admin_only(client, make):
    appro = make.user(Role.appro)
    admin = make.user(Role.admin)
    make.mp(min_stock=10)

    assert client.post("/v1/alerts/run-checks", headers=auth(appro)).status_code == 403

    resp = client.post("/v1/alerts/run-checks", headers=auth(admin))
    assert resp.status_code == 200
    assert resp.json() == {"created": 1, "updated": 0, "closed": 0}

    listed = client.get("/v1/alerts", headers=auth(appro)).json()
    assert listed["open_count"] == 1
