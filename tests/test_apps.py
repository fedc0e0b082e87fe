import io

import httpx

from item_customizer.app import create_admin_app, create_storefront_app
from item_customizer.backend import BackendClient

CONFIG = {
    "item": {"allowsCustomization": True},
    "rules": [
        {"id": "message", "title": "Mensagem", "rule_type": "TEXT_INPUT", "required": True, "display_order": 1},
        {"id": "photos", "title": "Fotos", "rule_type": "PHOTO_UPLOAD", "max_items": 2, "display_order": 2},
        {
            "id": "color",
            "title": "Cor",
            "rule_type": "OPTION_SELECT",
            "display_order": 3,
            "available_options": [{"id": "red", "label": "Vermelho"}, {"id": "gloss", "label": "Brilho"}],
        },
    ],
    "legacyRules": [],
    "layouts": [],
}

RED_EXCLUDES_GLOSS = {
    "id": "c-red",
    "target_item_id": "red",
    "target_item_type": "ADDITIONAL",
    "constraint_type": "MUTUALLY_EXCLUSIVE",
    "related_item_id": "gloss",
    "related_item_type": "ADDITIONAL",
    "message": None,
}


def backend_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path in {"/customizations/PRODUCT/p1", "/customizations/PRODUCT/p2"}:
        return httpx.Response(200, json=CONFIG)
    if path == "/customizations/PRODUCT/plain":
        return httpx.Response(200, json={"item": {"allowsCustomization": False}, "rules": []})
    if path == "/customizations/validate":
        return httpx.Response(200, json={"valid": True, "errors": [], "warnings": []})
    if path == "/products/p1":
        return httpx.Response(200, json={"id": "p1", "name": "Caneca", "price": "100", "discount": "10"})
    if path == "/additionals/a1":
        return httpx.Response(200, json={"id": "a1", "name": "Balão", "price": "20"})
    if path == "/additionals/a2":
        return httpx.Response(200, json={"id": "a2", "name": "Cartão", "price": "5"})
    if path == "/admin/constraints/item/ADDITIONAL/red":
        return httpx.Response(200, json={"constraints": [RED_EXCLUDES_GLOSS]})
    if path.startswith("/admin/constraints/item/"):
        return httpx.Response(200, json={"constraints": []})
    return httpx.Response(404, json={"error": "not found"})


def storefront(tmp_path):
    backend = BackendClient("http://backend.test", transport=httpx.MockTransport(backend_handler))
    return create_storefront_app(str(tmp_path / "app.db"), backend=backend)


def constraint_payload(**overrides):
    payload = {
        "target_item_id": "p1",
        "target_item_type": "PRODUCT",
        "constraint_type": "REQUIRES",
        "related_item_id": "a2",
        "related_item_type": "ADDITIONAL",
    }
    payload.update(overrides)
    return payload


def test_health_endpoint_available_for_all_apps(tmp_path) -> None:
    for app in (create_admin_app(str(tmp_path / "app.db")), storefront(tmp_path)):
        response = app.test_client().get("/healthz")
        assert response.status_code == 200
        payload = response.get_json()
        assert payload["status"] == "ok"
        assert payload["app"] in {"admin", "storefront"}


def test_admin_constraint_lifecycle(tmp_path) -> None:
    client = create_admin_app(str(tmp_path / "app.db")).test_client()
    client.post("/admin/items", json={"item_type": "ADDITIONAL", "item_id": "a2", "name": "Cartão"})

    created = client.post("/admin/constraints", json=constraint_payload())
    assert created.status_code == 201
    body = created.get_json()
    assert body["related_item_name"] == "Cartão"

    duplicate = client.post("/admin/constraints", json=constraint_payload())
    assert duplicate.status_code == 409
    assert duplicate.get_json() == {"error": "constraint already exists"}

    listed = client.get("/admin/constraints").get_json()["constraints"]
    assert [row["id"] for row in listed] == [body["id"]]
    by_item = client.get("/admin/constraints/item/additional/a2").get_json()["constraints"]
    assert [row["id"] for row in by_item] == [body["id"]]

    assert client.delete(f"/admin/constraints/{body['id']}").status_code == 200
    assert client.delete(f"/admin/constraints/{body['id']}").status_code == 404


def test_admin_rejects_invalid_constraints(tmp_path) -> None:
    client = create_admin_app(str(tmp_path / "app.db")).test_client()

    self_reference = client.post("/admin/constraints", json=constraint_payload(related_item_id="p1"))
    unknown_type = client.post("/admin/constraints", json=constraint_payload(constraint_type="FORBIDS"))
    bad_item_type = client.get("/admin/constraints/item/bundle/x1")

    assert self_reference.status_code == 400
    assert unknown_type.status_code == 400
    assert bad_item_type.status_code == 400


def test_admin_search_requires_two_characters(tmp_path) -> None:
    client = create_admin_app(str(tmp_path / "app.db")).test_client()
    client.post("/admin/items", json={"item_type": "PRODUCT", "item_id": "p1", "name": "Caneca"})
    client.post("/admin/items", json={"item_type": "ADDITIONAL", "item_id": "a1", "name": "Caneta"})

    assert client.get("/admin/constraints/search?q=c").get_json() == {"products": [], "additionals": []}
    results = client.get("/admin/constraints/search?q=can").get_json()
    assert results["products"] == [{"id": "p1", "name": "Caneca"}]
    assert results["additionals"] == [{"id": "a1", "name": "Caneta"}]


def test_storefront_session_flow(tmp_path) -> None:
    app = storefront(tmp_path)
    client = app.test_client()

    created = client.post("/api/sessions", json={"item_type": "PRODUCT", "item_id": "p1"})
    assert created.status_code == 201
    session_id = created.get_json()["session_id"]
    assert [rule["id"] for rule in created.get_json()["rules"]] == ["message", "photos", "color"]

    invalid = client.post(f"/api/sessions/{session_id}/validate").get_json()
    assert invalid["valid"] is False
    assert "Mensagem" in invalid["errors"][0]

    answered = client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Parabéns"}})
    assert answered.status_code == 200
    assert client.post(f"/api/sessions/{session_id}/validate").get_json()["valid"] is True

    uploaded = client.post(
        f"/api/sessions/{session_id}/photos/photos",
        data={"photos": [(io.BytesIO(b"one"), "a.png"), (io.BytesIO(b"two"), "b.png"), (io.BytesIO(b"3"), "c.png")]},
        content_type="multipart/form-data",
    )
    assert uploaded.status_code == 200
    photos = uploaded.get_json()["data"]["photos"]
    assert [photo["position"] for photo in photos] == [0, 1]

    token = photos[0]["preview_url"].split(":", 1)[1]
    preview = client.get(f"/api/previews/{token}")
    assert preview.status_code == 200
    assert preview.data == b"one"

    payload = client.post(f"/api/sessions/{session_id}/order-payload", json={"title": "Caneca"}).get_json()
    assert payload["customizationRuleId"] == "message"

    assert client.delete(f"/api/sessions/{session_id}").status_code == 200
    assert client.get(f"/api/previews/{token}").status_code == 404
    assert client.get(f"/api/sessions/{session_id}").status_code == 404


def test_storefront_rejects_answers_for_unknown_rules(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]

    response = client.put(f"/api/sessions/{session_id}/answers/nope", json={"data": {"text": "x"}})

    assert response.status_code == 400
    assert "nope" in response.get_json()["error"]


def test_item_without_customization_opens_no_session(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    response = client.post("/api/sessions", json={"item_type": "PRODUCT", "item_id": "plain"})

    assert response.status_code == 200
    assert response.get_json()["session_id"] is None


def test_draft_save_and_restore(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Parabéns"}})

    saved = client.post(f"/api/sessions/{session_id}/draft")
    assert saved.get_json()["draft_key"] == "customizations_data_product_p1"

    restored = client.post("/api/sessions/restore", json={"item_type": "PRODUCT", "item_id": "p1"})
    assert restored.status_code == 201
    assert restored.get_json()["customizations"][0]["data"]["text"] == "Parabéns"
    assert restored.get_json()["session_id"] != session_id

    missing = client.post("/api/sessions/restore", json={"draft_key": "customizations_data_product_zz"})
    assert missing.status_code == 404


def test_cart_merges_identical_lines_and_prices_them(tmp_path) -> None:
    client = storefront(tmp_path).test_client()

    first = client.post("/api/carts/c1/lines", json={"product_id": "p1", "additional_ids": ["a1"]})
    second = client.post("/api/carts/c1/lines", json={"product_id": "p1", "additional_ids": ["a1"]})

    assert first.status_code == 201
    assert second.status_code == 200
    cart = second.get_json()["cart"]
    assert len(cart["lines"]) == 1
    assert cart["lines"][0]["quantity"] == 2
    assert cart["total"] == "220.00"
    assert cart["item_count"] == 2

    fingerprint = cart["lines"][0]["fingerprint"]
    updated = client.patch(f"/api/carts/c1/lines/{fingerprint}", json={"quantity": 0}).get_json()
    assert updated["lines"] == []
    assert client.patch(f"/api/carts/c1/lines/{fingerprint}", json={"quantity": 1}).status_code == 404


def test_cart_rejects_line_that_breaks_a_constraint(tmp_path) -> None:
    db = str(tmp_path / "app.db")
    admin = create_admin_app(db).test_client()
    admin.post("/admin/constraints", json=constraint_payload(message="A caneca exige o cartão"))
    client = storefront(tmp_path).test_client()

    rejected = client.post("/api/carts/c1/lines", json={"product_id": "p1", "additional_ids": ["a1"]})
    assert rejected.status_code == 409
    assert rejected.get_json()["error"] == "A caneca exige o cartão"
    assert client.get("/api/carts/c1").get_json()["lines"] == []

    accepted = client.post("/api/carts/c1/lines", json={"product_id": "p1", "additional_ids": ["a1", "a2"]})
    assert accepted.status_code == 201


def test_cart_line_from_session_customizations(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Oi"}})

    added = client.post("/api/carts/c1/lines", json={"product_id": "p1", "session_id": session_id}).get_json()
    line = added["line"]
    assert line["customizations"][0]["data"]["text"] == "Oi"

    removed = client.delete(
        "/api/carts/c1/lines",
        json={"product_id": "p1", "customizations": line["customizations"]},
    )
    assert removed.status_code == 200
    assert removed.get_json()["lines"] == []


def test_backend_outage_returns_bad_gateway(tmp_path) -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    backend = BackendClient("http://backend.test", transport=httpx.MockTransport(failing))
    client = create_storefront_app(str(tmp_path / "app.db"), backend=backend).test_client()

    response = client.post("/api/sessions", json={"item_id": "p1"})

    assert response.status_code == 502
    assert response.get_json() == {"error": "storefront backend unavailable"}


def test_option_conflicting_with_related_session_is_blocked(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    first = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    second = client.post("/api/sessions", json={"item_id": "p2"}).get_json()["session_id"]

    chosen = client.post(f"/api/sessions/{second}/options/color", json={"option_id": "gloss"})
    assert chosen.status_code == 200

    blocked = client.post(
        f"/api/sessions/{first}/options/color",
        json={"option_id": "red", "related_sessions": [second]},
    )
    assert blocked.status_code == 409
    assert blocked.get_json()["applied"] is False
    assert "Brilho" in blocked.get_json()["reason"]

    allowed = client.post(f"/api/sessions/{first}/options/color", json={"option_id": "red"})
    assert allowed.get_json()["applied"] is True


def test_preview_forwards_current_answers(tmp_path) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/customization/preview":
            seen.append(request.read())
            return httpx.Response(200, json={"previewUrl": "https://cdn.test/p1.png"})
        return backend_handler(request)

    backend = BackendClient("http://backend.test", transport=httpx.MockTransport(handler))
    client = create_storefront_app(str(tmp_path / "app.db"), backend=backend).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Oi"}})

    response = client.post(f"/api/sessions/{session_id}/preview")

    assert response.get_json() == {"previewUrl": "https://cdn.test/p1.png"}
    assert b'"productId":"p1"' in seen[0].replace(b" ", b"")


def test_incomplete_session_cannot_reach_order_or_cart(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/color", json={"data": {"selected_option": "red"}})

    order = client.post(f"/api/sessions/{session_id}/order-payload", json={"title": "Caneca"})
    assert order.status_code == 422
    assert order.get_json()["errors"] == ["Campos obrigatórios não preenchidos: Mensagem"]

    added = client.post("/api/carts/c1/lines", json={"product_id": "p1", "session_id": session_id})
    assert added.status_code == 422
    assert client.get("/api/carts/c1").get_json()["lines"] == []


def test_backend_rejection_blocks_order_and_cart(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/customizations/validate":
            return httpx.Response(200, json={"valid": False, "errors": ["Texto proibido"], "warnings": ["Revise"]})
        return backend_handler(request)

    backend = BackendClient("http://backend.test", transport=httpx.MockTransport(handler))
    client = create_storefront_app(str(tmp_path / "app.db"), backend=backend).test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Oi"}})

    order = client.post(f"/api/sessions/{session_id}/order-payload", json={"title": "Caneca"})
    assert order.status_code == 422
    assert order.get_json()["errors"] == ["Texto proibido"]
    assert order.get_json()["warnings"] == ["Revise"]

    added = client.post("/api/carts/c1/lines", json={"product_id": "p1", "session_id": session_id})
    assert added.status_code == 422
    assert client.get("/api/carts/c1").get_json()["lines"] == []


def test_new_session_for_same_owner_replaces_the_previous_one(tmp_path) -> None:
    app = storefront(tmp_path)
    client = app.test_client()
    first = client.post("/api/sessions", json={"item_id": "p1", "owner": "cart-1"}).get_json()["session_id"]
    uploaded = client.post(
        f"/api/sessions/{first}/photos/photos",
        data={"photos": [(io.BytesIO(b"one"), "a.png")]},
        content_type="multipart/form-data",
    )
    token = uploaded.get_json()["data"]["photos"][0]["preview_url"].split(":", 1)[1]

    for _ in range(5):
        client.post("/api/sessions", json={"item_id": "p2", "owner": "cart-1"})

    assert len(app.extensions["customizer_sessions"]) == 1
    assert client.get(f"/api/sessions/{first}").status_code == 404
    assert client.get(f"/api/previews/{token}").status_code == 404
    assert app.extensions["customizer_previews"].active_count == 0


def test_idle_sessions_are_evicted(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SESSION_IDLE_TTL_SECONDS", "0")
    app = storefront(tmp_path)
    client = app.test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]

    assert client.get(f"/api/sessions/{session_id}").status_code == 404
    assert len(app.extensions["customizer_sessions"]) == 0


def test_expired_photos_are_reported_and_pruned(tmp_path) -> None:
    app = storefront(tmp_path)
    client = app.test_client()
    session_id = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.put(f"/api/sessions/{session_id}/answers/message", json={"data": {"text": "Oi"}})
    photos = client.post(
        f"/api/sessions/{session_id}/photos/photos",
        data={"photos": [(io.BytesIO(b"one"), "a.png"), (io.BytesIO(b"two"), "b.png")]},
        content_type="multipart/form-data",
    ).get_json()["data"]["photos"]
    expired = photos[0]["preview_url"]
    app.extensions["customizer_previews"].revoke(expired)

    blocked = client.post(f"/api/sessions/{session_id}/order-payload", json={"title": "Caneca"})
    assert blocked.status_code == 422

    checked = client.post(f"/api/sessions/{session_id}/images/validate", json={"prune": True}).get_json()
    assert checked["valid"] is False
    assert checked["invalid_images"] == [expired]
    assert checked["removed_rules"] == ["photos"]

    remaining = client.get(f"/api/sessions/{session_id}").get_json()["customizations"][1]["data"]["photos"]
    assert [photo["original_name"] for photo in remaining] == ["b.png"]
    assert remaining[0]["position"] == 0
    assert client.post(f"/api/sessions/{session_id}/order-payload", json={"title": "Caneca"}).status_code == 200


def test_restored_draft_owns_its_previews(tmp_path) -> None:
    client = storefront(tmp_path).test_client()
    original = client.post("/api/sessions", json={"item_id": "p1"}).get_json()["session_id"]
    client.post(
        f"/api/sessions/{original}/photos/photos",
        data={"photos": [(io.BytesIO(b"one"), "a.png")]},
        content_type="multipart/form-data",
    )
    client.post(f"/api/sessions/{original}/draft")

    restored = client.post("/api/sessions/restore", json={"item_type": "PRODUCT", "item_id": "p1"}).get_json()
    original_url = client.get(f"/api/sessions/{original}").get_json()["customizations"][0]["data"]["photos"][0][
        "preview_url"
    ]
    restored_url = restored["customizations"][0]["data"]["photos"][0]["preview_url"]
    assert restored_url != original_url

    client.delete(f"/api/sessions/{original}")

    preview = client.get(f"/api/previews/{restored_url.split(':', 1)[1]}")
    assert preview.status_code == 200
    assert preview.data == b"one"
