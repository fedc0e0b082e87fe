import asyncio
import json

import httpx

from item_customizer.backend import BackendClient
from item_customizer.models import (
    CustomizationRule,
    ItemType,
    LayoutAnswer,
    PhotoAnswer,
    PhotoEntry,
    RuleType,
    TextAnswer,
)
from item_customizer.session import CustomizationSession
from item_customizer.validation import REMOTE_FAILURE_MESSAGE, ValidationEngine


def catalog() -> list[CustomizationRule]:
    return [
        CustomizationRule(id="a", title="Alpha", rule_type=RuleType.TEXT_INPUT, required=True, display_order=1),
        CustomizationRule(id="b", title="Beta", rule_type=RuleType.TEXT_INPUT, required=True, display_order=2),
        CustomizationRule(id="c", title="Gamma", rule_type=RuleType.TEXT_INPUT, display_order=3),
    ]


def make_session(*answered: str) -> CustomizationSession:
    session = CustomizationSession()
    session.initialize(ItemType.PRODUCT, "p1", catalog())
    for rule_id in answered:
        session.update(rule_id, TextAnswer(f"answer {rule_id}"))
    return session


def backend_with(handler) -> BackendClient:
    return BackendClient("http://backend.test", transport=httpx.MockTransport(handler))


def test_missing_required_titles_follow_catalog_order() -> None:
    result = ValidationEngine().validate_required(make_session("c"))

    assert result.valid is False
    assert result.missing_titles == ["Alpha", "Beta"]
    assert result.message == "Campos obrigatórios não preenchidos: Alpha, Beta"


def test_uninitialized_session_is_invalid() -> None:
    result = ValidationEngine().validate_required(CustomizationSession())
    assert result.valid is False
    assert result.missing_titles == []


def test_all_required_answered_is_valid() -> None:
    result = ValidationEngine().validate_required(make_session("a", "b"))
    assert result.valid is True
    assert result.message is None


def test_remote_errors_are_returned_verbatim() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"valid": False, "errors": ["Texto muito longo"], "warnings": ["Revise"]})

    session = make_session("a", "b")
    result = asyncio.run(
        ValidationEngine(backend_with(handler)).validate_remote(ItemType.PRODUCT, "p1", session.build_inputs())
    )

    assert result.valid is False
    assert result.errors == ["Texto muito longo"]
    assert result.warnings == ["Revise"]
    assert seen[0]["itemType"] == "PRODUCT"
    assert [entry["ruleId"] for entry in seen[0]["inputs"]] == ["a", "b"]


def test_transport_failure_becomes_structured_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate_remote(ItemType.PRODUCT, "p1", []))

    assert result.valid is False
    assert result.errors == [REMOTE_FAILURE_MESSAGE]


def test_http_error_becomes_structured_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate_remote(ItemType.PRODUCT, "p1", []))

    assert result.to_dict() == {"valid": False, "errors": [REMOTE_FAILURE_MESSAGE], "warnings": []}


def test_validate_skips_remote_when_local_fails() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"valid": True})

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate(make_session("a")))

    assert result.valid is False
    assert "Beta" in result.errors[0]
    assert calls == []


def test_validate_uses_remote_result_when_local_passes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"valid": True, "errors": [], "warnings": []})

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate(make_session("a", "b")))

    assert result.valid is True


def image_session(*rules: CustomizationRule) -> CustomizationSession:
    session = CustomizationSession()
    session.initialize(ItemType.PRODUCT, "p1", list(rules))
    return session


def test_required_dynamic_layout_without_image_is_reported() -> None:
    layout = CustomizationRule(id="l", title="Arte", rule_type=RuleType.DYNAMIC_LAYOUT, required=True)
    session = image_session(layout)
    session.update("l", LayoutAnswer(layout_id="l1"))

    result = asyncio.run(ValidationEngine().validate_images(session))

    assert result.valid is False
    assert result.invalid_images == ["Arte - Imagem obrigatória não foi enviada"]
    assert result.message.startswith("1 customização(ões) obrigatória(s) sem imagem")


def test_missing_uploads_are_listed_for_pruning() -> None:
    checked = []

    def handler(request: httpx.Request) -> httpx.Response:
        checked.append((request.method, str(request.url)))
        status = 404 if request.url.path.endswith("gone.png") else 200
        return httpx.Response(status)

    photos = CustomizationRule(id="photos", title="Fotos", rule_type=RuleType.PHOTO_UPLOAD)
    session = image_session(photos)
    local = session.previews.create(b"abc", "image/png")
    revoked = session.previews.create(b"def", "image/png")
    session.previews.revoke(revoked)
    urls = [local, revoked, "https://api.test/uploads/temp/ok.png", "https://api.test/uploads/temp/gone.png"]
    entries = [
        PhotoEntry(position=index, file_name=f"{index}.png", mime_type="image/png", preview_url=url)
        for index, url in enumerate(urls)
    ]
    session.update("photos", PhotoAnswer(photos=entries))

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate_images(session))

    assert result.valid is False
    assert result.invalid_images == [revoked, "https://api.test/uploads/temp/gone.png"]
    assert sorted(checked) == [
        ("HEAD", "https://api.test/uploads/temp/gone.png"),
        ("HEAD", "https://api.test/uploads/temp/ok.png"),
    ]


def test_validate_stops_before_remote_when_images_are_gone() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(404) if request.method == "HEAD" else httpx.Response(200, json={"valid": True})

    photos = CustomizationRule(id="photos", title="Fotos", rule_type=RuleType.PHOTO_UPLOAD)
    session = image_session(photos)
    entry = PhotoEntry(position=0, file_name="a.png", mime_type="image/png", preview_url="https://api.test/a.png")
    session.update("photos", PhotoAnswer(photos=[entry]))

    result = asyncio.run(ValidationEngine(backend_with(handler)).validate(session))

    assert result.valid is False
    assert "Por favor, faça upload novamente." in result.errors[0]
    assert calls == ["HEAD"]
