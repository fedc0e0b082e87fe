from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, Response, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .artifacts import BLOB_PREFIX, PreviewUrlRegistry, UploadedFile
from .backend import BackendClient, BackendError
from .cart import Cart, CartComposer, CartLine, LineNotFoundError
from .constraints import (
    ConstraintNotFoundError,
    ConstraintRepository,
    ConstraintResolver,
    DuplicateConstraintError,
    ItemConstraint,
    requirement_message,
)
from .db import init_db
from .models import CustomizationInput, ItemRef, ItemType, OptionAnswer
from .pricing import PriceCalculator, format_currency
from .session import CustomizationSession, RuleBusyError, SessionNotInitializedError, SessionRegistry
from .storage import CartStore, DraftStore, draft_key
from .validation import RemoteValidationResult, ValidationEngine


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app_name})


def _is_api_request() -> bool:
    return request.path.startswith("/api/") or request.path.startswith("/admin/")


def _error(message: str, status_code: int, **extra: Any) -> Any:
    return jsonify({"error": message, **extra}), status_code


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return _error("invalid request payload", 400)
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return _error(error.description, error.code)
        return error

    @app.errorhandler(DuplicateConstraintError)
    def handle_duplicate(error: DuplicateConstraintError) -> Any:
        return _error(str(error), 409)

    @app.errorhandler(KeyError)
    def handle_missing_field(error: KeyError) -> Any:
        app.logger.warning("missing_field", extra={"path": request.path, "field": str(error)})
        return _error(f"missing field: {error.args[0] if error.args else error}", 400)

    @app.errorhandler(ConstraintNotFoundError)
    @app.errorhandler(LineNotFoundError)
    def handle_not_found(error: LookupError) -> Any:
        return _error("not found", 404)

    @app.errorhandler(ValueError)
    def handle_invalid_value(error: ValueError) -> Any:
        app.logger.info("invalid_value", extra={"path": request.path, "error": str(error)})
        return _error(str(error), 400)

    @app.errorhandler(SessionNotInitializedError)
    @app.errorhandler(RuleBusyError)
    def handle_conflict(error: RuntimeError) -> Any:
        return _error(str(error), 409)

    @app.errorhandler(BackendError)
    def handle_backend_error(error: BackendError) -> Any:
        app.logger.warning("backend_unavailable", extra={"path": request.path, "error": str(error)})
        return _error("storefront backend unavailable", 502)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return _error("internal server error", 500)
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("expected a JSON object")
    return body


def _item_type(raw: str) -> ItemType:
    try:
        return ItemType(raw.upper())
    except ValueError:
        abort(400, description=f"unknown item type: {raw}")


def create_admin_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "admin")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("CUSTOMIZER_DB_PATH", "./customizer.db")
    init_db(_db_path(app))
    repository = ConstraintRepository(_db_path(app))

    @app.get("/admin/constraints")
    def list_constraints() -> Any:
        return jsonify({"constraints": [constraint.to_dict() for constraint in repository.list_all()]})

    @app.get("/admin/constraints/item/<item_type>/<item_id>")
    def item_constraints(item_type: str, item_id: str) -> Any:
        item = ItemRef(_item_type(item_type), item_id)
        return jsonify({"constraints": [constraint.to_dict() for constraint in repository.list_for_item(item)]})

    @app.get("/admin/constraints/search")
    def search_items() -> Any:
        return jsonify(repository.search_items(request.args.get("q", "")))

    @app.post("/admin/constraints")
    def create_constraint() -> Any:
        body = _json_body()
        constraint = repository.create(ItemConstraint.from_payload({**body, "id": None}))
        return jsonify(constraint.to_dict()), 201

    @app.delete("/admin/constraints/<constraint_id>")
    def delete_constraint(constraint_id: str) -> Any:
        repository.delete(constraint_id)
        return jsonify({"status": "deleted"})

    @app.post("/admin/items")
    def register_item() -> Any:
        body = _json_body()
        name = str(body.get("name", "")).strip()
        if not name:
            return _error("name is required", 400)
        item = ItemRef(_item_type(str(body["item_type"])), str(body["item_id"]), name)
        repository.register_item(item)
        return jsonify({"item_type": item.item_type.value, "item_id": item.item_id, "name": name}), 201

    return app


def create_storefront_app(database_path: str | None = None, backend: BackendClient | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "storefront")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("CUSTOMIZER_DB_PATH", "./customizer.db")
    app.config["BACKEND_API_URL"] = os.environ.get("BACKEND_API_URL", "http://localhost:3333")
    app.config["BACKEND_TIMEOUT_SECONDS"] = float(os.environ.get("BACKEND_TIMEOUT_SECONDS", "10"))
    app.config["DRAFT_TTL_HOURS"] = float(os.environ.get("DRAFT_TTL_HOURS", "24"))
    app.config["SESSION_IDLE_TTL_SECONDS"] = float(os.environ.get("SESSION_IDLE_TTL_SECONDS", "1800"))
    init_db(_db_path(app))

    backend = backend or BackendClient(app.config["BACKEND_API_URL"], app.config["BACKEND_TIMEOUT_SECONDS"])
    previews = PreviewUrlRegistry()
    sessions = SessionRegistry(app.config["SESSION_IDLE_TTL_SECONDS"])
    drafts = DraftStore(_db_path(app), ttl_hours=app.config["DRAFT_TTL_HOURS"])
    carts = CartStore(_db_path(app))
    constraints = ConstraintRepository(_db_path(app))
    validator = ValidationEngine(backend)
    calculator = PriceCalculator()
    app.extensions["customizer_sessions"] = sessions
    app.extensions["customizer_previews"] = previews

    def _session(session_id: str) -> CustomizationSession:
        session = sessions.get(session_id)
        if session is None or not session.is_active:
            abort(404, description="unknown session")
        return session

    def _session_payload(session_id: str, session: CustomizationSession) -> dict[str, Any]:
        state = session.require_state()
        return {
            "session_id": session_id,
            **session.snapshot(),
            "rules": [rule.to_dict() for rule in state.rules],
            "pending": [rule.id for rule in state.rules if session.is_pending(rule.id)],
            "required": validator.validate_required(session).to_dict(),
        }

    def _cart_payload(cart: Cart) -> dict[str, Any]:
        resolver = ConstraintResolver(constraints.list_for_items(cart.items()))
        return {
            "cart_id": cart.cart_id,
            "lines": [_line_payload(line) for line in cart.lines],
            "total": format_currency(calculator.cart_total(cart.lines)),
            "item_count": calculator.item_count(cart.lines),
            "warnings": [
                constraint.message or requirement_message(constraint.target, constraint.related)
                for constraint in resolver.unsatisfied_requirements(cart.items())
            ],
        }

    def _line_payload(line: CartLine) -> dict[str, Any]:
        return {**line.to_dict(), "price": calculator.breakdown(line).to_dict()}

    def _customizations(body: dict[str, Any]) -> list[CustomizationInput]:
        session_id = body.get("session_id")
        if session_id:
            return _session(str(session_id)).build_inputs()
        return [CustomizationInput.from_payload(entry) for entry in body.get("customizations") or []]

    async def _validated_customizations(
        body: dict[str, Any],
    ) -> tuple[list[CustomizationInput], RemoteValidationResult | None]:
        """Inputs for a cart line; a session's answers must pass validation first."""
        session_id = body.get("session_id")
        if not session_id:
            return _customizations(body), None
        session = _session(str(session_id))
        result = await validator.validate(session)
        return session.build_inputs(), result

    def _invalid(result: RemoteValidationResult) -> Any:
        return _error("customization is not valid", 422, errors=result.errors, warnings=result.warnings)

    async def _start_session(
        item_type: ItemType,
        item_id: str,
        owner: str | None = None,
    ) -> tuple[str | None, CustomizationSession | None, Any]:
        config = await backend.fetch_customization_config(item_type, item_id)
        if not config.allows_customization:
            return None, None, config
        session = CustomizationSession(previews)
        session.initialize(item_type, item_id, config.rules)
        session_id = sessions.open(session, owner)
        app.logger.info(
            "session_created",
            extra={"session_id": session_id, "item_type": item_type.value, "item_id": item_id, "owner": owner},
        )
        return session_id, session, config

    @app.post("/api/sessions")
    async def create_session() -> Any:
        body = _json_body()
        item_type = _item_type(str(body.get("item_type", ItemType.PRODUCT.value)))
        item_id = str(body["item_id"])
        owner = str(body["owner"]) if body.get("owner") else None
        session_id, session, config = await _start_session(item_type, item_id, owner)
        if session is None:
            return jsonify({"session_id": None, "allows_customization": False, "rules": []})
        payload = _session_payload(session_id, session)
        payload["allows_customization"] = True
        payload["layouts"] = [
            {"id": layout.id, "name": layout.name, "image_url": layout.image_url} for layout in config.layouts
        ]
        return jsonify(payload), 201

    @app.get("/api/sessions/<session_id>")
    def get_session(session_id: str) -> Any:
        return jsonify(_session_payload(session_id, _session(session_id)))

    @app.delete("/api/sessions/<session_id>")
    def close_session(session_id: str) -> Any:
        if not sessions.close(session_id):
            abort(404, description="unknown session")
        return jsonify({"status": "deleted"})

    @app.put("/api/sessions/<session_id>/answers/<rule_id>")
    def put_answer(session_id: str, rule_id: str) -> Any:
        session = _session(session_id)
        body = _json_body()
        entry = session.update_from_payload(rule_id, dict(body.get("data") or {}), body.get("selected_layout_id"))
        return jsonify(entry.to_dict())

    @app.delete("/api/sessions/<session_id>/answers/<rule_id>")
    def delete_answer(session_id: str, rule_id: str) -> Any:
        _session(session_id).remove(rule_id)
        return jsonify({"status": "deleted"})

    @app.post("/api/sessions/<session_id>/photos/<rule_id>")
    async def upload_photos(session_id: str, rule_id: str) -> Any:
        session = _session(session_id)
        files = [
            UploadedFile(
                file_name=storage.filename or "upload",
                mime_type=storage.mimetype or "application/octet-stream",
                source=storage.read(),
            )
            for storage in request.files.getlist("photos")
        ]
        if not files:
            return _error("no photos uploaded", 400)
        entry = await session.add_photos(rule_id, files)
        if entry is None:
            return _error("session changed while photos were processed", 409)
        return jsonify(entry.to_dict())

    @app.delete("/api/sessions/<session_id>/photos/<rule_id>/<int:position>")
    def delete_photo(session_id: str, rule_id: str, position: int) -> Any:
        entry = _session(session_id).remove_photo(rule_id, position)
        return jsonify(entry.to_dict() if entry else {"ruleId": rule_id, "data": None})

    @app.post("/api/sessions/<session_id>/options/<rule_id>")
    async def select_option(session_id: str, rule_id: str) -> Any:
        session = _session(session_id)
        state = session.require_state()
        body = _json_body()
        option_id = str(body["option_id"])

        lookups = [(state.item_type, state.item_id), (ItemType.ADDITIONAL, option_id)]
        results = await asyncio.gather(
            *(backend.get_item_constraints(item_type, item_id) for item_type, item_id in lookups),
            return_exceptions=True,
        )
        relevant: list[ItemConstraint] = []
        for result in results:
            if isinstance(result, BackendError):
                app.logger.warning("option_constraints_unavailable", extra={"session_id": session_id, "error": str(result)})
                continue
            if isinstance(result, BaseException):
                raise result
            relevant.extend(result)

        other_selections: dict[str, list[OptionAnswer]] = {}
        for other_id in body.get("related_sessions") or []:
            other = sessions.get(str(other_id))
            if other is not None and other.state is not None:
                other_selections[other.state.item_id] = other.selected_options()

        outcome = session.select_option(rule_id, option_id, relevant, other_selections)
        if not outcome.applied:
            return jsonify(outcome.to_dict()), 409
        return jsonify(outcome.to_dict())

    @app.post("/api/sessions/<session_id>/validate")
    async def validate_session(session_id: str) -> Any:
        result = await validator.validate(_session(session_id))
        return jsonify(result.to_dict())

    @app.post("/api/sessions/<session_id>/images/validate")
    async def validate_images(session_id: str) -> Any:
        session = _session(session_id)
        body = request.get_json(silent=True) or {}
        result = await validator.validate_images(session)
        removed: list[str] = []
        if not result.valid and body.get("prune"):
            removed = session.remove_invalid_images(result.invalid_images)
        return jsonify({**result.to_dict(), "removed_rules": removed})

    @app.post("/api/sessions/<session_id>/preview")
    async def render_preview(session_id: str) -> Any:
        session = _session(session_id)
        state = session.require_state()
        customization_data = {entry.rule_id: entry.data.to_dict() for entry in session.build_inputs()}
        return jsonify(await backend.generate_preview(state.item_id, customization_data))

    @app.post("/api/sessions/<session_id>/order-payload")
    async def order_payload(session_id: str) -> Any:
        body = _json_body()
        session = _session(session_id)
        result = await validator.validate(session)
        if not result.valid:
            return _invalid(result)
        payload = session.build_order_payload(str(body.get("title", "")))
        return jsonify({**payload.to_dict(), "warnings": result.warnings})

    @app.post("/api/sessions/<session_id>/draft")
    def save_draft(session_id: str) -> Any:
        session = _session(session_id)
        body = request.get_json(silent=True) or {}
        key = drafts.save(session, body.get("draft_key"))
        return jsonify({"draft_key": key}), 201

    @app.post("/api/sessions/restore")
    async def restore_session() -> Any:
        body = _json_body()
        key = body.get("draft_key") or draft_key(_item_type(str(body["item_type"])), str(body["item_id"]))
        stored = drafts.load(key)
        if stored is None:
            abort(404, description="no draft stored")
        item_type = ItemType(stored["itemType"])
        config = await backend.fetch_customization_config(item_type, stored["itemId"])
        session = CustomizationSession(previews)
        if not drafts.restore(session, key, config.rules):
            abort(404, description="no draft stored")
        session_id = sessions.open(session, str(body["owner"]) if body.get("owner") else None)
        return jsonify(_session_payload(session_id, session)), 201

    @app.get("/api/drafts")
    def list_drafts() -> Any:
        drafts.cleanup_expired()
        return jsonify({"drafts": drafts.list_drafts()})

    @app.get("/api/previews/<token>")
    def get_preview(token: str) -> Any:
        resolved = previews.resolve(f"{BLOB_PREFIX}{token}")
        if resolved is None:
            abort(404, description="preview not found")
        content, mime_type = resolved
        return Response(content, mimetype=mime_type)

    @app.get("/api/carts/<cart_id>")
    def get_cart(cart_id: str) -> Any:
        return jsonify(_cart_payload(carts.load(cart_id)))

    @app.post("/api/carts/<cart_id>/lines")
    async def add_line(cart_id: str) -> Any:
        body = _json_body()
        quantity = int(body.get("quantity", 1))
        product_id = str(body["product_id"])
        additional_ids = [str(item) for item in body.get("additional_ids") or []]
        customizations, validation = await _validated_customizations(body)
        if validation is not None and not validation.valid:
            return _invalid(validation)

        product, *additionals = await asyncio.gather(
            backend.get_product(product_id),
            *(backend.get_additional(additional_id) for additional_id in additional_ids),
        )

        cart = carts.load(cart_id)
        candidates = [ItemRef.product(product.id, product.name)]
        candidates.extend(ItemRef.additional(additional.id, additional.name) for additional in additionals)
        composer = CartComposer(ConstraintResolver(constraints.list_for_items([*candidates, *cart.items()])))
        result = composer.add_or_merge(
            cart,
            product.id,
            quantity,
            product.price,
            additionals,
            customizations,
            discount_percent=product.discount,
            product_name=product.name,
            additional_colors=body.get("additional_colors"),
        )
        if not result.applied or result.line is None:
            return _error(result.reason or "constraint violation", 409, constraint_id=result.constraint_id)
        carts.save(cart)
        status_code = 200 if result.merged else 201
        return jsonify({"merged": result.merged, "line": _line_payload(result.line), "cart": _cart_payload(cart)}), status_code

    @app.patch("/api/carts/<cart_id>/lines/<fingerprint>")
    def update_line_quantity(cart_id: str, fingerprint: str) -> Any:
        body = _json_body()
        cart = carts.load(cart_id)
        CartComposer().update_quantity(cart, fingerprint, int(body["quantity"]))
        carts.save(cart)
        return jsonify(_cart_payload(cart))

    @app.put("/api/carts/<cart_id>/lines/<fingerprint>/customizations")
    async def replace_line_customizations(cart_id: str, fingerprint: str) -> Any:
        body = _json_body()
        customizations, validation = await _validated_customizations(body)
        if validation is not None and not validation.valid:
            return _invalid(validation)
        cart = carts.load(cart_id)
        line = CartComposer().replace_customizations(cart, fingerprint, customizations)
        carts.save(cart)
        return jsonify({"line": _line_payload(line), "cart": _cart_payload(cart)})

    @app.delete("/api/carts/<cart_id>/lines")
    def remove_line(cart_id: str) -> Any:
        body = _json_body()
        cart = carts.load(cart_id)
        removed = CartComposer().remove(
            cart,
            str(body["product_id"]),
            [str(item) for item in body.get("additional_ids") or []],
            _customizations(body),
            body.get("additional_colors"),
        )
        if not removed:
            abort(404, description="cart line not found")
        carts.save(cart)
        return jsonify(_cart_payload(cart))

    return app
