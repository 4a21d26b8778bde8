from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .conditions import CodeRunner, ConditionEvaluator, DisabledCodeRunner, EvaluationContext, ExpressionCodeRunner
from .db import (
    RECORD_COLUMNS,
    connect,
    fetch_candidates,
    fetch_entity_records,
    fetch_record,
    init_db,
    json_dumps,
    next_version,
    record_audit,
    row_to_record,
)
from .flow_validation import validate_flow
from .models import FLOW_END, ConfigRecord, ConfigScope, ConfigStatus, ConfigType, FlowConfig, FlowParseError, ScopeType
from .navigation import UnknownScreenError, decide, journey_policy
from .resolver import (
    ConfigNotFoundError,
    resolve,
    resolve_flow,
    validate_activation,
    validate_scope,
    validate_scope_change,
)

LIST_FILTERS = {
    "type": "config_type",
    "status": "status",
    "entityId": "entity_id",
    "productCode": "product_code",
    "partnerCode": "partner_code",
    "branchCode": "branch_code",
    "scopeType": "scope_type",
}


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("journey_configurator").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _build_code_runner(app: Flask) -> CodeRunner:
    mode = str(app.config["CUSTOM_CODE_RUNNER"]).strip().lower()
    if mode == "disabled":
        return DisabledCodeRunner()
    if mode != "expression":
        app.logger.warning("unknown_code_runner", extra={"mode": mode})
    return ExpressionCodeRunner(max_workers=int(app.config["CUSTOM_CODE_MAX_WORKERS"]))


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _scope_from_args() -> ConfigScope:
    return ConfigScope.from_dict(
        {
            "productCode": request.args.get("productCode", ""),
            "partnerCode": request.args.get("partnerCode"),
            "branchCode": request.args.get("branchCode"),
        }
    )


def _flow_document(record: ConfigRecord) -> dict[str, Any]:
    return {
        **dict(record.payload),
        "flowId": record.entity_id,
        "scope": record.scope.to_dict(),
        "version": record.version,
        "status": record.status.value,
    }


def _log_config_change(app: Flask, action: str, record: ConfigRecord) -> None:
    app.logger.info(
        "config_state_changed",
        extra={
            "action": action,
            "config_id": record.id,
            "config_type": record.config_type.value,
            "entity_id": record.entity_id,
            "scope": record.scope.to_dict(),
            "status": record.status.value,
            "version": record.version,
        },
    )


def create_app(database_path: str | None = None, **overrides: Any) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "journey-configurator")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("JOURNEY_DB_PATH", "./journeys.db")
    app.config["CUSTOM_CODE_RUNNER"] = os.environ.get("CUSTOM_CODE_RUNNER", "expression")
    app.config["CUSTOM_CODE_MAX_WORKERS"] = int(os.environ.get("CUSTOM_CODE_MAX_WORKERS", "4"))
    app.config.update(overrides)
    init_db(_db_path(app))
    evaluator = ConditionEvaluator(_build_code_runner(app))

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/configs")
    def create_config() -> Any:
        body = _json_body()
        try:
            config_type = ConfigType(str(body.get("configType") or ("FLOW" if "flowId" in body else "SCREEN")).upper())
        except ValueError:
            return jsonify({"error": "configType must be SCREEN or FLOW"}), 400
        entity_id = str(body.get("entityId") or body.get("screenId") or body.get("flowId") or "").strip()
        if not entity_id:
            return jsonify({"error": "entityId is required"}), 400
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            return jsonify({"error": "payload must be an object"}), 400

        try:
            scope = ConfigScope.from_dict(body.get("scope") or {})
        except FlowParseError as exc:
            return jsonify({"error": str(exc)}), 400
        scope_check = validate_scope(scope)
        if not scope_check.is_valid:
            return jsonify({"error": "invalid scope", "errors": scope_check.errors}), 400
        if config_type is ConfigType.FLOW:
            if scope.type is ScopeType.BRANCH:
                return jsonify({"error": "flows can only be scoped to PRODUCT or PARTNER"}), 400
            try:
                FlowConfig.from_dict({**payload, "flowId": entity_id, "scope": scope.to_dict()})
            except FlowParseError as exc:
                return jsonify({"error": str(exc)}), 400

        created_by = str(body.get("createdBy") or "system")
        conn = connect(_db_path(app))
        with conn:
            version = next_version(conn, config_type, entity_id, scope)
            cursor = conn.execute(
                """
                INSERT INTO config_records(config_type, entity_id, scope_type, product_code, partner_code,
                                           branch_code, status, version, payload, created_by)
                VALUES (?, ?, ?, ?, ?, ?, 'DRAFT', ?, ?, ?)
                """,
                (
                    config_type.value,
                    entity_id,
                    scope.type.value,
                    scope.product_code,
                    scope.partner_code,
                    scope.branch_code,
                    version,
                    json_dumps(payload),
                    created_by,
                ),
            )
            record = fetch_record(conn, int(cursor.lastrowid))
            record_audit(conn, record, "CREATE", {"version": version}, created_by, body.get("changeReason"))
        _log_config_change(app, "create", record)
        return jsonify(record.to_dict()), 201

    @app.get("/api/configs")
    def list_configs() -> Any:
        clauses: list[str] = []
        params: list[Any] = []
        for arg, column in LIST_FILTERS.items():
            value = request.args.get(arg, "").strip()
            if value:
                clauses.append(f"{column} = ?")
                params.append(value.upper() if arg in {"type", "status", "scopeType"} else value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = connect(_db_path(app))
        rows = conn.execute(
            f"SELECT {RECORD_COLUMNS} FROM config_records {where} ORDER BY entity_id, version DESC, id DESC",
            params,
        ).fetchall()
        return jsonify({"items": [row_to_record(row).to_dict() for row in rows], "total": len(rows)})

    @app.get("/api/configs/<int:config_id>")
    def get_config(config_id: int) -> Any:
        record = fetch_record(connect(_db_path(app)), config_id)
        if record is None:
            return jsonify({"error": "configuration not found"}), 404
        return jsonify(record.to_dict())

    @app.put("/api/configs/<int:config_id>")
    def update_config(config_id: int) -> Any:
        body = _json_body()
        conn = connect(_db_path(app))
        record = fetch_record(conn, config_id)
        if record is None:
            return jsonify({"error": "configuration not found"}), 404
        if record.status is not ConfigStatus.DRAFT:
            return jsonify({"error": f"{record.status.value} configurations cannot be edited"}), 409
        if body.get("scope") is not None:
            try:
                scope_change = validate_scope_change(record.scope, ConfigScope.from_dict(body["scope"]))
            except FlowParseError as exc:
                return jsonify({"error": str(exc)}), 400
            if not scope_change.is_valid:
                return jsonify({"error": "invalid scope", "errors": scope_change.errors}), 400
        payload = body.get("payload")
        if not isinstance(payload, dict):
            return jsonify({"error": "payload must be an object"}), 400
        if record.config_type is ConfigType.FLOW:
            try:
                FlowConfig.from_dict({**payload, "flowId": record.entity_id, "scope": record.scope.to_dict()})
            except FlowParseError as exc:
                return jsonify({"error": str(exc)}), 400

        user_name = str(body.get("updatedBy") or "system")
        with conn:
            conn.execute(
                "UPDATE config_records SET payload = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (json_dumps(payload), config_id),
            )
            record = fetch_record(conn, config_id)
            record_audit(conn, record, "UPDATE", {"payload": "replaced"}, user_name, body.get("changeReason"))
        _log_config_change(app, "update", record)
        return jsonify(record.to_dict())

    @app.post("/api/configs/<int:config_id>/activate")
    def activate_config(config_id: int) -> Any:
        body = request.get_json(silent=True) or {}
        conn = connect(_db_path(app))
        record = fetch_record(conn, config_id)
        if record is None:
            return jsonify({"error": "configuration not found"}), 404
        if record.status is ConfigStatus.DEPRECATED:
            return jsonify({"error": "deprecated configurations cannot be reactivated"}), 409
        if record.status is ConfigStatus.ACTIVE:
            return jsonify(record.to_dict())

        validation = None
        if record.config_type is ConfigType.FLOW:
            try:
                validation = validate_flow(_flow_document(record))
            except FlowParseError as exc:
                return jsonify({"error": str(exc)}), 422
            if not validation.is_valid:
                return jsonify({"error": "flow validation failed", "validation": validation.to_dict()}), 422

        check = validate_activation(record, fetch_entity_records(conn, record.config_type, record.entity_id))
        if not check.can_activate and not body.get("deprecateExisting"):
            return jsonify({"error": "activation conflict", "activation": check.to_dict()}), 409

        user_name = str(body.get("user") or "system")
        with conn:
            for conflicting_id in check.conflicting_ids:
                conn.execute(
                    "UPDATE config_records SET status = 'DEPRECATED', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (conflicting_id,),
                )
                deprecated = fetch_record(conn, int(conflicting_id))
                record_audit(conn, deprecated, "DEPRECATE", {"replacedBy": config_id}, user_name)
                _log_config_change(app, "deprecate", deprecated)
            conn.execute(
                "UPDATE config_records SET status = 'ACTIVE', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (config_id,),
            )
            record = fetch_record(conn, config_id)
            record_audit(conn, record, "ACTIVATE", {"status": "ACTIVE"}, user_name, body.get("changeReason"))
        _log_config_change(app, "activate", record)
        response = {**record.to_dict(), "activation": check.to_dict()}
        if validation is not None:
            response["validation"] = validation.to_dict()
        return jsonify(response)

    @app.post("/api/configs/<int:config_id>/deprecate")
    def deprecate_config(config_id: int) -> Any:
        body = request.get_json(silent=True) or {}
        conn = connect(_db_path(app))
        record = fetch_record(conn, config_id)
        if record is None:
            return jsonify({"error": "configuration not found"}), 404
        if record.status is ConfigStatus.DEPRECATED:
            return jsonify(record.to_dict())
        with conn:
            conn.execute(
                "UPDATE config_records SET status = 'DEPRECATED', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (config_id,),
            )
            record = fetch_record(conn, config_id)
            record_audit(
                conn, record, "DEPRECATE", {"status": "DEPRECATED"}, str(body.get("user") or "system"),
                body.get("changeReason"),
            )
        _log_config_change(app, "deprecate", record)
        return jsonify(record.to_dict())

    @app.get("/api/configs/<int:config_id>/audit")
    def config_audit(config_id: int) -> Any:
        conn = connect(_db_path(app))
        if fetch_record(conn, config_id) is None:
            return jsonify({"error": "configuration not found"}), 404
        rows = conn.execute(
            """
            SELECT id, config_type, action, user_name, changes, change_reason, created_at
            FROM audit_log WHERE config_id = ? ORDER BY id
            """,
            (config_id,),
        ).fetchall()
        return jsonify(
            {
                "entries": [
                    {
                        "auditId": row["id"],
                        "configType": row["config_type"],
                        "action": row["action"],
                        "userName": row["user_name"],
                        "changes": json.loads(row["changes"]),
                        "changeReason": row["change_reason"],
                        "timestamp": row["created_at"],
                    }
                    for row in rows
                ]
            }
        )

    @app.get("/api/resolve")
    def resolve_screen() -> Any:
        screen_id = request.args.get("screenId", "").strip()
        scope = _scope_from_args()
        if not screen_id or not scope.product_code:
            return jsonify({"error": "screenId and productCode are required"}), 400
        candidates = fetch_candidates(connect(_db_path(app)), ConfigType.SCREEN, screen_id, scope.product_code)
        try:
            resolved = resolve(screen_id, scope, candidates)
        except ConfigNotFoundError as exc:
            return jsonify({"error": str(exc), "inheritanceChain": exc.chain}), 404
        return jsonify(resolved.to_dict())

    @app.get("/api/flows/resolve")
    def resolve_flow_config() -> Any:
        flow_id = request.args.get("flowId", "").strip()
        scope = _scope_from_args()
        if not flow_id or not scope.product_code:
            return jsonify({"error": "flowId and productCode are required"}), 400
        candidates = fetch_candidates(connect(_db_path(app)), ConfigType.FLOW, flow_id, scope.product_code)
        try:
            resolved = resolve_flow(flow_id, scope, candidates)
        except ConfigNotFoundError as exc:
            return jsonify({"error": str(exc), "inheritanceChain": exc.chain}), 404
        return jsonify(resolved.to_dict())

    @app.post("/api/flows/validate")
    def validate_flow_config() -> Any:
        body = _json_body()
        document = body.get("flow", body)
        try:
            result = validate_flow(document)
        except FlowParseError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(result.to_dict())

    @app.post("/api/runtime/next-screen")
    def next_screen() -> Any:
        body = _json_body()
        flow_id = str(body.get("flowId") or "").strip()
        current_screen = str(body.get("currentScreen") or body.get("screenId") or "").strip()
        if not flow_id or not current_screen:
            return jsonify({"error": "flowId and currentScreen are required"}), 400
        try:
            scope = ConfigScope.from_dict(body.get("scope") or {})
        except FlowParseError as exc:
            return jsonify({"error": str(exc)}), 400
        context_payload = body.get("context") or {}
        if not isinstance(context_payload, dict):
            return jsonify({"error": "context must be an object"}), 400

        conn = connect(_db_path(app))
        try:
            resolved_flow = resolve_flow(
                flow_id, scope, fetch_candidates(conn, ConfigType.FLOW, flow_id, scope.product_code)
            )
        except ConfigNotFoundError as exc:
            return jsonify({"error": str(exc), "inheritanceChain": exc.chain}), 404
        try:
            flow = FlowConfig.from_dict(_flow_document(resolved_flow.config))
        except FlowParseError as exc:
            app.logger.error("stored_flow_unparseable", extra={"flow_id": flow_id, "error": str(exc)})
            return jsonify({"error": f"stored flow is unparseable: {exc}"}), 500

        try:
            decision = decide(flow, current_screen, EvaluationContext.from_dict(context_payload), evaluator)
        except UnknownScreenError as exc:
            return jsonify({"error": str(exc)}), 404

        response: dict[str, Any] = {
            "decision": decision.to_dict(),
            "nextScreenId": decision.target_screen,
            "flowResolvedFrom": resolved_flow.resolved_from.value,
            "policy": journey_policy(flow.screen(current_screen)).to_dict(),
            "screenConfig": None,
        }
        target = decision.target_screen
        if target and target != FLOW_END:
            screen_candidates = fetch_candidates(conn, ConfigType.SCREEN, target, scope.product_code)
            try:
                response["screenConfig"] = resolve(target, scope, screen_candidates).to_dict()
            except ConfigNotFoundError as exc:
                response["screenConfigError"] = str(exc)
        return jsonify(response)

    return app
