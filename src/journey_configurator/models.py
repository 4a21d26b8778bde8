from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from .operators import MISSING, Operator, UnknownOperatorError, coerce_value, parse_operator

FLOW_END = "__FLOW_END__"
DEFAULT_CUSTOM_CODE_TIMEOUT_MS = 1000


class FlowParseError(ValueError):
    """Raised when a configuration document cannot be read into the flow model."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class ScopeType(str, Enum):
    PRODUCT = "PRODUCT"
    PARTNER = "PARTNER"
    BRANCH = "BRANCH"


class ConfigStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"


class ConfigType(str, Enum):
    SCREEN = "SCREEN"
    FLOW = "FLOW"


class ConditionSource(str, Enum):
    FORM_DATA = "FORM_DATA"
    SERVICE_RESPONSE = "SERVICE_RESPONSE"
    APPLICATION_STATE = "APPLICATION_STATE"
    USER_PROFILE = "USER_PROFILE"
    CUSTOM_CODE = "CUSTOM_CODE"


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    NAVIGATE = "NAVIGATE"
    CALL_SERVICE = "CALL_SERVICE"
    SKIP = "SKIP"
    END_FLOW = "END_FLOW"
    LOOP_BACK = "LOOP_BACK"


class OnErrorPolicy(str, Enum):
    FAIL_FLOW = "FAIL_FLOW"
    CONTINUE = "CONTINUE"
    ROUTE_TO_SCREEN = "ROUTE_TO_SCREEN"


SERVICE_PHASES = ("preLoad", "onSubmit", "background")


def _enum(enum_cls: type[Enum], raw: Any, path: str) -> Any:
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise FlowParseError(path, f"expected one of {allowed}, got {raw!r}") from None


def _mapping(raw: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise FlowParseError(path, f"expected an object, got {type(raw).__name__}")
    return raw


def _sequence(raw: Any, path: str) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise FlowParseError(path, f"expected an array, got {type(raw).__name__}")
    return list(raw)


def _int(raw: Any, path: str, default: int | None = None) -> int | None:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise FlowParseError(path, "expected an integer, got a boolean")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise FlowParseError(path, f"expected an integer, got {raw!r}") from None


def _bool(raw: Any, path: str, default: bool | None = None) -> bool | None:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    raise FlowParseError(path, f"expected a boolean, got {raw!r}")


def _optional_str(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True, frozen=True)
class ConfigScope:
    type: ScopeType
    product_code: str
    partner_code: str | None = None
    branch_code: str | None = None

    @classmethod
    def from_dict(cls, raw: Any, path: str = "scope") -> ConfigScope:
        data = _mapping(raw, path)
        partner_code = _optional_str(data.get("partnerCode"))
        branch_code = _optional_str(data.get("branchCode"))
        raw_type = data.get("type")
        if raw_type is None or raw_type == "":
            scope_type = ScopeType.BRANCH if branch_code else ScopeType.PARTNER if partner_code else ScopeType.PRODUCT
        else:
            scope_type = _enum(ScopeType, raw_type, f"{path}.type")
        return cls(
            type=scope_type,
            product_code=str(data.get("productCode") or "").strip(),
            partner_code=partner_code,
            branch_code=branch_code,
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "type": self.type.value,
                "productCode": self.product_code,
                "partnerCode": self.partner_code,
                "branchCode": self.branch_code,
            }
        )


@dataclass(slots=True, frozen=True)
class CustomCode:
    language: str
    code: str
    timeout_ms: int = DEFAULT_CUSTOM_CODE_TIMEOUT_MS

    def to_dict(self) -> dict[str, Any]:
        return {"language": self.language, "code": self.code, "timeoutMs": self.timeout_ms}


@dataclass(slots=True, frozen=True)
class Condition:
    source: ConditionSource
    operator: Operator | None = None
    field: str | None = None
    value: Any = MISSING
    custom_code: CustomCode | None = None
    id: str | None = None
    # authored operator text kept when it did not parse
    raw_operator: str | None = None

    def defects(self) -> list[str]:
        """Reasons this leaf can never match; it still parses so drafts stay editable."""
        if self.source is ConditionSource.CUSTOM_CODE:
            return [] if self.custom_code is not None else ["has no custom code"]
        problems = []
        if self.operator is None:
            problems.append(f'has an unknown operator "{self.raw_operator}"' if self.raw_operator else "has no operator")
        if self.field is None:
            problems.append("has no field")
        return problems

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "source": self.source.value}
        if self.custom_code is not None:
            payload["customCode"] = self.custom_code.to_dict()
        elif self.source is not ConditionSource.CUSTOM_CODE:
            payload["field"] = self.field
            payload["operator"] = self.operator.value if self.operator else self.raw_operator
            if self.value is not MISSING:
                payload["value"] = list(self.value) if isinstance(self.value, tuple) else self.value
        return _compact(payload)


@dataclass(slots=True, frozen=True)
class ConditionGroup:
    operator: LogicOperator
    conditions: tuple[ConditionTree, ...] = ()
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "operator": self.operator.value,
                "conditions": [child.to_dict() for child in self.conditions],
            }
        )


ConditionTree = Union[Condition, ConditionGroup]


def parse_condition_tree(raw: Any, path: str = "condition") -> ConditionTree:
    data = _mapping(raw, path)
    node_id = _optional_str(data.get("id"))
    if "conditions" in data:
        raw_operator = data.get("logicOperator") or data.get("operator") or LogicOperator.AND.value
        logic = _enum(LogicOperator, raw_operator, f"{path}.operator")
        children = tuple(
            parse_condition_tree(child, f"{path}.conditions[{index}]")
            for index, child in enumerate(_sequence(data["conditions"], f"{path}.conditions"))
        )
        return ConditionGroup(operator=logic, conditions=children, id=node_id)

    if "source" not in data:
        raise FlowParseError(path, "condition requires a source or a conditions list")
    source = _enum(ConditionSource, data["source"], f"{path}.source")

    if source is ConditionSource.CUSTOM_CODE:
        spec = data.get("customCode")
        spec = _mapping(spec, f"{path}.customCode") if spec is not None else data
        code = str(spec.get("code") or "")
        if not code.strip():
            return Condition(source=source, id=node_id)
        timeout = _int(
            spec.get("timeoutMs", spec.get("timeout")),
            f"{path}.customCode.timeoutMs",
            DEFAULT_CUSTOM_CODE_TIMEOUT_MS,
        )
        return Condition(
            source=source,
            custom_code=CustomCode(
                language=str(spec.get("language") or "PYTHON").strip().upper(),
                code=code,
                timeout_ms=timeout,
            ),
            id=node_id,
        )

    raw_operator = _optional_str(data.get("operator"))
    try:
        operator = parse_operator(raw_operator)
    except UnknownOperatorError:
        operator = None
    value = coerce_value(data["value"]) if "value" in data else MISSING
    return Condition(
        source=source,
        operator=operator,
        field=_optional_str(data.get("field")),
        value=value,
        id=node_id,
        raw_operator=raw_operator if operator is None else None,
    )


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 0
    retry_delay_ms: int = 0


@dataclass(slots=True, frozen=True)
class CachePolicy:
    enabled: bool = False
    ttl_seconds: int = 0
    cache_key: str | None = None


@dataclass(slots=True, frozen=True)
class ServiceCall:
    service_id: str
    service_name: str = ""
    endpoint: str = ""
    method: str = "POST"
    timeout_ms: int | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    on_error: OnErrorPolicy | None = None
    error_screen: str | None = None
    cache_policy: CachePolicy = field(default_factory=CachePolicy)

    @classmethod
    def from_dict(cls, raw: Any, path: str = "service") -> ServiceCall:
        data = _mapping(raw, path)
        retry = data.get("retryPolicy") or {}
        cache = data.get("cachePolicy") or {}
        _mapping(retry, f"{path}.retryPolicy")
        _mapping(cache, f"{path}.cachePolicy")
        on_error = data.get("onError")
        return cls(
            service_id=str(data.get("serviceId") or "").strip(),
            service_name=str(data.get("serviceName") or ""),
            endpoint=str(data.get("endpoint") or ""),
            method=str(data.get("method") or "POST").upper(),
            timeout_ms=_int(data.get("timeout", data.get("timeoutMs")), f"{path}.timeout"),
            retry_policy=RetryPolicy(
                max_retries=max(0, _int(retry.get("maxRetries"), f"{path}.retryPolicy.maxRetries", 0)),
                retry_delay_ms=max(0, _int(retry.get("retryDelayMs"), f"{path}.retryPolicy.retryDelayMs", 0)),
            ),
            on_error=_enum(OnErrorPolicy, on_error, f"{path}.onError") if on_error else None,
            error_screen=_optional_str(data.get("errorScreen")),
            cache_policy=CachePolicy(
                enabled=_bool(cache.get("enabled"), f"{path}.cachePolicy.enabled", False),
                ttl_seconds=max(0, _int(cache.get("ttlSeconds"), f"{path}.cachePolicy.ttlSeconds", 0)),
                cache_key=_optional_str(cache.get("cacheKey")),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "serviceId": self.service_id,
                "serviceName": self.service_name,
                "endpoint": self.endpoint,
                "method": self.method,
                "timeout": self.timeout_ms,
                "retryPolicy": {
                    "maxRetries": self.retry_policy.max_retries,
                    "retryDelayMs": self.retry_policy.retry_delay_ms,
                },
                "onError": self.on_error.value if self.on_error else None,
                "errorScreen": self.error_screen,
                "cachePolicy": _compact(
                    {
                        "enabled": self.cache_policy.enabled,
                        "ttlSeconds": self.cache_policy.ttl_seconds,
                        "cacheKey": self.cache_policy.cache_key,
                    }
                ),
            }
        )


@dataclass(slots=True, frozen=True)
class NavigationAction:
    type: ActionType
    target_screen: str | None = None
    service: ServiceCall | None = None
    metadata: Mapping[str, Any] | None = None

    @classmethod
    def from_dict(cls, raw: Any, path: str = "action") -> NavigationAction:
        data = _mapping(raw, path)
        service = data.get("service")
        metadata = data.get("metadata")
        if metadata is not None:
            _mapping(metadata, f"{path}.metadata")
        return cls(
            type=_enum(ActionType, data.get("type"), f"{path}.type"),
            target_screen=_optional_str(data.get("targetScreen")),
            service=ServiceCall.from_dict(service, f"{path}.service") if service is not None else None,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "type": self.type.value,
                "targetScreen": self.target_screen,
                "service": self.service.to_dict() if self.service else None,
                "metadata": dict(self.metadata) if self.metadata is not None else None,
            }
        )


@dataclass(slots=True, frozen=True)
class NavigationCondition:
    id: str
    name: str = ""
    priority: int = 0
    enabled: bool = True
    condition: ConditionTree | None = None
    action: NavigationAction | None = None

    @classmethod
    def from_dict(cls, raw: Any, path: str = "condition") -> NavigationCondition:
        data = _mapping(raw, path)
        condition = data.get("condition")
        action = data.get("action")
        return cls(
            id=str(data.get("id") or "").strip(),
            name=str(data.get("name") or ""),
            priority=_int(data.get("priority"), f"{path}.priority", 0),
            enabled=_bool(data.get("enabled"), f"{path}.enabled", True),
            condition=parse_condition_tree(condition, f"{path}.condition") if condition is not None else None,
            action=NavigationAction.from_dict(action, f"{path}.action") if action is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "priority": self.priority,
                "enabled": self.enabled,
                "condition": self.condition.to_dict() if self.condition else None,
                "action": self.action.to_dict() if self.action else None,
            }
        )


@dataclass(slots=True, frozen=True)
class FlowScreenConfig:
    screen_id: str
    display_name: str = ""
    default_next: str = ""
    conditions: tuple[NavigationCondition, ...] = ()
    allow_back: bool | None = None
    allow_skip: bool | None = None
    max_retries: int | None = None
    services: Mapping[str, tuple[ServiceCall, ...]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any, path: str = "screen") -> FlowScreenConfig:
        data = _mapping(raw, path)
        screen_id = _optional_str(data.get("screenId"))
        if screen_id is None:
            raise FlowParseError(f"{path}.screenId", "screenId is required")
        raw_services = data.get("services") or {}
        _mapping(raw_services, f"{path}.services")
        services = {
            phase: tuple(
                ServiceCall.from_dict(item, f"{path}.services.{phase}[{index}]")
                for index, item in enumerate(_sequence(raw_services.get(phase), f"{path}.services.{phase}"))
            )
            for phase in SERVICE_PHASES
            if raw_services.get(phase)
        }
        allow_back = data.get("allowBack")
        allow_skip = data.get("allowSkip")
        return cls(
            screen_id=screen_id,
            display_name=str(data.get("displayName") or "").strip(),
            default_next=str(data.get("defaultNext") or "").strip(),
            conditions=tuple(
                NavigationCondition.from_dict(item, f"{path}.conditions[{index}]")
                for index, item in enumerate(_sequence(data.get("conditions"), f"{path}.conditions"))
            ),
            allow_back=_bool(allow_back, f"{path}.allowBack"),
            allow_skip=_bool(allow_skip, f"{path}.allowSkip"),
            max_retries=_int(data.get("maxRetries"), f"{path}.maxRetries"),
            services=services,
        )

    def iter_services(self) -> list[tuple[str, ServiceCall]]:
        return [(phase, call) for phase in SERVICE_PHASES for call in self.services.get(phase, ())]

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "screenId": self.screen_id,
                "displayName": self.display_name,
                "defaultNext": self.default_next,
                "conditions": [condition.to_dict() for condition in self.conditions],
                "allowBack": self.allow_back,
                "allowSkip": self.allow_skip,
                "maxRetries": self.max_retries,
                "services": {
                    phase: [call.to_dict() for call in calls] for phase, calls in self.services.items()
                }
                or None,
            }
        )


@dataclass(slots=True, frozen=True)
class FlowConfig:
    flow_id: str
    scope: ConfigScope
    start_screen: str
    screens: tuple[FlowScreenConfig, ...] = ()
    version: int = 1
    status: ConfigStatus = ConfigStatus.DRAFT

    @classmethod
    def from_dict(cls, raw: Any, path: str = "") -> FlowConfig:
        data = _mapping(raw, path or "flow")
        prefix = f"{path}." if path else ""
        raw_scope = data.get("scope")
        if raw_scope is None:
            raw_scope = {key: data.get(key) for key in ("productCode", "partnerCode") if data.get(key)}
        status = data.get("status")
        return cls(
            flow_id=str(data.get("flowId") or "").strip(),
            scope=ConfigScope.from_dict(raw_scope, f"{prefix}scope"),
            start_screen=str(data.get("startScreen") or "").strip(),
            screens=tuple(
                FlowScreenConfig.from_dict(item, f"{prefix}screens[{index}]")
                for index, item in enumerate(_sequence(data.get("screens"), f"{prefix}screens"))
            ),
            version=_int(data.get("version"), f"{prefix}version", 1),
            status=_enum(ConfigStatus, status, f"{prefix}status") if status else ConfigStatus.DRAFT,
        )

    def screen(self, screen_id: str) -> FlowScreenConfig | None:
        return next((item for item in self.screens if item.screen_id == screen_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "version": self.version,
            "status": self.status.value,
            "scope": self.scope.to_dict(),
            "startScreen": self.start_screen,
            "screens": [screen.to_dict() for screen in self.screens],
        }


@dataclass(slots=True, frozen=True)
class ConfigRecord:
    id: int | str
    entity_id: str
    scope: ConfigScope
    status: ConfigStatus
    version: int = 1
    payload: Mapping[str, Any] = field(default_factory=dict)
    updated_at: str = ""
    config_type: ConfigType = ConfigType.SCREEN

    @classmethod
    def from_dict(cls, raw: Any, path: str = "record") -> ConfigRecord:
        data = _mapping(raw, path)
        entity_id = data.get("entityId") or data.get("screenId") or data.get("flowId")
        if not entity_id:
            raise FlowParseError(f"{path}.entityId", "screenId or flowId is required")
        config_type = data.get("configType") or (ConfigType.FLOW.value if "flowId" in data else ConfigType.SCREEN.value)
        return cls(
            id=data.get("id", data.get("configId", "")),
            entity_id=str(entity_id),
            scope=ConfigScope.from_dict(data.get("scope"), f"{path}.scope"),
            status=_enum(ConfigStatus, data.get("status", ConfigStatus.DRAFT.value), f"{path}.status"),
            version=_int(data.get("version"), f"{path}.version", 1),
            payload=_mapping(data.get("payload") or {}, f"{path}.payload"),
            updated_at=str(data.get("updatedAt") or ""),
            config_type=_enum(ConfigType, config_type, f"{path}.configType"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "configType": self.config_type.value,
            "entityId": self.entity_id,
            "scope": self.scope.to_dict(),
            "status": self.status.value,
            "version": self.version,
            "payload": dict(self.payload),
            "updatedAt": self.updated_at,
        }
