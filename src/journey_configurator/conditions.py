from __future__ import annotations

import ast
import functools
import logging
import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from types import CodeType, MappingProxyType
from typing import Any, Callable, Mapping, Protocol

from .models import Condition, ConditionGroup, ConditionSource, ConditionTree, LogicOperator
from .operators import MISSING, apply_operator

logger = logging.getLogger(__name__)

_EMPTY: Mapping[str, Any] = MappingProxyType({})

ALLOWED_CODE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "max": max,
    "min": min,
    "round": round,
    "str": str,
}

ALLOWED_CODE_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Call,
)

CODE_CONTEXT_NAMES = ("formData", "services", "applicationState", "userProfile")
WORKER_START_TIMEOUT_S = 10.0


class CodeExecutionError(RuntimeError):
    """Raised by a code runner when a custom-code condition cannot produce a result."""


class CodeTimeoutError(CodeExecutionError):
    """Raised when custom code exceeds its time budget."""


class UnsupportedLanguageError(CodeExecutionError):
    """Raised when a runner does not support the requested language."""


class UnsafeCodeError(CodeExecutionError):
    """Raised when custom code uses syntax outside the allowed expression subset."""


@dataclass(slots=True, frozen=True)
class Diagnostic:
    code: str
    message: str
    path: str = ""
    screen_id: str | None = None
    condition_id: str | None = None
    rule_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "code": self.code,
            "message": self.message,
            "path": self.path,
            "screenId": self.screen_id,
            "conditionId": self.condition_id,
            "ruleIndex": self.rule_index,
        }
        return {key: value for key, value in payload.items() if value not in (None, "")}


@dataclass(slots=True, frozen=True)
class EvaluationContext:
    form_data: Mapping[str, Any] = field(default_factory=dict)
    services: Mapping[str, Any] = field(default_factory=dict)
    application_state: Mapping[str, Any] = field(default_factory=dict)
    user_profile: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("form_data", "services", "application_state", "user_profile"):
            value = getattr(self, name)
            object.__setattr__(self, name, MappingProxyType(dict(value or {})))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> EvaluationContext:
        data = payload or {}
        return cls(
            form_data=data.get("formData") or {},
            services=data.get("services") or data.get("serviceResponses") or {},
            application_state=data.get("applicationState") or {},
            user_profile=data.get("userProfile") or {},
        )

    def as_code_scope(self) -> dict[str, Mapping[str, Any]]:
        return {
            "formData": self.form_data,
            "services": self.services,
            "applicationState": self.application_state,
            "userProfile": self.user_profile,
        }


@dataclass(slots=True)
class EvaluationOutcome:
    result: bool
    diagnostics: list[Diagnostic] = field(default_factory=list)


class CodeRunner(Protocol):
    def run(self, language: str, code: str, context: Mapping[str, Mapping[str, Any]], timeout_ms: int) -> Any:
        ...


class DisabledCodeRunner:
    def run(self, language: str, code: str, context: Mapping[str, Mapping[str, Any]], timeout_ms: int) -> Any:
        raise CodeExecutionError("custom code execution is disabled")


def _is_sequence_literal(node: ast.AST) -> bool:
    if isinstance(node, (ast.List, ast.Tuple)):
        return True
    return isinstance(node, ast.Constant) and isinstance(node.value, (str, bytes))


@functools.lru_cache(maxsize=256)
def compile_expression(code: str) -> CodeType:
    try:
        tree = ast.parse(code.strip(), mode="eval")
    except SyntaxError as exc:
        raise UnsafeCodeError(f"custom code is not a valid expression: {exc.msg}") from None
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_CODE_NODES):
            raise UnsafeCodeError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_CODE_FUNCTIONS:
                raise UnsafeCodeError("Unsupported function call")
        if isinstance(node, ast.Name) and node.id not in CODE_CONTEXT_NAMES and node.id not in ALLOWED_CODE_FUNCTIONS:
            raise UnsafeCodeError(f"Unknown name: {node.id}")
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Mult):
            if _is_sequence_literal(node.left) or _is_sequence_literal(node.right):
                raise UnsafeCodeError("Sequence repetition is not allowed")
    return compile(tree, "<custom-code>", "eval")


def _evaluate_in_worker(code: str, scope: dict[str, dict[str, Any]], conn: Any) -> None:
    conn.send(("started", None))
    try:
        namespace = {name: MappingProxyType(values) for name, values in scope.items()}
        value = eval(compile_expression(code), {"__builtins__": {}, **ALLOWED_CODE_FUNCTIONS}, namespace)
        conn.send(("ok", value))
    except Exception as exc:
        conn.send(("error", f"{type(exc).__name__}: {exc}"))
    finally:
        conn.close()


def _worker_context() -> Any:
    if "forkserver" in multiprocessing.get_all_start_methods():
        return multiprocessing.get_context("forkserver")
    return multiprocessing.get_context("spawn")


class ExpressionCodeRunner:
    """Runs single Python expressions over the journey context in killable worker processes.

    Code is parsed and checked against an AST whitelist before a worker is
    started, so only comparisons, arithmetic, subscripts and a few pure
    builtins are reachable. The budget starts once the worker reports in; a
    worker that overruns it is terminated and the caller gets a
    ``CodeTimeoutError``. At most ``max_workers`` evaluations run at once.
    """

    languages = frozenset({"PYTHON", "EXPRESSION"})

    def __init__(self, max_workers: int = 4) -> None:
        self._context = _worker_context()
        self._slots = threading.BoundedSemaphore(max_workers)
        self._lock = threading.Lock()
        self._workers: set[Any] = set()

    def compile(self, code: str) -> CodeType:
        return compile_expression(code)

    def run(self, language: str, code: str, context: Mapping[str, Mapping[str, Any]], timeout_ms: int) -> Any:
        if language.upper() not in self.languages:
            raise UnsupportedLanguageError(f"unsupported custom code language: {language}")
        self.compile(code)
        budget = max(timeout_ms, 1) / 1000
        if not self._slots.acquire(timeout=budget):
            raise CodeTimeoutError(f"no custom code worker free within {timeout_ms}ms")
        try:
            status, payload = self._run_in_worker(code, context, budget, timeout_ms)
        finally:
            self._slots.release()
        if status == "error":
            raise CodeExecutionError(payload)
        return payload

    def _run_in_worker(
        self, code: str, context: Mapping[str, Mapping[str, Any]], budget: float, timeout_ms: int
    ) -> tuple[str, Any]:
        scope = {name: dict(context.get(name, _EMPTY)) for name in CODE_CONTEXT_NAMES}
        receiver, sender = self._context.Pipe(duplex=False)
        worker = self._context.Process(target=_evaluate_in_worker, args=(code, scope, sender), daemon=True)
        with self._lock:
            self._workers.add(worker)
        try:
            worker.start()
            sender.close()
            if not receiver.poll(WORKER_START_TIMEOUT_S):
                raise CodeExecutionError("custom code worker did not start")
            receiver.recv()
            started = time.monotonic()
            if not receiver.poll(budget):
                raise CodeTimeoutError(f"custom code exceeded {timeout_ms}ms")
            result = receiver.recv()
            if time.monotonic() - started > budget:
                raise CodeTimeoutError(f"custom code exceeded {timeout_ms}ms")
            return result
        except EOFError:
            raise CodeExecutionError("custom code worker exited without a result") from None
        finally:
            receiver.close()
            sender.close()
            if worker.is_alive():
                worker.terminate()
            if worker.pid is not None:
                worker.join()
            with self._lock:
                self._workers.discard(worker)

    def shutdown(self) -> None:
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            if worker.is_alive():
                worker.terminate()


def resolve_field(source: ConditionSource, field_name: str | None, context: EvaluationContext) -> Any:
    if not field_name:
        return MISSING
    if source is ConditionSource.FORM_DATA:
        return context.form_data.get(field_name, MISSING)
    if source is ConditionSource.APPLICATION_STATE:
        return context.application_state.get(field_name, MISSING)
    if source is ConditionSource.USER_PROFILE:
        return context.user_profile.get(field_name, MISSING)
    if source is ConditionSource.SERVICE_RESPONSE:
        service_id, _, key = field_name.partition(".")
        current: Any = context.services.get(service_id, MISSING)
        if not key:
            return current
        for part in key.split("."):
            if not isinstance(current, Mapping):
                return MISSING
            current = current.get(part, MISSING)
        return current
    return MISSING


_default_runner: ExpressionCodeRunner | None = None
_default_runner_lock = threading.Lock()


def default_code_runner() -> ExpressionCodeRunner:
    global _default_runner
    with _default_runner_lock:
        if _default_runner is None:
            _default_runner = ExpressionCodeRunner()
        return _default_runner


class ConditionEvaluator:
    def __init__(self, code_runner: CodeRunner | None = None) -> None:
        self.code_runner = code_runner if code_runner is not None else default_code_runner()

    def evaluate(self, tree: ConditionTree, context: EvaluationContext) -> bool:
        return self.evaluate_with_trace(tree, context).result

    def evaluate_with_trace(
        self,
        tree: ConditionTree,
        context: EvaluationContext,
        *,
        screen_id: str | None = None,
        condition_id: str | None = None,
        rule_index: int | None = None,
    ) -> EvaluationOutcome:
        outcome = EvaluationOutcome(result=False)

        def degrade(code: str, message: str, path: str) -> bool:
            diagnostic = Diagnostic(
                code=code,
                message=message,
                path=path,
                screen_id=screen_id,
                condition_id=condition_id,
                rule_index=rule_index,
            )
            outcome.diagnostics.append(diagnostic)
            logger.info("condition_evaluation_degraded", extra={"diagnostic": diagnostic.to_dict()})
            return False

        def visit(node: ConditionTree, path: str) -> bool:
            if isinstance(node, ConditionGroup):
                if not node.conditions:
                    return degrade("empty_group", f"{node.operator.value} group has no conditions", path)
                if node.operator is LogicOperator.AND:
                    return all(visit(child, f"{path}.conditions[{index}]") for index, child in enumerate(node.conditions))
                return any(visit(child, f"{path}.conditions[{index}]") for index, child in enumerate(node.conditions))
            if node.source is ConditionSource.CUSTOM_CODE:
                return run_custom_code(node, path)
            return compare_leaf(node, path)

        def compare_leaf(node: Condition, path: str) -> bool:
            if node.operator is None:
                detail = f"unknown operator {node.raw_operator!r}" if node.raw_operator else "condition has no operator"
                return degrade("missing_operator", detail, path)
            if node.field is None:
                return degrade("missing_field", "condition has no field", path)
            actual = resolve_field(node.source, node.field, context)
            result = apply_operator(node.operator, actual, node.value)
            if result.diagnostic:
                return degrade("operator_not_applicable", f"{node.field}: {result.diagnostic}", path)
            return result.matched

        def run_custom_code(node: Condition, path: str) -> bool:
            spec = node.custom_code
            if spec is None:
                return degrade("custom_code_missing", "CUSTOM_CODE condition has no code", path)
            try:
                value = self.code_runner.run(spec.language, spec.code, context.as_code_scope(), spec.timeout_ms)
            except CodeTimeoutError as exc:
                return degrade("custom_code_timeout", str(exc), path)
            except Exception as exc:
                return degrade("custom_code_failed", f"{type(exc).__name__}: {exc}", path)
            if not isinstance(value, bool):
                return degrade("custom_code_non_boolean", f"custom code returned {type(value).__name__}", path)
            return value

        outcome.result = visit(tree, "condition")
        return outcome


def evaluate(tree: ConditionTree, context: EvaluationContext, code_runner: CodeRunner | None = None) -> bool:
    return ConditionEvaluator(code_runner).evaluate(tree, context)
