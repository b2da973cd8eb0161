# evidence_runner/validation_engine.py
"""
Validation Engine

Evaluates a task's validation criteria against its executed actions.

Three criterion forms:

    {"condition": "STEP.1.exitCode === 0 && STEP.1.stdout.includes('ok')"}
    {"field": "STEP.1.exitCode", "operator": "eq", "value": 0}
    {"validator": "json-schema", "field": "STEP.2.body", "schema": {...}}

String conditions are parsed with `ast` and walked with a node whitelist;
nothing is ever handed to eval(). JavaScript spellings (===, !==, &&, ||, !,
true/false/null, .length, .includes) are accepted for compatibility with
existing specification files.

A criterion that cannot be evaluated is a failed criterion carrying the
error message; no evaluation error escapes evaluate().
"""

from __future__ import annotations

import ast
import logging
import operator
import re
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

from evidence_runner.types import ActionResult, CriterionEvaluation, ValidationCriterionError, ValidationResult

if TYPE_CHECKING:
    from evidence_runner.plugin_registry import PluginRegistry

logger = logging.getLogger(__name__)

PHASE_PREFIXES = ("STEP", "PREREQ", "CLEANUP")

_STRING_LITERAL = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""")
_PHASE_REF = re.compile(r"\b(STEP|PREREQ|CLEANUP)\.(\w+)")

_LITERAL_NAMES = {
    "true": True, "True": True,
    "false": False, "False": False,
    "null": None, "None": None, "undefined": None,
}


# ==================== Context ====================

def _count(pattern: str, text: Any) -> int:
    if not isinstance(text, str):
        return 0
    return len(re.findall(pattern, text, flags=re.IGNORECASE))


def step_view(step: ActionResult) -> Dict[str, Any]:
    """Flattened record a condition sees for one action"""
    data = step.data if isinstance(step.data, dict) else {}
    view: Dict[str, Any] = {"success": step.success, "error": step.error, "durationMs": step.duration_ms}
    if step.data is not None and not isinstance(step.data, dict):
        view["data"] = step.data
    view.update(data)
    view["errorCount"] = _count(r"error", data.get("stderr"))
    view["warningCount"] = _count(r"warning", data.get("stdout"))
    return view


def build_context(steps: Iterable[ActionResult]) -> Dict[str, Dict[str, Any]]:
    return {step.action_id: step_view(step) for step in steps}


def _extract_dotted(obj: Any, parts: List[str]) -> Any:
    cur = obj
    for p in parts:
        if isinstance(cur, list):
            try:
                idx = int(p)
            except ValueError:
                return None
            if idx < 0 or idx >= len(cur):
                return None
            cur = cur[idx]
        elif isinstance(cur, dict):
            if p not in cur:
                return None
            cur = cur[p]
        else:
            return None
    return cur


def resolve_field(field: str, context: Dict[str, Dict[str, Any]]) -> Any:
    """
    "STEP.1.body.items.0" -> context["STEP.1"]["body"]["items"][0]

    The step id is the longest dotted prefix that names a known action.
    Unknown step ids raise; unknown fields inside a step resolve to None.
    """
    parts = field.split(".")
    for cut in range(len(parts), 0, -1):
        step_id = ".".join(parts[:cut])
        if step_id in context:
            return _extract_dotted(context[step_id], parts[cut:])
    raise ValidationCriterionError(f"Unknown step in field '{field}' (known: {', '.join(context) or 'none'})")


# ==================== Safe expressions ====================

class _StepNamespace(dict):
    """STEP / PREREQ / CLEANUP / steps lookups that fail loudly on unknown ids"""

    def __init__(self, prefix: Optional[str], entries: Dict[str, Any]):
        super().__init__(entries)
        self.prefix = prefix

    def __missing__(self, key: Any) -> Any:
        full = f"{self.prefix}.{key}" if self.prefix else str(key)
        raise ValidationCriterionError(f"Step '{full}' not found")


def _translate_js(condition: str) -> str:
    """JS-flavoured operators to Python, leaving string literals untouched"""
    pieces = _STRING_LITERAL.split(condition)
    for i in range(0, len(pieces), 2):
        code = pieces[i]
        code = code.replace("!==", "!=").replace("===", "==")
        code = code.replace("&&", " and ").replace("||", " or ")
        code = re.sub(r"!(?!=)", " not ", code)
        code = _PHASE_REF.sub(r'\1["\2"]', code)
        pieces[i] = code
    return "".join(pieces).strip()


_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

MAX_REPEAT_LENGTH = 1_000_000


def _multiply(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list)) and isinstance(count, int) and not isinstance(count, bool):
            if len(seq) * count > MAX_REPEAT_LENGTH:
                raise ValidationCriterionError(
                    f"Repetition result exceeds {MAX_REPEAT_LENGTH} items"
                )
    return operator.mul(left, right)


_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "abs": abs,
}


def _length(value: Any) -> int:
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    raise ValidationCriterionError(f"Cannot read 'length' of {type(value).__name__}")


_METHODS: Dict[str, Callable[..., Any]] = {
    "includes": lambda obj, item: item in obj,
    "contains": lambda obj, item: item in obj,
    "startsWith": lambda obj, prefix: str(obj).startswith(prefix),
    "startswith": lambda obj, prefix: str(obj).startswith(prefix),
    "endsWith": lambda obj, suffix: str(obj).endswith(suffix),
    "endswith": lambda obj, suffix: str(obj).endswith(suffix),
    "lower": lambda obj: str(obj).lower(),
    "upper": lambda obj: str(obj).upper(),
    "toLowerCase": lambda obj: str(obj).lower(),
    "toUpperCase": lambda obj: str(obj).upper(),
    "trim": lambda obj: str(obj).strip(),
    "strip": lambda obj: str(obj).strip(),
    "test": lambda pattern, text: re.search(str(pattern), str(text)) is not None,
}


class SafeExpression:
    """A boolean condition compiled once into a whitelisted AST"""

    def __init__(self, source: str):
        self.source = source
        self.translated = _translate_js(source)
        try:
            self.tree = ast.parse(self.translated, mode="eval")
        except SyntaxError as e:
            raise ValidationCriterionError(f"Invalid condition syntax: {e.msg} in {source!r}") from e
        except (MemoryError, RecursionError) as e:
            raise ValidationCriterionError(f"Condition too deeply nested: {type(e).__name__}") from e

    def evaluate(self, context: Dict[str, Dict[str, Any]]) -> Any:
        scope: Dict[str, Any] = {
            "steps": _StepNamespace(None, context),
        }
        for prefix in PHASE_PREFIXES:
            scope[prefix] = _StepNamespace(prefix, {
                action_id.split(".", 1)[1]: view
                for action_id, view in context.items()
                if action_id.startswith(prefix + ".")
            })
        # Plain identifiers may name an action directly (e.g. "build.exitCode")
        for action_id, view in context.items():
            if action_id.isidentifier() and action_id not in scope:
                scope[action_id] = view

        try:
            return self._eval(self.tree.body, scope)
        except ValidationCriterionError:
            raise
        except (TypeError, ValueError, KeyError, IndexError, AttributeError, ArithmeticError,
                MemoryError, RecursionError, re.error) as e:
            raise ValidationCriterionError(f"{type(e).__name__}: {e}") from e

    def _eval(self, node: ast.AST, scope: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            if node.id in scope:
                return scope[node.id]
            raise ValidationCriterionError(f"Unknown name '{node.id}'")

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self._eval(operand, scope)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval(operand, scope)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, scope)
                fn = _COMPARE_OPS.get(type(op))
                if fn is None:
                    break
                if not fn(left, right):
                    return False
                left = right
            else:
                return True

        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            return _BIN_OPS[type(node.op)](self._eval(node.left, scope), self._eval(node.right, scope))

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("__"):
                raise ValidationCriterionError(f"Attribute '{node.attr}' is not allowed")
            return self._attribute(self._eval(node.value, scope), node.attr)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, scope)
            key = self._eval(node.slice, scope)
            if isinstance(container, _StepNamespace):
                return container[str(key)]
            if container is None:
                raise ValidationCriterionError(f"Cannot read [{key!r}] of null")
            if isinstance(container, dict):
                return container.get(key)
            if isinstance(container, (list, tuple, str)):
                try:
                    return container[int(key)]
                except (IndexError, ValueError):
                    return None
            raise ValidationCriterionError(f"Cannot index {type(container).__name__}")

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(e, scope) for e in node.elts]

        if isinstance(node, ast.Call) and not node.keywords:
            return self._call(node, scope)

        raise ValidationCriterionError(f"Unsupported expression element: {type(node).__name__}")

    @staticmethod
    def _attribute(value: Any, attr: str) -> Any:
        if isinstance(value, _StepNamespace):
            return value[attr]
        if value is None:
            raise ValidationCriterionError(f"Cannot read '{attr}' of null")
        if isinstance(value, dict):
            if attr in value:
                return value[attr]
            if attr == "length":
                return len(value)
            return None
        if attr == "length":
            return _length(value)
        raise ValidationCriterionError(f"Cannot read '{attr}' of {type(value).__name__}")

    def _call(self, node: ast.Call, scope: Dict[str, Any]) -> Any:
        args = [self._eval(a, scope) for a in node.args]

        if isinstance(node.func, ast.Name):
            fn = _FUNCTIONS.get(node.func.id)
            if fn is None:
                raise ValidationCriterionError(f"Function '{node.func.id}' is not allowed")
            return fn(*args)

        if isinstance(node.func, ast.Attribute):
            method = _METHODS.get(node.func.attr)
            if method is None:
                raise ValidationCriterionError(f"Method '{node.func.attr}' is not allowed")
            target = self._eval(node.func.value, scope)
            if target is None:
                raise ValidationCriterionError(f"Cannot call '{node.func.attr}' on null")
            return method(target, *args)

        raise ValidationCriterionError("Unsupported call expression")


# ==================== Structured predicates ====================

def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(expected) in actual
    return expected in actual


PREDICATES: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, v: a == v,
    "ne": lambda a, v: a != v,
    "gt": lambda a, v: a > v,
    "gte": lambda a, v: a >= v,
    "lt": lambda a, v: a < v,
    "lte": lambda a, v: a <= v,
    "contains": _contains,
    "not_contains": lambda a, v: not _contains(a, v),
    "matches": lambda a, v: a is not None and re.search(str(v), str(a)) is not None,
    "exists": lambda a, v: a is not None,
    "not_exists": lambda a, v: a is None,
    "in": lambda a, v: a in v,
    "not_in": lambda a, v: a not in v,
}

OPERATOR_ALIASES = {
    "==": "eq", "===": "eq", "!=": "ne", "!==": "ne",
    ">": "gt", ">=": "gte", "<": "lt", "<=": "lte",
}


def evaluate_predicate(criterion: Dict[str, Any], context: Dict[str, Dict[str, Any]]) -> Tuple[bool, Any]:
    op_name = str(criterion.get("operator", "")).strip()
    op_name = OPERATOR_ALIASES.get(op_name, op_name)
    predicate = PREDICATES.get(op_name.lower())
    if predicate is None:
        raise ValidationCriterionError(
            f"Unknown operator '{criterion.get('operator')}'. Expected one of: {', '.join(PREDICATES)}"
        )

    actual = resolve_field(str(criterion["field"]), context)
    try:
        return bool(predicate(actual, criterion.get("value"))), actual
    except (TypeError, re.error) as e:
        raise ValidationCriterionError(f"{criterion['field']} {op_name} {criterion.get('value')!r}: {e}") from e


# ==================== Engine ====================

class ValidationEngine:
    """Produces the task verdict from criteria and executed actions"""

    def __init__(self, registry: Optional["PluginRegistry"] = None):
        self.registry = registry

    async def evaluate(self, steps: List[ActionResult], criteria: Iterable[Dict[str, Any]]) -> ValidationResult:
        criteria = list(criteria)
        context = build_context(steps)

        if not criteria:
            passed = all(s.success for s in steps)
            logger.info(f"{'✅' if passed else '❌'} No validation criteria; verdict from action outcomes")
            return ValidationResult(passed=passed)

        evaluations = []
        for criterion in criteria:
            evaluation = await self.evaluate_criterion(criterion, context)
            evaluations.append(evaluation)
            if evaluation.passed:
                logger.info(f"  ✅ Passed: {evaluation.description}")
            elif evaluation.error:
                logger.warning(f"  ⚠️ Evaluation error: {evaluation.description}: {evaluation.error}")
            else:
                logger.info(f"  ❌ Failed: {evaluation.description}")

        return ValidationResult(passed=all(e.passed for e in evaluations), evaluations=evaluations)

    async def evaluate_criterion(self, criterion: Dict[str, Any], context: Dict[str, Dict[str, Any]]) -> CriterionEvaluation:
        negate = bool(criterion.get("negate"))
        label = self._label(criterion)
        description = criterion.get("description") or label

        try:
            if "validator" in criterion:
                evaluation = await self._delegate(criterion, context)
                if negate and evaluation.error is None:
                    evaluation.passed = not evaluation.passed
                evaluation.description = evaluation.description or description
                return evaluation

            if "condition" in criterion:
                outcome = SafeExpression(str(criterion["condition"])).evaluate(context)
                actual = outcome
            else:
                outcome, actual = evaluate_predicate(criterion, context)

            passed = bool(outcome)
            return CriterionEvaluation(
                description=description,
                passed=(not passed) if negate else passed,
                condition=label,
                actual=_jsonable(actual),
            )
        except ValidationCriterionError as e:
            return CriterionEvaluation(description=description, passed=False, condition=label, error=str(e))

    async def _delegate(self, criterion: Dict[str, Any], context: Dict[str, Dict[str, Any]]) -> CriterionEvaluation:
        name = str(criterion["validator"])
        validator = self.registry.validator(name) if self.registry is not None else None
        if validator is None:
            raise ValidationCriterionError(f"Unknown validator '{name}'")
        try:
            return await validator.validate(criterion, context)
        except ValidationCriterionError:
            raise
        except Exception as e:
            # Plugin code: its failure is this criterion's failure
            raise ValidationCriterionError(f"Validator '{name}' failed: {type(e).__name__}: {e}") from e

    @staticmethod
    def _label(criterion: Dict[str, Any]) -> str:
        if "condition" in criterion:
            label = str(criterion["condition"])
        elif "validator" in criterion:
            label = f"validator:{criterion['validator']}"
        else:
            label = f"{criterion.get('field')} {criterion.get('operator')} {criterion.get('value')!r}"
        return f"NOT ({label})" if criterion.get("negate") else label


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, dict)):
        return value
    return repr(value)
