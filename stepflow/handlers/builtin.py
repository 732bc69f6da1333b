"""
Handlers for the kinds the engine can run without an external service:
input, inputValidation, response and log.
"""

import logging
import re
from typing import Any

from stepflow.graph.node import NodeKind
from stepflow.graph.templates import strip_braces
from stepflow.handlers.base import HandlerRegistry, StepOutcome
from stepflow.runtime.scope import ScopeView

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


class InputHandler:
    """Checks that required input variables were supplied; binds nothing."""

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        values = scope.input
        errors: dict[str, list[str]] = {}
        for variable in fields.get("variables") or []:
            if isinstance(variable, str):
                variable = {"name": variable}
            name = variable.get("name")
            if not name:
                continue
            if variable.get("required") and _is_blank(values.get(name)):
                errors[name] = ["Field is required"]
        if errors:
            return StepOutcome.failure("Missing required input", errors)
        return StepOutcome.success(values)


class InputValidationHandler:
    """
    Applies validation rules to scope values.

    Each rule names a scope path in ``field`` (``input.email``) and any of:
    required, type (string|number|boolean|email), minLength, maxLength.
    Every failing rule is collected before the step fails, so the caller
    sees all problems at once.
    """

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        errors: dict[str, list[str]] = {}

        for rule in fields.get("rules") or []:
            if not isinstance(rule, dict) or not isinstance(rule.get("field"), str):
                continue
            name = strip_braces(rule["field"])
            value = scope.get(name)
            problems = self._check(rule, value)
            if problems:
                errors.setdefault(name, []).extend(problems)

        if errors:
            return StepOutcome.failure("Input validation failed", errors)
        return StepOutcome.success(True)

    def _check(self, rule: dict[str, Any], value: Any) -> list[str]:
        problems: list[str] = []
        if rule.get("required") and _is_blank(value):
            problems.append("Field is required")
        if value is None:
            return problems

        expected = rule.get("type")
        if expected == "number":
            if isinstance(value, bool) or not self._is_number(value):
                problems.append("Expected number")
        elif expected == "string" and not isinstance(value, str):
            problems.append("Expected string")
        elif expected == "boolean" and not isinstance(value, bool):
            problems.append("Expected boolean")
        elif expected == "email" and value != "" and not (
            isinstance(value, str) and EMAIL_PATTERN.match(value)
        ):
            problems.append("Invalid email address")

        if isinstance(value, str):
            min_length = rule.get("minLength")
            if isinstance(min_length, int) and len(value) < min_length:
                problems.append(f"Must be at least {min_length} characters")
            max_length = rule.get("maxLength")
            if isinstance(max_length, int) and len(value) > max_length:
                problems.append(f"Must be at most {max_length} characters")
        return problems

    @staticmethod
    def _is_number(value: Any) -> bool:
        try:
            float(value)
        except (TypeError, ValueError):
            return False
        return True


class ResponseHandler:
    """Produces the workflow's response ({status, body})."""

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        status = fields.get("status") or 200
        try:
            status = int(status)
        except (TypeError, ValueError):
            return StepOutcome.failure(f"Invalid response status: {status!r}")
        body = fields.get("body")
        return StepOutcome.success({"status": status, "body": {} if body is None else body})


class LogHandler:
    """Writes the rendered message to the workflow logger."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logging.getLogger("stepflow.workflow")

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        message = fields.get("message", "")
        if not isinstance(message, str):
            message = str(message)
        level = LOG_LEVELS.get(str(fields.get("level") or "info").lower(), logging.INFO)
        self.log.log(level, message, extra={"event": "workflow_log", "step_id": scope.step_id})
        return StepOutcome.success(message)


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register(NodeKind.INPUT, InputHandler())
    registry.register(NodeKind.INPUT_VALIDATION, InputValidationHandler())
    registry.register(NodeKind.RESPONSE, ResponseHandler())
    registry.register(NodeKind.LOG, LogHandler())
    return registry
