"""
Node Protocol - the typed steps a workflow graph is built from.

Every node has a closed kind (NodeKind), a kind-specific ``fields`` mapping
and a pass-through mode. Kind-level facts (default output variable, static
output shape, inbound cardinality) live in the tables below so adding a kind
means adding one enum member plus its table rows.

Accepted JSON (editor envelope or flat):

    {"id": "create_user", "type": "dbInsert",
     "data": {"label": "Create user", "fields": {...}, "pass": "full"}}

    {"id": "create_user", "kind": "dbInsert", "fields": {...}, "pass_mode": "full"}
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class NodeKind(StrEnum):
    """The closed set of step kinds."""

    INPUT = "input"
    INPUT_VALIDATION = "inputValidation"
    DB_FIND = "dbFind"
    DB_INSERT = "dbInsert"
    DB_UPDATE = "dbUpdate"
    DB_DELETE = "dbDelete"
    USER_LOGIN = "userLogin"
    AUTH_MIDDLEWARE = "authMiddleware"
    EMAIL_SEND = "emailSend"
    JWT_GENERATE = "jwtGenerate"
    LOG = "log"
    RESPONSE = "response"


PASS_FULL = "full"

# Output variable bound when fields.outputVar is not set (None: binds nothing)
DEFAULT_OUTPUT_VARS: dict[NodeKind, str | None] = {
    NodeKind.INPUT: None,
    NodeKind.INPUT_VALIDATION: "validated",
    NodeKind.DB_FIND: "foundData",
    NodeKind.DB_INSERT: "createdRecord",
    NodeKind.DB_UPDATE: "updatedRecord",
    NodeKind.DB_DELETE: "deletedRecord",
    NodeKind.USER_LOGIN: "loginResult",
    NodeKind.AUTH_MIDDLEWARE: "currentUser",
    NodeKind.EMAIL_SEND: "emailResult",
    NodeKind.JWT_GENERATE: "token",
    NodeKind.LOG: None,
    NodeKind.RESPONSE: "_response",
}

DB_KINDS = frozenset(
    {NodeKind.DB_FIND, NodeKind.DB_INSERT, NodeKind.DB_UPDATE, NodeKind.DB_DELETE}
)

# Sub-fields that a kind always exposes under its output variable
STATIC_SUBFIELDS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.USER_LOGIN: ("ok", "userId", "email", "name"),
}

# Kinds that gate execution but never expose variables downstream
NON_EXPOSING_KINDS = frozenset({NodeKind.AUTH_MIDDLEWARE})

# Inbound cardinality limits checked when an edge is proposed
MAX_INBOUND: dict[NodeKind, int] = {
    NodeKind.LOG: 1,
}

# Field keys that carry the node's output variable rather than step data
OUTPUT_VAR_KEYS = ("outputVar", "output")


class InputVariable(BaseModel):
    """A named, typed variable declared on the Input node."""

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""

    model_config = {"extra": "allow"}


class NodeSpec(BaseModel):
    """
    Specification for a single step in a workflow graph.

    Examples:
        NodeSpec(
            id="input_main",
            kind=NodeKind.INPUT,
            fields={"variables": [{"name": "email"}, {"name": "password"}]},
        )

        NodeSpec(
            id="create_user",
            kind=NodeKind.DB_INSERT,
            fields={"collection": "users", "email": "{{email}}", "outputVar": "user"},
            pass_mode="user",
        )
    """

    id: str = Field(min_length=1)
    kind: NodeKind
    label: str = ""
    fields: dict[str, Any] = Field(
        default_factory=dict, description="Kind-specific field values; may contain templates"
    )
    pass_mode: str = Field(
        default=PASS_FULL,
        description="'full' to expose every output path, or one explicit path",
    )

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _flatten_envelope(cls, data: Any) -> Any:
        """Accept the editor's {type, data: {label, fields, pass}} envelope."""
        if not isinstance(data, dict):
            return data
        data = dict(data)

        envelope = data.pop("data", None)
        if isinstance(envelope, dict):
            for key in ("label", "fields"):
                if key in envelope and key not in data:
                    data[key] = envelope[key]
            for key in ("pass", "passMode", "pass_mode"):
                if key in envelope and "pass_mode" not in data:
                    data["pass_mode"] = envelope[key]

        if "type" in data:
            kind = data.pop("type")
            data.setdefault("kind", kind)
        for alias in ("pass", "passMode"):
            if alias in data:
                value = data.pop(alias)
                data.setdefault("pass_mode", value)

        if data.get("pass_mode") in (None, ""):
            data["pass_mode"] = PASS_FULL
        if data.get("fields") is None:
            data["fields"] = {}
        if not data.get("label"):
            data["label"] = str(data.get("kind") or "")
        return data

    @property
    def is_input(self) -> bool:
        return self.kind == NodeKind.INPUT

    @property
    def is_db_backed(self) -> bool:
        return self.kind in DB_KINDS

    @property
    def is_full_pass(self) -> bool:
        return self.pass_mode == PASS_FULL

    @property
    def output_var(self) -> str | None:
        """The declared output variable, or the kind default."""
        if self.kind in (NodeKind.INPUT, NodeKind.LOG):
            return None
        for key in OUTPUT_VAR_KEYS:
            declared = self.fields.get(key)
            if isinstance(declared, str) and declared.strip():
                return declared.strip()
        return DEFAULT_OUTPUT_VARS[self.kind]

    @property
    def variables(self) -> list[InputVariable]:
        """Variables declared by an Input node (empty for other kinds)."""
        if not self.is_input:
            return []
        declared = self.fields.get("variables") or []
        variables = []
        for item in declared:
            if isinstance(item, str) and item:
                variables.append(InputVariable(name=item))
            elif isinstance(item, dict) and item.get("name"):
                variables.append(InputVariable.model_validate(item))
        return variables

    def to_wire(self) -> dict[str, Any]:
        """Serialize back to the editor envelope."""
        return {
            "id": self.id,
            "type": self.kind.value,
            "data": {"label": self.label, "fields": self.fields, "pass": self.pass_mode},
        }
