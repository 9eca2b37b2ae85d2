from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from agent_relay.runtime.errors import ArgumentValidationError


class ParamKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"

    @classmethod
    def parse(cls, raw: Any) -> "ParamKind":
        # JSON Schema allows a list of types, e.g. ["string", "null"].
        if isinstance(raw, list):
            raw = next((t for t in raw if t != "null"), None)
        if raw is None:
            return cls.ANY
        try:
            return cls(str(raw))
        except ValueError:
            return cls.STRING


_PY_TYPES: Dict[ParamKind, Any] = {
    ParamKind.STRING: str,
    ParamKind.NUMBER: float,
    ParamKind.INTEGER: int,
    ParamKind.BOOLEAN: bool,
    ParamKind.OBJECT: Dict[str, Any],
    ParamKind.ARRAY: List[Any],
    ParamKind.ANY: Any,
}


@dataclass(frozen=True)
class ParameterField:
    name: str
    kind: ParamKind
    required: bool = False
    description: str = ""
    enum: Optional[Tuple[Any, ...]] = None

    def to_json_schema(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.kind != ParamKind.ANY:
            out["type"] = self.kind.value
        if self.description:
            out["description"] = self.description
        if self.enum:
            out["enum"] = list(self.enum)
        return out


class ParameterSchema:
    """
    Structural description of a tool's arguments, derived from the JSON Schema the server
    advertises. Only top-level properties are modelled; nested objects and arrays are
    accepted as-is.
    """

    def __init__(self, fields: List[ParameterField]):
        self.fields = list(fields)
        self._model: Optional[Type[BaseModel]] = None

    @classmethod
    def from_json_schema(cls, schema: Optional[Dict[str, Any]]) -> "ParameterSchema":
        if not isinstance(schema, dict):
            return cls([])
        props = schema.get("properties") or {}
        required = schema.get("required") or []
        if not isinstance(props, dict):
            return cls([])
        if not isinstance(required, list):
            required = []
        fields: List[ParameterField] = []
        for name, prop in props.items():
            p = prop if isinstance(prop, dict) else {}
            enum = p.get("enum")
            fields.append(
                ParameterField(
                    name=str(name),
                    kind=ParamKind.parse(p.get("type")),
                    required=name in required,
                    description=str(p.get("description", "") or ""),
                    enum=tuple(enum) if isinstance(enum, list) and enum else None,
                )
            )
        return cls(fields)

    @property
    def optional_names(self) -> List[str]:
        return [f.name for f in self.fields if not f.required]

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {f.name: f.to_json_schema() for f in self.fields},
            "required": [f.name for f in self.fields if f.required],
        }

    def _build_model(self) -> Type[BaseModel]:
        defs: Dict[str, Any] = {}
        for i, f in enumerate(self.fields):
            py_type = _PY_TYPES[f.kind]
            # Positional names keep arbitrary wire names ("model_config", "_id") out of pydantic's way.
            if f.required:
                defs[f"f{i}"] = (py_type, Field(..., alias=f.name))
            else:
                defs[f"f{i}"] = (Optional[py_type], Field(None, alias=f.name))
        return create_model("ToolArguments", __config__=ConfigDict(extra="ignore"), **defs)

    def validate(self, tool_name: str, arguments: Any) -> Dict[str, Any]:
        """
        Check arguments against the schema. Unknown keys are dropped; values are coerced
        the way pydantic does in lax mode ("3" -> 3 for integers).
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ArgumentValidationError(tool_name, [f"arguments must be an object, got {type(arguments).__name__}"])
        if self._model is None:
            self._model = self._build_model()
        try:
            parsed = self._model.model_validate(arguments)
        except ValidationError as e:
            problems = [f"{'.'.join(str(x) for x in err['loc']) or '(root)'}: {err['msg']}" for err in e.errors()]
            raise ArgumentValidationError(tool_name, problems) from e

        out = parsed.model_dump(by_alias=True, exclude_unset=True)
        for f in self.fields:
            if f.enum and f.name in out and out[f.name] is not None and out[f.name] not in f.enum:
                raise ArgumentValidationError(tool_name, [f"{f.name}: must be one of {list(f.enum)}"])
        return out
