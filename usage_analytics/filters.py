"""Filter compiler: `{field, operator, value}` clauses -> bound SQL predicates.

Only the *shape* of the SQL depends on the request (which whitelisted field,
which operator). Every caller-supplied value travels as a named parameter.

Composition rule: clauses on the same field are OR-ed, clauses on different
fields are AND-ed, and a field without clauses compiles to TRUE so the
per-field fragments can always be AND-ed together in any order.
"""

from __future__ import annotations
from dataclasses import dataclass, field as dc_field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from usage_analytics.client import validate_model
from usage_analytics.errors import CompilationError, ValidationError
from usage_analytics.schemas import FilterClause

STRING_OPERATORS = ("is", "contains", "startsWith", "endsWith")

SUPPORTED_OPERATORS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "string": STRING_OPERATORS,
    "tags": STRING_OPERATORS,
    "number": ("is",),
    "bool": ("is",),
})

SQL_TYPES: Mapping[type, str] = MappingProxyType({
    str: "VARCHAR",
    int: "BIGINT",
    bool: "BOOLEAN",
    float: "DOUBLE",
})

_PATTERN_FUNCTIONS = {
    "contains": "contains",
    "startsWith": "starts_with",
    "endsWith": "suffix",
}

# Tag arrays are matched by joining them with the ASCII unit separator, so a
# pattern can never straddle two tags as long as values never contain it.
TAG_SEPARATOR = "\x1f"
_SEP = "chr(31)"

def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1"):
        return True
    if s in ("false", "0"):
        return False
    raise ValueError(f"not a boolean: {value!r}")

class ParamBuilder:
    """Owns parameter naming for one compiled query.

    Dynamic names are `<prefix>_<n>` with a per-prefix counter; binding the
    same name twice is a compilation error.
    """

    def __init__(self) -> None:
        self.values: Dict[str, Any] = {}
        self.types: Dict[str, type] = {}
        self._counters: Dict[str, int] = {}

    def bind(self, name: str, value: Any, typ: type) -> str:
        if name in self.values:
            raise CompilationError(f"parameter {name!r} bound twice")
        if typ not in SQL_TYPES:
            raise CompilationError(f"no SQL type for parameter {name!r} ({typ.__name__})")
        self.values[name] = value
        self.types[name] = typ
        return f"${name}::{SQL_TYPES[typ]}"

    def next(self, prefix: str, value: Any, typ: type) -> str:
        idx = self._counters.get(prefix, 0)
        self._counters[prefix] = idx + 1
        return self.bind(f"{prefix}_{idx}", value, typ)

@dataclass(frozen=True)
class FilterField:
    name: str
    column: str                  # trusted SQL expression, never caller input
    kind: str = "string"
    operators: Tuple[str, ...] = ("is",)
    valid_values: Optional[Tuple[Union[str, int], ...]] = None
    transform: Optional[Callable[[Any], Any]] = dc_field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.kind not in SUPPORTED_OPERATORS:
            raise CompilationError(f"field {self.name!r}: unknown kind {self.kind!r}")
        if not self.operators:
            raise CompilationError(f"field {self.name!r}: no operators")
        unsupported = [op for op in self.operators if op not in SUPPORTED_OPERATORS[self.kind]]
        if unsupported:
            raise CompilationError(f"field {self.name!r} ({self.kind}) cannot compile operator(s) {unsupported}")

    @property
    def param_type(self) -> type:
        if self.kind == "number":
            return int
        if self.kind == "bool":
            return bool
        return str

    def coerce(self, value: Any, operator: str = "is") -> Any:
        """Validate a caller value for this field; returns the value to bind.

        An empty pattern would match every row, so pattern operators need a
        non-empty value. `is ""` stays legal.
        """
        if isinstance(value, bool) and self.kind != "bool":
            raise ValidationError(f"{self.name}: boolean value not allowed", fields=[self.name])
        if self.kind == "number":
            try:
                v: Any = int(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"{self.name}: expected an integer, got {value!r}", fields=[self.name]) from e
        else:
            v = str(value)
            if self.kind == "tags" and TAG_SEPARATOR in v:
                raise ValidationError(f"{self.name}: value contains a control character", fields=[self.name])
            if operator in _PATTERN_FUNCTIONS and not v:
                raise ValidationError(f"{self.name}: {operator} needs a non-empty value", fields=[self.name])

        if self.valid_values is not None and v not in self.valid_values:
            raise ValidationError(f"{self.name}: {v!r} is not one of {list(self.valid_values)}", fields=[self.name])

        if self.transform is not None:
            v = self.transform(v)
        if self.kind == "bool":
            try:
                v = _to_bool(v)
            except ValueError as e:
                raise ValidationError(f"{self.name}: {e}", fields=[self.name]) from e
        return v

    def render(self, operator: str, placeholder: str) -> str:
        col = self.column
        if operator not in self.operators:
            raise CompilationError(f"operator {operator!r} not allowed for {self.name!r}")
        if self.kind == "tags":
            if operator == "is":
                return f"list_contains({col}, {placeholder})"
            joined = f"array_to_string({col}, {_SEP})"
            if operator == "contains":
                return f"contains({joined}, {placeholder})"
            if operator == "startsWith":
                return f"contains({_SEP} || {joined}, {_SEP} || {placeholder})"
            return f"contains({joined} || {_SEP}, {placeholder} || {_SEP})"
        if operator == "is":
            return f"{col} = {placeholder}"
        return f"{_PATTERN_FUNCTIONS[operator]}({col}, {placeholder})"

@dataclass(frozen=True)
class CompiledFilter:
    sql: str
    params: Dict[str, Any]
    types: Dict[str, type]

class FilterRegistry:
    """Per-dataset whitelist of filterable fields."""

    def __init__(self, fields: Iterable[FilterField]):
        by_name: Dict[str, FilterField] = {}
        for f in fields:
            if f.name in by_name:
                raise CompilationError(f"duplicate filter field {f.name!r}")
            by_name[f.name] = f
        self._fields: Mapping[str, FilterField] = MappingProxyType(by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __getitem__(self, name: str) -> FilterField:
        return self._fields[name]

    def __iter__(self):
        return iter(self._fields.values())

    @property
    def names(self) -> List[str]:
        return list(self._fields)

    def validate(self, clauses: Sequence[Any]) -> List[FilterClause]:
        out: List[FilterClause] = []
        for i, raw in enumerate(clauses):
            try:
                c = validate_model(FilterClause, raw)
            except ValidationError as e:
                raise ValidationError(f"filters.{i}: {e}", fields=[f"filters.{i}.{f}" for f in e.fields]) from e
            f = self._fields.get(c.field)
            if f is None:
                raise ValidationError(f"unknown filter field {c.field!r}", fields=[f"filters.{i}.field"])
            if c.operator not in f.operators:
                raise ValidationError(
                    f"operator {c.operator!r} not allowed for {c.field!r} (allowed: {list(f.operators)})",
                    fields=[f"filters.{i}.operator"],
                )
            try:
                f.coerce(c.value, c.operator)
            except ValidationError as e:
                raise ValidationError(str(e), fields=[f"filters.{i}.value"]) from e
            out.append(c)
        return out

    def compile(self, clauses: Sequence[FilterClause], params: Optional[ParamBuilder] = None) -> CompiledFilter:
        params = params if params is not None else ParamBuilder()
        grouped: Dict[str, List[FilterClause]] = {name: [] for name in self._fields}
        for c in clauses:
            if c.field not in grouped:
                raise CompilationError(f"unknown filter field {c.field!r}")
            grouped[c.field].append(c)

        parts: List[str] = []
        for name, f in self._fields.items():
            group = grouped[name]
            if not group:
                parts.append("TRUE")
                continue
            exprs = []
            for c in group:
                placeholder = params.next(f"{name}Value", f.coerce(c.value, c.operator), f.param_type)
                exprs.append(f.render(c.operator, placeholder))
            parts.append("(" + " OR ".join(exprs) + ")")

        sql = " AND ".join(parts) if parts else "TRUE"
        return CompiledFilter(sql=sql, params=dict(params.values), types=dict(params.types))
