"""Typed query/insert primitives.

Parameters are validated before the store is touched and every returned row
is validated after, so a store or schema drift never leaks half-checked data
to the caller.
"""

from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Protocol, Type, TypeVar, Union
from pydantic import BaseModel, ConfigDict, create_model
from pydantic import ValidationError as PydanticValidationError

from usage_analytics.errors import SchemaMismatchError, ValidationError
from usage_analytics.schemas import Ack

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

class Querier(Protocol):
    async def query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]: ...

class Inserter(Protocol):
    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> int: ...

class NoopStore:
    """Stands in when no store is configured: validates through the same contract, returns nothing."""

    async def query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return []

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> int:
        return 0

class QueryParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

def _error_fields(err: PydanticValidationError) -> List[str]:
    return sorted({".".join(str(p) for p in e["loc"]) or "<root>" for e in err.errors()})

def validate_model(model: Type[M], data: Union[BaseModel, Mapping[str, Any]]) -> M:
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        fields = _error_fields(e)
        raise ValidationError(f"invalid {model.__name__}: {', '.join(fields)}", fields=fields) from e

def extend_params(base: Type[QueryParams], extra: Mapping[str, type], name: str | None = None) -> Type[QueryParams]:
    """Return `base` with one required field per compiler-generated parameter."""
    if not extra:
        return base
    fields: Dict[str, Any] = {k: (t, ...) for k, t in extra.items()}
    return create_model(name or base.__name__, __base__=base, **fields)

def query(store: Querier, sql: str, params: Type[QueryParams], schema: Type[M]) -> Callable[[Any], Awaitable[List[M]]]:
    async def run(args: Union[BaseModel, Mapping[str, Any]]) -> List[M]:
        validated = validate_model(params, args)
        bound = validated.model_dump()
        logger.debug("query %s params=%s", schema.__name__, sorted(bound))
        rows = await store.query(sql, bound)

        out: List[M] = []
        for i, row in enumerate(rows):
            try:
                out.append(schema.model_validate(row))
            except PydanticValidationError as e:
                logger.warning("row %d does not match %s", i, schema.__name__)
                msg = e.errors()[0]["msg"] if e.errors() else str(e)
                raise SchemaMismatchError(f"row {i} does not match {schema.__name__}: {msg}", row_index=i) from e
        return out

    return run

def insert(store: Inserter, table: str, schema: Type[M]) -> Callable[[Iterable[Any]], Awaitable[Ack]]:
    async def run(events: Iterable[Any]) -> Ack:
        rows: List[Dict[str, Any]] = []
        for i, evt in enumerate(events):
            try:
                rows.append(validate_model(schema, evt).model_dump())
            except ValidationError as e:
                raise ValidationError(f"event {i}: {e}", fields=[f"{i}.{f}" for f in e.fields]) from e
        if not rows:
            return Ack(table=table, inserted=0)
        n = await store.insert(table, rows)
        logger.debug("inserted %d rows into %s", n, table)
        return Ack(table=table, inserted=n)

    return run
