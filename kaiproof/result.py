"""kaiproof.result

Tagged parse results for embedded payloads.

Parsers return one of :class:`Ok`, :class:`Malformed` or
:class:`MissingField` instead of raising, so a verifier can tell a payload
that is absent from one that is present but broken. The shape checks are
driven by the JSON Schemas shipped in ``kaiproof/schemas``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Any, Callable, Generic, List, Optional, TypeVar, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from kaiproof.errors import MalformedPayload

T = TypeVar("T")

SCHEMA_NAMES = ("capsule", "author-sig", "bundle", "owner-key", "attestation", "cache-record")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Malformed:
    reason: str

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class MissingField:
    name: str

    @property
    def ok(self) -> bool:
        return False


ParseResult = Union[Ok[T], Malformed, MissingField]


def unwrap(result: "ParseResult[T]") -> T:
    """Return the parsed value or raise :class:`MalformedPayload`."""

    if isinstance(result, Ok):
        return result.value
    if isinstance(result, MissingField):
        raise MalformedPayload(f"missing field: {result.name}", field=result.name)
    raise MalformedPayload(result.reason)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


def _load_schema(name: str) -> Any:
    text = resources.files("kaiproof").joinpath("schemas", f"{name}.schema.json").read_text(encoding="utf-8")
    return json.loads(text)


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of every shipped schema so ``$ref`` resolves across files."""

    pairs = []
    for name in SCHEMA_NAMES:
        schema = _load_schema(name)
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        pairs.append((schema["$id"], resource))
    return Registry().with_resources(pairs)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    return Draft202012Validator(_load_schema(name), registry=_schema_registry())


def _first_error(obj: Any, validator: Draft202012Validator) -> Optional["ParseResult[Any]"]:
    errors = sorted(validator.iter_errors(obj), key=lambda e: (len(e.path), list(map(str, e.path))))
    if not errors:
        return None
    # Missing members are reported as MissingField so callers can treat them distinctly.
    for error in errors:
        if error.validator == "required":
            missing = [r for r in error.validator_value if isinstance(error.instance, dict) and r not in error.instance]
            if missing:
                prefix = ".".join(str(p) for p in error.path)
                return MissingField(f"{prefix}.{missing[0]}" if prefix else missing[0])
    error = errors[0]
    return Malformed(f"{error.json_path}: {error.message}")


def parse_with_schema(
    obj: Any,
    schema_name: str,
    build: Optional[Callable[[Any], T]] = None,
) -> "ParseResult[T]":
    """Validate ``obj`` against a shipped schema and optionally build a typed value."""

    if not isinstance(obj, dict):
        return Malformed(f"expected a JSON object, got {type(obj).__name__}")
    failure = _first_error(obj, schema_validator(schema_name))
    if failure is not None:
        return failure
    if build is None:
        return Ok(obj)
    try:
        return Ok(build(obj))
    except (TypeError, ValueError) as ex:
        return Malformed(str(ex))


def validation_messages(obj: Any, schema_name: str) -> List[str]:
    validator = schema_validator(schema_name)
    return [f"{e.json_path}: {e.message}" for e in validator.iter_errors(obj)]
