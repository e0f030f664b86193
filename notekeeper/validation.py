from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Tuple, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class Valid(Generic[ModelT]):
    value: ModelT


@dataclass(frozen=True)
class Invalid:
    """Rejected input; ``reasons`` holds one ``"<field>: <message>"`` entry per problem."""

    reasons: Tuple[str, ...]


ValidationResult = Union[Valid[ModelT], Invalid]


def _reasons(exc: PydanticValidationError) -> Tuple[str, ...]:
    reasons = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        reasons.append(f"{loc}: {err.get('msg', 'invalid')}")
    return tuple(reasons)


def validate_model(model_cls: Type[ModelT], payload: Any) -> ValidationResult:
    """Validate an already-decoded payload against ``model_cls``."""
    try:
        return Valid(model_cls.model_validate(payload))
    except PydanticValidationError as exc:
        return Invalid(_reasons(exc))


def validate_json(model_cls: Type[ModelT], raw: Union[str, bytes]) -> ValidationResult:
    """Decode and validate a JSON document; malformed JSON is reported as Invalid."""
    try:
        return Valid(model_cls.model_validate_json(raw))
    except PydanticValidationError as exc:
        return Invalid(_reasons(exc))
