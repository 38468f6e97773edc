from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from kbembed.core.errors import ProviderFormatError


class InputVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")

    allowed: StrictBool
    reason: str | None = None


class OutputVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")

    allowed: StrictBool
    citations_ok: StrictBool
    reason: str | None = None


class GenerationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    answer: str
    # Citations are filtered against the supplied chunk ids by the caller.
    citations: list[Any] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @field_validator("warnings", mode="before")
    @classmethod
    def _string_warnings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @field_validator("citations", mode="before")
    @classmethod
    def _list_citations(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []


class EmbeddingItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    embedding: list[float]


class EmbeddingResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[EmbeddingItem]

    def vectors(self) -> list[list[float]]:
        return [item.embedding for item in sorted(self.data, key=lambda item: item.index)]


_ModelT = TypeVar("_ModelT", bound=BaseModel)


def parse_payload(model: type[_ModelT], payload: Any) -> _ModelT:
    # Shape mismatches from providers surface as one typed error.
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProviderFormatError(f"{model.__name__} payload did not match the expected shape") from exc
