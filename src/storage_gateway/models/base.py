from __future__ import annotations

from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from storage_gateway.exceptions import ValidationFailure

_FORBIDDEN_NAME_CHARS = ("/", "\\", "\x00")


def _single_segment(value: str) -> str:
    # имя файла становится последним сегментом ключа объекта или пути на SFTP
    if value in (".", "..") or any(ch in value for ch in _FORBIDDEN_NAME_CHARS):
        raise ValueError("file name must be a single path segment")
    return value


FileName = Annotated[str, Field(min_length=1), AfterValidator(_single_segment)]


class ValueObject(BaseModel):
    """
    Неизменяемый value object: валидируется один раз в конструкторе.
    Ошибки pydantic превращаются в ValidationFailure, чтобы наружу не
    утекал чужой тип исключения.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True, use_enum_values=False)

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise ValidationFailure(f"Invalid {type(self).__name__}: {e.errors(include_url=False)}") from e


class Entity(BaseModel):
    """Изменяемая сущность (сессия загрузки, чанк). Присваивания тоже валидируются."""

    model_config = ConfigDict(validate_assignment=True, from_attributes=True)

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise ValidationFailure(f"Invalid {type(self).__name__}: {e.errors(include_url=False)}") from e
