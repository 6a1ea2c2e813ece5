from __future__ import annotations

import enum
import re

from pydantic import field_validator, model_validator

from .base import ValueObject


class ChecksumAlgorithm(str, enum.Enum):
    SHA256 = "SHA-256"
    MD5 = "MD5"

    @property
    def hashlib_name(self) -> str:
        return {"SHA-256": "sha256", "MD5": "md5"}[self.value]

    @property
    def hex_length(self) -> int:
        return {"SHA-256": 64, "MD5": 32}[self.value]


_HEX = re.compile(r"^[0-9a-f]+$")


class FileChecksum(ValueObject):
    """Content fingerprint, used both as a dedup key and as an integrity seal."""

    algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256
    digest: str

    @field_validator("digest", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _check_digest(self) -> "FileChecksum":
        if len(self.digest) != self.algorithm.hex_length or not _HEX.match(self.digest):
            raise ValueError(
                f"digest must be {self.algorithm.hex_length} hex chars for {self.algorithm.value}"
            )
        return self

    def __str__(self) -> str:
        return f"{self.algorithm.value}:{self.digest}"
