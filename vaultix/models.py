import os
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator
from typing import List

METADATA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(BaseModel):
    """Single entry in the encrypted index describing one stored object."""
    object_id: str                   # opaque id, unrelated to the original name
    original_name: str
    size: int
    modified_time: datetime
    added_time: datetime = Field(default_factory=utcnow)

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: int):
        if v < 0:
            raise ValueError("size must be non-negative")
        return v

    @field_validator("original_name")
    @classmethod
    def validate_name(cls, v: str):
        """Names are stored as base names only so extraction can never escape its target directory."""
        if not v or v in (".", "..") or "\x00" in v or os.sep in v or (os.altsep and os.altsep in v):
            raise ValueError(f"invalid file name: {v!r}")
        return v


class VaultMetadataIndex(BaseModel):
    """Ordered collection of `FileRecord` objects, sealed as one blob under the master key."""
    version: int = METADATA_VERSION
    files: List[FileRecord] = []

    def names(self) -> List[str]:
        return [f.original_name for f in self.files]

    def object_ids(self) -> set:
        return {f.object_id for f in self.files}
