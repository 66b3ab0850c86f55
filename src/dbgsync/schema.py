from __future__ import annotations

from enum import IntEnum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from dbgsync.model import ArtifactKind, ExtractionMode


class UploadStrategy(IntEnum):
    UNSPECIFIED = 0
    GRPC = 1
    SIGNED_URL = 2


class UploadDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_upload: bool
    reason: str = ""


class UploadInstructions(BaseModel):
    """Transport directive for exactly one upload.

    ``strategy`` keeps raw integers the client does not know about so that
    dispatch can reject them by value instead of failing to parse.
    """

    model_config = ConfigDict(frozen=True)

    build_id: str
    upload_id: str
    strategy: UploadStrategy | int = UploadStrategy.UNSPECIFIED
    signed_url: str = ""
    kind: ArtifactKind = ArtifactKind.DEBUGINFO

    @field_validator("strategy", mode="before")
    @classmethod
    def _known_strategy(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, UploadStrategy):
            try:
                return UploadStrategy(value)
            except ValueError:
                return value
        return value

    @property
    def strategy_name(self) -> str:
        if isinstance(self.strategy, UploadStrategy):
            return self.strategy.name
        return f"UNKNOWN({int(self.strategy)})"


class UploadSettings(BaseModel):
    store_address: str
    bearer_token: Optional[str] = None
    bearer_token_file: Optional[Path] = None
    insecure: bool = False
    insecure_skip_verify: bool = False
    no_extract: bool = False
    no_initiate: bool = False
    force: bool = False
    type: ArtifactKind = ArtifactKind.DEBUGINFO
    build_id: str = ""

    @field_validator("store_address")
    @classmethod
    def _address_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("store address must not be empty")
        return value

    @model_validator(mode="after")
    def _single_token_source(self) -> "UploadSettings":
        if self.bearer_token and self.bearer_token_file is not None:
            raise ValueError("use bearer_token or bearer_token_file, not both")
        return self


class ExtractSettings(BaseModel):
    output_dir: Path = Path("out")
    mode: ExtractionMode = ExtractionMode.KEEP_ONLY_DEBUG
    compress_dwarf_sections: bool = False
    objcopy: str = "objcopy"


class SourceSettings(BaseModel):
    out_path: Path = Path("source.tar.zstd")
