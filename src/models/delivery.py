from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeadLetterRecord(BaseModel):
    """Failure report for a webhook delivery that exhausted its attempts."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: str = Field(alias="userID")
    encrypted_hmac_key: str = Field(default="", alias="encryptedHmacKey")
    file_path: str | None = Field(default=None, alias="filePath")
    attempt_time: datetime = Field(alias="attemptTime")
    error_message: str = Field(alias="errorMessage")

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
