"""Configuration for the OpenAPI dispatcher."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    service_name: str = Field(default="openapi-dispatch")

    dispatch_api_root: str = Field(default="/")
    dispatch_strict: bool = Field(default=False)
    dispatch_validate: bool = Field(default=True)
    dispatch_with_context: bool = Field(default=True)

    dispatch_format_checker: bool = Field(default=False)
    dispatch_schema_draft: Optional[str] = Field(default=None)

    dispatch_document_cache_seconds: int = Field(default=3600)
    dispatch_document_timeout_seconds: float = Field(default=30)

    dispatch_log_level: str = Field(default="INFO")

    def validator_options(self) -> Dict[str, Any]:
        return {
            "format_checker": self.dispatch_format_checker,
            "draft": self.dispatch_schema_draft,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
