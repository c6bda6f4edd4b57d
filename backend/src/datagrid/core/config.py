"""Configuration settings for the application.

This module defines the configuration settings using Pydantic's
SettingsConfigDict to load environment variables from a .env file.
"""

import logging
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("uvicorn")


class ClientSettings(BaseSettings):
    """Data table client configuration."""
    model_config = SettingsConfigDict(
        env_prefix="DATAGRID_CLIENT_",
        extra="ignore",
        env_file=["../../.env", "../.env", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    api_url: Optional[str] = "http://localhost:8000/api/v1/records"
    facets_url: Optional[str] = None  # Derived from api_url when unset
    request_timeout: float = 30.0
    default_page_size: int = 10

    # Debounce windows in milliseconds
    search_debounce_ms: int = 500
    url_write_debounce_ms: int = 300

    url_expanded_limit: int = 10
    recent_search_limit: int = 5
    local_storage_path: Optional[str] = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".datagrid", "local_storage.json")
    )


class Settings(BaseSettings):
    """Settings class for the application."""

    # ENVIRONMENT CONFIG
    environment: str = "dev"
    testing: bool = bool(0)

    # API CONFIG
    project_name: str = "Data Grid API"
    api_v1_str: str = "/api/v1"
    backend_cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
    ]

    # DATA CONFIG
    data_path: str = "data/records.json"
    id_key: str = "id"
    facet_fields: List[str] = [
        "work.title",
        "work.department",
        "work.company",
        "work.contractType",
        "profile.nationality",
        "contact.address.city",
    ]
    simulated_latency_ms: int = 0
    default_page_size: int = 10

    # CLIENT CONFIG
    client: ClientSettings = Field(default_factory=lambda: ClientSettings())

    model_config = SettingsConfigDict(
        env_file=["../../.env", "../.env", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get the settings for the application."""
    logger.info("Loading config settings from the environment...")

    settings = Settings()

    if settings.simulated_latency_ms:
        logger.info(f"Simulating {settings.simulated_latency_ms}ms response latency")

    return settings
