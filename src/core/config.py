"""Configuration loading and models."""

import os
from enum import Enum
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel


class UnsubscribePolicy(str, Enum):
    FAIL = "fail"
    ROUTE_TO_TERMINAL = "route_to_terminal"


class StorageConfig(BaseModel):
    backend: Literal["sqlite", "supabase"] = "sqlite"
    db_path: str = "data/conversation_flow.db"


class FlowConfig(BaseModel):
    # What to do when an unsubscribe reply matches no edge, not even a fallback
    unsubscribe_policy: UnsubscribePolicy = UnsubscribePolicy.FAIL
    max_update_retries: int = 3


class ClassifierConfig(BaseModel):
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 200


class SchedulerConfig(BaseModel):
    batch_size: int = 100


class PreviewConfig(BaseModel):
    sample_lead: dict[str, str] = {
        "firstName": "Jordan",
        "lastName": "Lee",
        "company": "Acme Inc",
        "title": "VP Revenue",
        "domain": "acme.com",
    }


class Settings(BaseModel):
    storage: StorageConfig = StorageConfig()
    flow: FlowConfig = FlowConfig()
    classifier: ClassifierConfig = ClassifierConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    preview: PreviewConfig = PreviewConfig()


DEFAULT_CONFIG_PATH = Path("config")


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    data = {}
    if settings_file.exists():
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}

    settings = Settings(**data)

    # Env var overrides the YAML backend
    env_backend = os.environ.get("CONVERSATION_STORE_BACKEND", "").strip().lower()
    if env_backend:
        settings.storage = StorageConfig(backend=env_backend, db_path=settings.storage.db_path)

    return settings
