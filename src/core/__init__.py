"""Core infrastructure: config, errors, storage."""

from src.core.config import (
    Settings,
    StorageConfig,
    FlowConfig,
    ClassifierConfig,
    SchedulerConfig,
    PreviewConfig,
    UnsubscribePolicy,
    load_settings,
)
from src.core.errors import ConversationFlowError, ErrorKind
