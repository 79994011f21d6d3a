"""chat-pipeline - staged, multi-turn conversations with language model backends."""

__version__ = "0.1.0"

from chat_pipeline.agent import Agent, Settings
from chat_pipeline.config import Config
from chat_pipeline.expect import ExpectError, json_blocks, reject
from chat_pipeline.messages import Visibility
from chat_pipeline.rules import CODE_BLOCK_RULE, Rule

__all__ = [
    "Agent",
    "Settings",
    "Config",
    "ExpectError",
    "json_blocks",
    "reject",
    "Visibility",
    "Rule",
    "CODE_BLOCK_RULE",
    "__version__",
]
