"""
Configuration
=============
Command table and runtime settings.

Settings come from the environment (a `.env` file is loaded if present).
The command table is read from the JSON file named by CONTENT_COMMANDS_FILE,
either a bare list of command definitions or `{"commands": [...]}`. Without
one, the built-in default table is used.
"""

import os
import json
import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class ContentType(str, Enum):
    """Kind of content a command returns."""
    IMAGE = "image"
    TEXT = "text"
    HITOKOTO = "hitokoto"
    P6OY = "p6oy"

    @property
    def is_citation_api(self) -> bool:
        return self in (ContentType.HITOKOTO, ContentType.P6OY)

    @property
    def label(self) -> str:
        """Short user-facing name of the content kind."""
        if self is ContentType.IMAGE:
            return "图片"
        if self is ContentType.TEXT:
            return "文本"
        return "一言"


class CommandDefinition(BaseModel):
    """One row of the command table."""
    model_config = ConfigDict(frozen=True)

    # Also the cache file name, so no path separators
    name: str = Field(..., pattern=r"^[\w-]+$", description="名称")
    description: str = Field(default="", description="描述")
    type: ContentType = Field(..., description="内容类型")
    source: str = Field(..., description="附加参数")


DEFAULT_COMMANDS: List[CommandDefinition] = [
    CommandDefinition(
        name="pixiv", description="随机 Pixiv 图片", type=ContentType.IMAGE,
        source="https://raw.githubusercontent.com/YisRime/koishi-plugin-onebot-tool/main/resource/pixiv.json"
    ),
    CommandDefinition(name="hitokoto", description="随机一言", type=ContentType.HITOKOTO, source=""),
    CommandDefinition(name="sjsc", description="随机诗词", type=ContentType.P6OY, source="poetry"),
    CommandDefinition(name="djt", description="随机毒鸡汤", type=ContentType.P6OY, source="chicken"),
    CommandDefinition(name="tgrj", description="随机舔狗日记", type=ContentType.P6OY, source="dog"),
]


class Config(BaseModel):
    """Runtime configuration, constructed once at startup."""
    base_dir: Path = Field(default_factory=Path.cwd, description="Root for data/content cache files")
    commands: List[CommandDefinition] = Field(
        default_factory=lambda: list(DEFAULT_COMMANDS),
        description="命令配置"
    )
    log_level: str = Field(default="INFO")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)

    # Request timeouts in seconds
    api_timeout: float = Field(default=3.0, gt=0)
    json_timeout: float = Field(default=60.0, gt=0)
    image_timeout: float = Field(default=30.0, gt=0)

    @model_validator(mode='after')
    def validate_unique_command_names(self):
        """Command names must be unique across the table."""
        seen = set()
        for command in self.commands:
            if command.name in seen:
                raise ValueError(f"Duplicate command name: {command.name}")
            seen.add(command.name)
        return self


def load_commands(path: Path) -> List[CommandDefinition]:
    """Read a command table from a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if isinstance(raw, dict):
        raw = raw.get("commands", [])
    if not isinstance(raw, list):
        raise ValueError(f"Command table in {path} must be a JSON array")

    return [CommandDefinition.model_validate(entry) for entry in raw]


def get_config(env_file: Optional[str] = None) -> Config:
    """Build the configuration from the environment."""
    load_dotenv(env_file)

    settings = {
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "api_host": os.getenv("API_HOST", "0.0.0.0"),
        "api_port": int(os.getenv("API_PORT", "8080")),
        "api_timeout": float(os.getenv("API_TIMEOUT", "3")),
        "json_timeout": float(os.getenv("JSON_TIMEOUT", "60")),
        "image_timeout": float(os.getenv("IMAGE_TIMEOUT", "30")),
    }

    base_dir = os.getenv("CONTENT_BASE_DIR")
    if base_dir:
        settings["base_dir"] = Path(base_dir)

    commands_file = os.getenv("CONTENT_COMMANDS_FILE")
    if commands_file:
        settings["commands"] = load_commands(Path(commands_file))
        logger.info(f"Loaded {len(settings['commands'])} commands from {commands_file}")

    return Config(**settings)
