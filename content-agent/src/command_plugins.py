"""
Command Plugin System
=====================
One parent command (`content`) with one sub-command per configured entry.

Each sub-command is a ContentCommand built from a CommandDefinition. Custom
commands can be added by subclassing BaseCommand:

```python
from command_plugins import BaseCommand, CommandReply

class PingCommand(BaseCommand):
    name = "ping"
    description = "Reply with pong"

    async def execute(self, params: dict) -> CommandReply:
        return CommandReply.text("pong")
```

and registering an instance with `CommandRegistry.register_command()`.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from config import CommandDefinition, ContentType
from content_resolver import ContentResolver, parse_image_markup
from logging_utils import log_event

logger = logging.getLogger(__name__)

PARENT_COMMAND = "content"
PARENT_DESCRIPTION = "随机内容"


# =============================================================================
# Base Classes
# =============================================================================

class CommandStatus(str, Enum):
    """Status of command execution."""
    SUCCESS = "success"
    FAILED = "failed"


class ReplyKind(str, Enum):
    """How the host should deliver a reply."""
    TEXT = "text"
    IMAGE = "image"


@dataclass
class CommandReply:
    """Result of a command execution."""
    status: CommandStatus
    kind: ReplyKind = ReplyKind.TEXT
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is CommandStatus.SUCCESS

    @classmethod
    def text(cls, message: str) -> 'CommandReply':
        return cls(status=CommandStatus.SUCCESS, kind=ReplyKind.TEXT, message=message)

    @classmethod
    def image(cls, markup: str) -> 'CommandReply':
        data = {}
        parsed = parse_image_markup(markup)
        if parsed:
            data = {"mime_type": parsed[0], "base64": parsed[1]}
        return cls(status=CommandStatus.SUCCESS, kind=ReplyKind.IMAGE, message=markup, data=data)

    @classmethod
    def failed(cls, message: str) -> 'CommandReply':
        return cls(status=CommandStatus.FAILED, kind=ReplyKind.TEXT, message=message)


class BaseCommand(ABC):
    """
    Base class for all sub-commands.

    Subclasses must:
    - Set `name` class attribute
    - Set `description` class attribute
    - Implement `execute()` method
    """

    name: str = "unnamed"
    description: str = ""
    parameters: Dict[str, Dict[str, Any]] = {}
    enabled: bool = True

    @abstractmethod
    async def execute(self, params: Dict[str, Any]) -> CommandReply:
        """Execute the command with given parameters."""
        pass

    def get_help_line(self) -> str:
        if self.description:
            return f"{PARENT_COMMAND}.{self.name}  {self.description}"
        return f"{PARENT_COMMAND}.{self.name}"


class ContentCommand(BaseCommand):
    """Sub-command that returns random content from its configured source."""

    def __init__(self, definition: CommandDefinition, resolver: ContentResolver):
        self.definition = definition
        self.resolver = resolver
        self.name = definition.name
        self.description = definition.description

    @property
    def content_type(self) -> ContentType:
        return self.definition.type

    async def execute(self, params: Optional[Dict[str, Any]] = None) -> CommandReply:
        label = self.content_type.label
        try:
            result = await self.resolver.resolve(self.content_type, self.definition.source, self.name)
            if not result.success:
                return CommandReply.failed(f"获取{label}失败: {result.error}")
            if self.content_type is ContentType.IMAGE:
                return CommandReply.image(result.data)
            return CommandReply.text(result.data)
        except Exception as e:
            logger.error(f"发送{label}失败: {e}", exc_info=True)
            return CommandReply.failed(f"发送{label}时出错，请稍后再试")


# =============================================================================
# Command Registry
# =============================================================================

class CommandRegistry:
    """
    Registry for the parent command and its sub-commands.

    Usage:
        registry = CommandRegistry(resolver)
        registry.register_commands(config.commands)

        reply = await registry.dispatch("hitokoto")
    """

    def __init__(self, resolver: ContentResolver, parent: str = PARENT_COMMAND,
                 description: str = PARENT_DESCRIPTION):
        self.resolver = resolver
        self.parent = parent
        self.description = description
        self._commands: Dict[str, BaseCommand] = {}

    def register_commands(self, definitions: Iterable[CommandDefinition]) -> int:
        """Register one ContentCommand per definition. Returns the number added."""
        added = 0
        for definition in definitions:
            if definition.name in self._commands:
                logger.warning(f"Duplicate command name: {definition.name} (keeping first)")
                continue
            self.register_command(ContentCommand(definition, self.resolver))
            added += 1
        return added

    def register_command(self, command: BaseCommand):
        """Register a command instance, replacing any with the same name."""
        self._commands[command.name] = command
        log_event(logger, logging.DEBUG, f"Registered command: {self.parent}.{command.name}",
                 event="command_registered", command=command.name)

    def unregister_command(self, name: str):
        self._commands.pop(name, None)

    def get_command(self, name: str) -> Optional[BaseCommand]:
        return self._commands.get(name)

    def has_command(self, name: str) -> bool:
        return name in self._commands

    def list_commands(self) -> List[str]:
        """Sub-command names in registration order."""
        return list(self._commands.keys())

    def get_all_commands(self) -> Dict[str, BaseCommand]:
        return self._commands.copy()

    def match(self, text: str) -> Optional[BaseCommand]:
        """
        Find the sub-command addressed by invocation text.

        Accepts `content.<name>`, `content <name>` and bare `<name>`; a leading
        `/` is ignored.
        """
        words = text.strip().lstrip("/").split()
        if not words:
            return None

        head = words[0]
        prefix = f"{self.parent}."
        if head.startswith(prefix):
            name = head[len(prefix):]
        elif head == self.parent:
            if len(words) < 2:
                return None
            name = words[1]
        else:
            name = head

        command = self._commands.get(name)
        if command is None or not command.enabled:
            return None
        return command

    async def dispatch(self, name: str, params: Optional[Dict[str, Any]] = None) -> Optional[CommandReply]:
        """Execute a sub-command by name. Returns None if it does not exist."""
        command = self._commands.get(name)
        if command is None or not command.enabled:
            return None

        reply = await command.execute(params or {})
        log_event(logger, logging.INFO, f"Command executed: {self.parent}.{name}",
                 event="command_executed", command=name, success=reply.success, kind=reply.kind.value)
        return reply

    def get_help_text(self) -> str:
        """Usage text for the parent command."""
        lines = [f"{self.parent}  {self.description}"]
        for command in self._commands.values():
            if command.enabled:
                lines.append(f"  {command.get_help_line()}")
        return "\n".join(lines)


__all__ = [
    "BaseCommand",
    "CommandReply",
    "CommandStatus",
    "ReplyKind",
    "ContentCommand",
    "CommandRegistry",
]
