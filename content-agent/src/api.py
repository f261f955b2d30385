"""
Content API
===========
REST API for invoking content sub-commands from a bot gateway.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from command_plugins import BaseCommand, CommandRegistry, CommandReply, ContentCommand, ReplyKind
from logging_utils import log_event

logger = logging.getLogger(__name__)


# ============================================================================
# API Models
# ============================================================================

class CommandInfo(BaseModel):
    """Information about a sub-command."""
    name: str
    description: str
    type: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class ParentCommandInfo(BaseModel):
    """The parent command and its sub-commands."""
    name: str
    description: str
    commands: List[CommandInfo]


class InvokeRequest(BaseModel):
    """Invocation text as typed by a chat user."""
    text: str = Field(..., description="e.g. 'content.hitokoto', 'content pixiv' or 'djt'")


class CommandExecuteResponse(BaseModel):
    """Response from command execution."""
    success: bool
    command: str
    kind: ReplyKind
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def _command_info(command: BaseCommand) -> CommandInfo:
    content_type = command.content_type.value if isinstance(command, ContentCommand) else None
    return CommandInfo(
        name=command.name,
        description=command.description,
        type=content_type,
        parameters=command.parameters,
        enabled=command.enabled
    )


def _to_response(name: str, reply: CommandReply) -> CommandExecuteResponse:
    return CommandExecuteResponse(
        success=reply.success,
        command=name,
        kind=reply.kind,
        message=reply.message,
        data=reply.data or None,
        error=None if reply.success else reply.message
    )


# ============================================================================
# FastAPI Application
# ============================================================================

def create_api(registry: CommandRegistry) -> FastAPI:
    """Create FastAPI application for content commands."""

    app = FastAPI(
        title="Content Agent API",
        description="Random images, quotes and text snippets on command",
        version="1.0.0"
    )

    def _get_or_404(name: str) -> BaseCommand:
        command = registry.get_command(name)
        if command is None or not command.enabled:
            raise HTTPException(
                status_code=404,
                detail=f"Command '{name}' not found. Use GET /{registry.parent} to list available commands."
            )
        return command

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "commands": len(registry.list_commands())}

    @app.get(f"/{registry.parent}", response_model=ParentCommandInfo)
    async def list_commands():
        """List the parent command and all sub-commands."""
        return ParentCommandInfo(
            name=registry.parent,
            description=registry.description,
            commands=[_command_info(c) for c in registry.get_all_commands().values()]
        )

    @app.get(f"/{registry.parent}/{{name}}", response_model=CommandInfo)
    async def get_command(name: str):
        """Get information about a specific sub-command."""
        return _command_info(_get_or_404(name))

    @app.post(f"/{registry.parent}/{{name}}", response_model=CommandExecuteResponse)
    async def execute_command(name: str):
        """
        Execute a sub-command.

        Failures to obtain content are not HTTP errors: the response carries
        `success: false` and a user-facing message.
        """
        _get_or_404(name)

        log_event(logger, logging.INFO, f"API executing command: {name}",
                 event="api_command_execute", command=name)

        reply = await registry.dispatch(name)
        return _to_response(name, reply)

    @app.get(f"/{registry.parent}/{{name}}/raw")
    async def execute_command_raw(name: str):
        """Execute a sub-command and return the image bytes or plain text directly."""
        _get_or_404(name)

        reply = await registry.dispatch(name)
        if not reply.success:
            raise HTTPException(status_code=502, detail=reply.message)

        if reply.kind is ReplyKind.IMAGE and reply.data:
            return Response(
                content=base64.b64decode(reply.data["base64"]),
                media_type=reply.data["mime_type"]
            )
        return Response(content=reply.message, media_type="text/plain; charset=utf-8")

    @app.post("/invoke", response_model=CommandExecuteResponse)
    async def invoke(request: InvokeRequest):
        """Match chat invocation text against the registered sub-commands and execute."""
        command = registry.match(request.text)
        if command is None:
            raise HTTPException(status_code=404, detail=f"No command matches '{request.text}'")

        reply = await registry.dispatch(command.name)
        return _to_response(command.name, reply)

    return app
