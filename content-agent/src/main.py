#!/usr/bin/env python3
"""
Content Agent
=============
Serves random images, quotes and text snippets to a chat bot.

Commands come from the configured command table; each one becomes a
sub-command of `content` and is reachable through the HTTP API.
"""

import asyncio
import logging

import uvicorn

from api import create_api
from config import Config, get_config
from command_plugins import CommandRegistry
from content_resolver import ContentResolver, ResolverContext
from file_access import FileAccess
from logging_utils import setup_logging, log_event

logger = logging.getLogger(__name__)


class ContentAgent:
    """
    Wires configuration, resolver, command registry and API together.
    """

    def __init__(self, config: Config):
        self.config = config

        logger.info("Initializing Content Agent...")

        # Core components
        self.files = FileAccess()
        self.context = ResolverContext.from_config(config, files=self.files)
        self.resolver = ContentResolver(self.context)
        self.registry = CommandRegistry(self.resolver)
        self.app = create_api(self.registry)

        self.server = None

    def register_commands(self) -> int:
        count = self.registry.register_commands(self.config.commands)
        log_event(logger, logging.INFO, f"Registered {count} content commands",
                 event="commands_ready", commands=self.registry.list_commands())
        return count

    def build_server(self) -> uvicorn.Server:
        """
        Create the API server.

        uvicorn captures SIGINT/SIGTERM while serving and shuts down by
        setting `should_exit`, the same flag stop() sets.
        """
        server_config = uvicorn.Config(
            self.app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_level="warning"
        )
        self.server = uvicorn.Server(server_config)
        return self.server

    async def start(self):
        """Register commands and serve the API until stopped."""
        self.register_commands()
        self.build_server()

        log_event(logger, logging.INFO, f"API listening on {self.config.api_host}:{self.config.api_port}",
                 event="api_started", host=self.config.api_host, port=self.config.api_port)
        await self.server.serve()

    async def stop(self):
        """Stop the API server."""
        logger.info("Stopping...")
        if self.server:
            self.server.should_exit = True


async def main():
    """Main entry point."""
    config = get_config()
    setup_logging(config.log_level)

    agent = ContentAgent(config)

    try:
        await agent.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        await agent.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
