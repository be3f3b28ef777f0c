"""
MCP server exposing the WhatsApp indexer tools (fastmcp, stdio transport).
"""

import logging

from fastmcp import FastMCP

from whatsapp_indexer.indexer import WhatsAppIndexer
from whatsapp_indexer.tools import ToolHandlers

logger = logging.getLogger(__name__)

SERVER_NAME = "WhatsApp Indexer"


def create_server(indexer: WhatsAppIndexer) -> FastMCP:
    """Build a FastMCP app with one tool per handler method."""
    mcp = FastMCP(SERVER_NAME)
    handlers = ToolHandlers(indexer)
    for handler in handlers.all():
        mcp.tool(handler)
    logger.debug("Registered %d tools", len(handlers.all()))
    return mcp


def serve(indexer: WhatsAppIndexer, transport: str = "stdio") -> None:
    """Run the server until the client disconnects. Logging must go to stderr."""
    mcp = create_server(indexer)
    logger.info("WhatsApp MCP server running on %s", transport)
    try:
        mcp.run(transport=transport)
    finally:
        indexer.close()
