"""
Tool dispatch seam for the /mcp endpoint

Calendar and Gmail operations plug in by subclassing ToolDispatcher.
Every call receives the authenticated subject so implementations can
fetch that user's upstream token from UpstreamCredentialManager.
"""

import logging
from typing import Any, Dict, List

from mcp.types import CallToolResult, TextContent, Tool

logger = logging.getLogger(__name__)

WHOAMI_TOOL = Tool(
    name="whoami",
    description="Return the account the current credential is bound to",
    inputSchema={"type": "object", "properties": {}},
)


class ToolDispatcher:
    """Base dispatcher; serves only the built-in whoami tool"""

    def list_tools(self) -> List[Tool]:
        return [WHOAMI_TOOL]

    async def call_tool(self, name: str, arguments: Dict[str, Any], subject: str) -> CallToolResult:
        if name == WHOAMI_TOOL.name:
            return text_result(subject)
        logger.warning(f"Unknown tool requested: {name}")
        return text_result(f"Unknown tool: {name}", is_error=True)


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)
