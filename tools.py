"""MCP tools served behind the OAuth proxy.

A small math server (add, divide). Replace these with real tools; the
proxy only needs the low-level server returned by create_server().
"""

import logging
import math

from fastmcp import FastMCP

logger = logging.getLogger(__name__)

mcp = FastMCP("Math-MCP-Server")


@mcp.tool()
def add(l: float, r: float) -> str:
    """Add two numbers.

    Args:
        l: Left operand
        r: Right operand

    Returns:
        The sum as text
    """
    logger.info("[TOOL] add invoked")
    return _format_number(l + r)


@mcp.tool()
def divide(l: float, r: float) -> str:
    """Divide two numbers.

    Args:
        l: Dividend
        r: Divisor

    Returns:
        The quotient as text
    """
    logger.info("[TOOL] divide invoked")
    if r == 0:
        raise ValueError("Cannot divide by zero")
    return _format_number(l / r)


def _format_number(value: float) -> str:
    # 3.0 -> "3", like a JSON number
    if math.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return str(value)


def create_server():
    """Return the low-level MCP server the session transports run."""
    return mcp._mcp_server
