"""
Tools Router — the JSON tool boundary over HTTP.

Each engine operation is a named tool taking one JSON object. Failures
come back in the envelope with HTTP 200; only an unknown tool name is 404.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from api.tools import TOOLS, invoke_tool, list_tools

router = APIRouter(prefix="/api/v1/tools", tags=["tools"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ToolInfo(BaseModel):
    name: str
    description: str


class ToolError(BaseModel):
    type: str
    message: str


class ToolEnvelope(BaseModel):
    success: bool
    data: Any = None
    error: ToolError | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[ToolInfo])
async def get_tools():
    """List registered tools."""
    return list_tools()


@router.post("/{tool_name}", response_model=ToolEnvelope)
async def call_tool(
    tool_name: str,
    payload: dict[str, Any] | None = Body(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Invoke a tool with its JSON argument object."""
    if tool_name not in TOOLS:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
    return await invoke_tool(db, tool_name, payload)
