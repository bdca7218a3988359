"""
Agent tools: definitions and execution for tool-calling mode.

Tools: getInformation (card content index), getRules (rulings index).
The set is closed: ToolName enumerates every tool and the registry maps names
to definitions. Both tools are read-only retrieval.
"""

import asyncio
import logging
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError

from cardsage.agent.types import SearchHit, ToolDefinition, ToolResult
from cardsage.core.config import TOOL_TIMEOUT
from cardsage.core.errors import (
    CardSageError,
    ToolExecutionFailedError,
    UnknownToolError,
)
from cardsage.services.retrieval_service import (
    RetrievalAdapter,
    information_adapter,
    rules_adapter,
)

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    GET_INFORMATION = "getInformation"
    GET_RULES = "getRules"


class SearchToolInput(BaseModel):
    query: str = Field(..., min_length=1, description="The user's original question or a search query")
    similarQuestions: list[str] = Field(
        default_factory=list,
        description="Similar phrasings of the question, searched as well for better recall",
    )


async def search_merged(adapter: RetrievalAdapter, args: SearchToolInput) -> list[SearchHit]:
    """
    Search the query and every similar question, then merge.

    Hits are ordered by score descending (equal scores keep retrieval order) and
    duplicate texts are dropped, keeping the first occurrence.
    """
    queries = [args.query] + [q for q in args.similarQuestions if q and q.strip()]
    combined: list[SearchHit] = []
    for q in queries:
        combined.extend(await adapter.search(q))
    if len(queries) == 1:
        return combined
    combined.sort(key=lambda h: h.score, reverse=True)
    seen: set[str] = set()
    unique: list[SearchHit] = []
    for hit in combined:
        if hit.text and hit.text not in seen:
            seen.add(hit.text)
            unique.append(hit)
    return unique


def _search_tool(name: ToolName, description: str, adapter: RetrievalAdapter) -> ToolDefinition:
    async def invoke(args: SearchToolInput) -> list[dict[str, Any]]:
        hits = await search_merged(adapter, args)
        return [h.to_dict() for h in hits]

    return ToolDefinition(
        name=name.value,
        description=description,
        input_model=SearchToolInput,
        invoke=invoke,
    )


class ToolRegistry:
    """Read-only name -> ToolDefinition mapping, safe to share across turns."""

    def __init__(self, tools: Mapping[str, ToolDefinition], timeout: float = TOOL_TIMEOUT) -> None:
        self._tools = MappingProxyType(dict(tools))
        self.timeout = timeout

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """OpenAI function-calling format."""
        return [t.to_openai() for t in self._tools.values()]

    async def invoke(self, name: str, arguments: dict[str, Any] | None, call_id: str) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        logger.info("[tools] invoke name=%r call_id=%s arguments=%r", name, call_id, arguments)
        try:
            parsed = tool.input_model.model_validate(arguments or {})
            content = await asyncio.wait_for(tool.invoke(parsed), timeout=self.timeout)
        except ValidationError as e:
            raise ToolExecutionFailedError(name, e) from e
        except asyncio.TimeoutError as e:
            raise ToolExecutionFailedError(name, TimeoutError(f"no result after {self.timeout}s")) from e
        except CardSageError as e:
            raise ToolExecutionFailedError(name, e) from e
        logger.info("[tools] OUT name=%r call_id=%s results=%d", name, call_id, len(content))
        return ToolResult(tool_call_id=call_id, content=content)


def build_tool_registry(
    information: RetrievalAdapter | None = None,
    rules: RetrievalAdapter | None = None,
    timeout: float = TOOL_TIMEOUT,
) -> ToolRegistry:
    tools = {
        ToolName.GET_INFORMATION.value: _search_tool(
            ToolName.GET_INFORMATION,
            "Fetch relevant card information (effects, stats, archetypes) from the card knowledge base.",
            information or information_adapter(),
        ),
        ToolName.GET_RULES.value: _search_tool(
            ToolName.GET_RULES,
            "Fetch relevant Yu-Gi-Oh! rules and rulings from the rules knowledge base.",
            rules or rules_adapter(),
        ),
    }
    return ToolRegistry(tools, timeout=timeout)


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    """Process-wide registry (FastAPI dependency)."""
    return build_tool_registry()
