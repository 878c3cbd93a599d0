import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

import aiosqlite
from pydantic import BaseModel, Field, ValidationError

from .errors import ToolExecutionError, ToolValidationError, UnknownToolError
from .schemas import ToolResult


logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[Any], Awaitable[ToolResult]]


@dataclass
class ToolSpec:
    name: str
    description: str
    params_model: Type[BaseModel]
    handler: ToolHandler

    def parameters_schema(self) -> Dict[str, Any]:
        schema = self.params_model.model_json_schema()
        return {
            "type": "object",
            "properties": schema.get("properties", {}),
            "required": schema.get("required", []),
        }


class ToolRegistry:
    """Name -> validated tool callable."""

    def __init__(self, specs: Optional[List[ToolSpec]] = None):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool {spec.name} already registered")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)
        return spec

    @property
    def names(self) -> List[str]:
        return list(self._specs)

    def describe(self) -> str:
        return "\n".join(f"- {spec.name}: {spec.description}" for spec in self._specs.values())

    def catalogue(self) -> List[Dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "parameters": spec.parameters_schema()}
            for spec in self._specs.values()
        ]

    def validate(self, name: str, params: Optional[Dict[str, Any]]) -> BaseModel:
        spec = self.get(name)
        try:
            return spec.params_model.model_validate(params or {})
        except ValidationError as exc:
            missing = [".".join(str(p) for p in err["loc"]) for err in exc.errors() if err["type"] == "missing"]
            if missing:
                raise ToolValidationError(f"Missing required parameters: {', '.join(missing)}") from exc
            raise ToolValidationError(f"Invalid parameters for {name}: {exc.errors()[0]['msg']}") from exc

    async def execute(self, name: str, params: Optional[Dict[str, Any]]) -> ToolResult:
        validated = self.validate(name, params)
        spec = self._specs[name]
        logger.info("Executing tool %s with params %s", name, validated.model_dump())
        try:
            result = await spec.handler(validated)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(f"{name} failed: {exc}") from exc
        if not isinstance(result, ToolResult):
            result = ToolResult.model_validate(result)
        logger.info("Tool %s result: %s", name, "success" if result.success else "failed")
        return result


class QueryUserOrdersParams(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    user_id: str = Field(description="The user ID to look up")
    limit: int = Field(default=5, ge=1, le=50, description="Number of orders to retrieve (default: 5)")


class UserIdParams(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    user_id: str = Field(description="The user ID to look up")


class SearchConversationsParams(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    user_id: str = Field(description="User ID to search conversations for")
    keyword: str = Field(description="Keyword to search for")


class NoParams(BaseModel):
    model_config = {"extra": "ignore"}


def build_default_registry(db: Any) -> ToolRegistry:
    """Business lookups backed by the conversation store."""

    async def query_user_orders(params: QueryUserOrdersParams) -> ToolResult:
        try:
            rows = await db.get_user_orders(params.user_id, params.limit)
        except aiosqlite.Error as exc:
            return ToolResult(success=False, error=str(exc))
        return ToolResult(success=True, data=rows, count=len(rows))

    async def get_user_info(params: UserIdParams) -> ToolResult:
        try:
            row = await db.get_user(params.user_id)
        except aiosqlite.Error as exc:
            return ToolResult(success=False, error=str(exc))
        return ToolResult(success=True, data=row)

    async def search_conversations(params: SearchConversationsParams) -> ToolResult:
        try:
            rows = await db.search_messages(params.user_id, params.keyword, limit=10)
        except aiosqlite.Error as exc:
            return ToolResult(success=False, error=str(exc))
        return ToolResult(success=True, data=rows, count=len(rows))

    async def get_document_info(params: NoParams) -> ToolResult:
        try:
            rows = await db.list_documents(limit=10)
        except aiosqlite.Error as exc:
            return ToolResult(success=False, error=str(exc))
        return ToolResult(success=True, data=rows, count=len(rows))

    return ToolRegistry(
        [
            ToolSpec(
                "query_user_orders",
                "Retrieve order history for a specific user",
                QueryUserOrdersParams,
                query_user_orders,
            ),
            ToolSpec("get_user_info", "Get user profile information", UserIdParams, get_user_info),
            ToolSpec(
                "search_conversations",
                "Search through conversation history",
                SearchConversationsParams,
                search_conversations,
            ),
            ToolSpec(
                "get_document_info",
                "Get information about uploaded documents in knowledge base",
                NoParams,
                get_document_info,
            ),
        ]
    )
