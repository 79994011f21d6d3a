"""Model backend interface and the Ollama reference adapter."""

import inspect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from chat_pipeline.exceptions import BackendAPIError, BackendError
from chat_pipeline.logging import get_logger
from chat_pipeline.messages import (
    ContextMessage,
    ErrorMessage,
    FunctionMessage,
    InstructionMessage,
    Message,
    PromptMessage,
    ResponseMessage,
    RuleMessage,
    ToolResultMessage,
)

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class TextChunk:
    """A fragment of streamed response text."""

    text: str
    type: str = "text"


@dataclass
class ToolCallChunk:
    """A complete tool invocation requested by the backend."""

    name: str
    arguments: str = ""
    call_id: str | None = None
    type: str = "tool-call"


@dataclass
class UsageChunk:
    """Token usage reported for the request."""

    input: int = 0
    output: int = 0
    type: str = "usage"


StreamChunk = TextChunk | ToolCallChunk | UsageChunk


@dataclass
class ToolDefinition:
    """Definition of a tool for the backend."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class StreamRequest:
    """Everything a backend needs to produce one streamed reply."""

    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    response_size: int | None = None
    user: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


class ModelBackend(ABC):
    """Abstract base class for model backends.

    Backends own tokenization and transport. The engine only asks them what a
    message or a whole window costs and consumes the chunk stream.
    """

    @abstractmethod
    def token_cost(self, message: Message) -> int:
        pass

    @abstractmethod
    def window_cost(self, messages: list[Message]) -> int:
        pass

    def tool_cost(self, tools: list[ToolDefinition]) -> dict[str, int]:
        """Token overhead of offering ``tools``; ``total`` holds the sum."""
        return {"total": 0}

    @abstractmethod
    def stream(self, request: StreamRequest) -> AsyncIterator[StreamChunk]:
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


async def close_backend(backend: ModelBackend) -> None:
    """Close a backend whose ``close`` may be sync or async."""
    result = backend.close()
    if inspect.isawaitable(result):
        await result


def to_chat_message(message: Message) -> dict[str, Any]:
    """Map a history message onto the role/content chat format."""
    if isinstance(message, PromptMessage):
        return {"role": message.role, "content": message.as_text()}
    if isinstance(message, ContextMessage):
        return {"role": message.role, "content": message.content}
    if isinstance(message, ResponseMessage):
        return {"role": "assistant", "content": message.text}
    if isinstance(message, FunctionMessage):
        try:
            arguments = json.loads(message.arguments) if message.arguments else {}
        except json.JSONDecodeError:
            arguments = {"raw": message.arguments}
        return {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": message.name, "arguments": arguments}}],
        }
    if isinstance(message, ToolResultMessage):
        return {"role": "tool", "content": message.as_text(), "tool_name": message.name}
    if isinstance(message, (RuleMessage, InstructionMessage, ErrorMessage)):
        return {"role": "system", "content": message.as_text()}
    raise BackendError(f"Unsupported message type: {message.type!r}")


class OllamaBackend(ModelBackend):
    """Direct Ollama API backend."""

    tokens_per_message = 3
    reply_priming_tokens = 3

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        """Initialize Ollama backend.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            timeout: HTTP timeout in seconds
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.timeout = timeout

        self.client = self._new_client()

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
        )

    @staticmethod
    def count_tokens(text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # Rough estimate: ~1 token per 4 characters for English
        return len(text) // 4

    def token_cost(self, message: Message) -> int:
        return self.count_tokens(message.as_text())

    def window_cost(self, messages: list[Message]) -> int:
        """Estimate the cost of sending ``messages``, OpenAI-cookbook style."""
        total = 0
        for message in messages:
            total += self.tokens_per_message + message.tokens.message
        return total + self.reply_priming_tokens

    def tool_cost(self, tools: list[ToolDefinition]) -> dict[str, int]:
        if not tools:
            return {"total": 0}
        costs: dict[str, int] = {"total": 12}
        for tool in tools:
            count = 7 + self.count_tokens(f"{tool.name}:{tool.description}")
            properties = (tool.parameters or {}).get("properties", {}) or {}
            if properties:
                count += 3
            for key, spec in properties.items():
                count += 3 + self.count_tokens(
                    f"{key}:{spec.get('type', '')}:{spec.get('description', '')}"
                )
            costs[tool.name] = count
            costs["total"] += count
        return costs

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
        ]

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamChunk]:
        """Stream a completion."""
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {
            "temperature": request.options.get("temperature", self.temperature),
            "num_predict": request.response_size or self.max_tokens,
        }
        body: dict[str, Any] = {
            "model": request.options.get("model", self.model),
            "messages": [to_chat_message(m) for m in request.messages],
            "stream": True,
            "options": options,
        }
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)

        # pipelines close their backend when they finish; clones reuse it
        if self.client.is_closed:
            self.client = self._new_client()

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                call_index = 0
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    message = chunk.get("message", {})
                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function", {})
                        arguments = function.get("arguments", {})
                        call_index += 1
                        yield ToolCallChunk(
                            name=function.get("name", ""),
                            arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
                            call_id=tc.get("id") or f"ollama_call_{call_index}",
                        )
                    if message.get("content"):
                        yield TextChunk(text=message["content"])
                    if chunk.get("done"):
                        yield UsageChunk(
                            input=chunk.get("prompt_eval_count", 0),
                            output=chunk.get("eval_count", 0),
                        )
                        break

        except BackendError:
            raise
        except httpx.HTTPError as e:
            raise BackendAPIError(f"Ollama streaming error: {e}")
        except Exception as e:
            raise BackendError(f"Ollama stream failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_backend(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> ModelBackend:
    """Create a model backend.

    Args:
        provider: Provider name (only ``ollama`` ships with the package)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: HTTP timeout in seconds

    Returns:
        Configured ModelBackend instance
    """
    if provider == "ollama":
        return OllamaBackend(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a ModelBackend.")


def create_backend_from_config() -> ModelBackend:
    """Create the backend described by the global configuration."""
    from chat_pipeline.config import get_config

    cfg = get_config()
    return create_backend(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
        timeout=cfg.model.timeout,
    )
