"""Custom exceptions for chat-pipeline."""


class ChatPipelineError(Exception):
    """Base exception for chat-pipeline."""

    pass


class ConfigurationError(ChatPipelineError):
    """Configuration-related errors."""

    pass


class PipelineError(ChatPipelineError):
    """Fatal pipeline execution errors."""

    pass


class LoopError(PipelineError):
    """A repeating stage-execution pattern was detected."""

    def __init__(self, pattern: list[str], count: int, occurrences: list[int]):
        super().__init__(
            f"a loop was detected: pattern of {len(pattern)} stage(s) repeated {count} times"
        )
        self.pattern = pattern
        self.count = count
        self.occurrences = occurrences


class ExpectationExhaustedError(PipelineError):
    """Expectations kept rejecting the response until attempts ran out."""

    def __init__(self, attempts: int):
        super().__init__(
            "Maximum call stack exceeded while evaluating expectations "
            f"({attempts} attempts). Please check your expectations for loops "
            "or excessive complexity."
        )
        self.attempts = attempts


class ToolLoopError(PipelineError):
    """A tool was invoked repeatedly from within its own stage."""

    def __init__(self, tool_name: str):
        super().__init__(f"Function Loop - function: {tool_name}")
        self.tool_name = tool_name


class MoveTargetNotFoundError(PipelineError):
    """move_to() referenced a stage id that is not in the pipeline."""

    def __init__(self, stage_id: str):
        super().__init__(f"No Pipeline Stage with id {stage_id}")
        self.stage_id = stage_id


class BranchWithoutJoinError(PipelineError):
    """branch_for_each() executed without a following join()."""

    def __init__(self) -> None:
        super().__init__("branch_for_each requires a join()")


class ToolError(ChatPipelineError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"function not found: {tool_name}")
        self.tool_name = tool_name


class ToolHandlerError(ToolError):
    """Tool handler raised while executing."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ArgumentParseError(ToolError):
    """Tool call arguments could not be parsed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Error parsing function arguments for {tool_name}: {message}")
        self.tool_name = tool_name


class BackendError(ChatPipelineError):
    """Model backend errors."""

    pass


class BackendAPIError(BackendError):
    """Model backend API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(ChatPipelineError):
    """Storage-related errors."""

    pass


class ChatNotFoundError(StorageError):
    """Chat not found."""

    def __init__(self, chat_id: str):
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id
