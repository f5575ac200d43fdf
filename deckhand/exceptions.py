"""Custom exceptions for Deckhand."""


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class LLMError(DeckhandError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(DeckhandError):
    """Tool execution errors."""

    kind = "execution"


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolTimeoutError(ToolExecutionError):
    """Tool execution exceeded its time budget."""

    kind = "timeout"

    def __init__(self, tool_name: str, timeout_seconds: float):
        label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
        super().__init__(tool_name, f"Execution timed out after {label}s")
        self.timeout_seconds = timeout_seconds


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    kind = "not_found"

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments are missing or malformed."""

    kind = "validation"

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class AgentError(DeckhandError):
    """Reasoning loop errors."""

    pass


class StepBudgetExceededError(AgentError):
    """Reasoning loop needed more model calls than allowed."""

    def __init__(self, max_steps: int):
        super().__init__(f"Step budget exceeded: no final answer after {max_steps} steps")
        self.max_steps = max_steps
