from __future__ import annotations


class AgentRelayError(RuntimeError):
    pass


class ArgumentValidationError(AgentRelayError):
    """
    Tool-call arguments did not match the tool's parameter schema.
    Reported back to the model as a failed tool result, never raised out of a run.
    """

    def __init__(self, tool_name: str, problems: list[str]):
        self.tool_name = tool_name
        self.problems = list(problems)
        super().__init__(f"Invalid arguments for {tool_name}: " + "; ".join(self.problems))


class ModelBackendError(AgentRelayError):
    """
    The language model backend failed or produced output we cannot act on.
    Fatal to the current run only.
    """
