"""
Engine error taxonomy.

Validation problems surface as pydantic ``ValidationError`` and store
problems as SQLAlchemy ``SQLAlchemyError``; everything the engine itself
refuses to do is a ``DomainError``. The tool boundary maps all three to
an error envelope instead of letting them escape.
"""


class ProcurementError(Exception):
    """Base class for errors raised by the procurement engine."""

    error_type = "engine"


class DomainError(ProcurementError):
    """A well-formed request that the current data cannot satisfy."""

    error_type = "domain"


class UnknownToolError(ProcurementError):
    """No tool is registered under the requested name."""

    error_type = "unknown_tool"

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class InvalidRequestError(ProcurementError):
    """A request field is missing or malformed; raised before any query runs."""

    error_type = "validation"
