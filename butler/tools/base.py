"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from butler.models import ToolContext, ToolDescriptor


class Tool(ABC):
    """Base class for all built-in tools."""

    name: str
    description: str
    parameters_schema: dict[str, Any]

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(name=self.name, description=self.description, parameters=self.parameters_schema)

    @abstractmethod
    async def run(self, context: ToolContext, **kwargs: Any) -> Any:
        """Execute tool with validated arguments."""
