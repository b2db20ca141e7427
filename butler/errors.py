"""Error taxonomy for the agent core.

Every error here is recovered somewhere: router failures fall back to the
deep tier, provider errors become tool-result envelopes the model can adapt
to, and job failures are rescheduled or escalated.
"""

from __future__ import annotations


class ButlerError(Exception):
    """Base class for recoverable agent errors."""


class RouterFailure(ButlerError):
    """The tier classifier returned nothing usable."""


class ProviderConnectError(ButlerError):
    """An external tool provider could not be connected."""

    def __init__(self, provider_id: str, reason: str) -> None:
        super().__init__(f"Provider '{provider_id}' failed to connect: {reason}")
        self.provider_id = provider_id


class ProviderCallError(ButlerError):
    """A federated tool call failed on the provider side."""


class ProviderUnavailable(ProviderCallError):
    """The provider owning a tool is no longer connected."""


class ToolNotFound(ButlerError):
    """No built-in or federated tool has this name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(ButlerError):
    """A tool raised while running."""


class JobFailure(ButlerError):
    """A scheduled job's turn did not produce a usable reply."""
