"""
Recording Schema - one persisted agent exchange.

Recordings are keyed by request id so a playback client can answer the same
request with the same response on a later run.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from machina.agent.protocol import AgentRequest, AgentResponse


class AgentInteraction(BaseModel):
    """A request/response pair as exchanged with the agent."""

    request: AgentRequest
    response: AgentResponse
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def request_id(self) -> str:
        return self.request.request_id
