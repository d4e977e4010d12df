"""
Recording and playback of agent exchanges.

RecordingAgentClient wraps a live client and persists every request/response
pair. PlaybackAgentClient answers requests from those recordings, matching by
request id, so a run over the same graph with the same limits reproduces the
same history.
"""

import logging

from machina.agent.protocol import AgentClient, AgentRequest, AgentResponse
from machina.errors import AgentUnavailableError
from machina.schemas.recording import AgentInteraction
from machina.storage.recording_store import RecordingStore

logger = logging.getLogger(__name__)


class RecordingAgentClient(AgentClient):
    """Delegates to ``inner`` and records every exchange in ``store``."""

    def __init__(self, inner: AgentClient, store: RecordingStore):
        self.inner = inner
        self.store = store

    async def decide(self, request: AgentRequest) -> AgentResponse:
        response = await self.inner.decide(request)
        await self.store.save(AgentInteraction(request=request, response=response))
        return response


class PlaybackAgentClient(AgentClient):
    """
    Replays recorded responses in place of a live agent.

    In strict mode a request with no recording under its id fails with
    AgentUnavailableError. Otherwise the next recording not yet served (in
    request id order) is used.
    """

    def __init__(self, interactions: list[AgentInteraction], strict: bool = True):
        self.strict = strict
        self._by_id = {i.request_id: i for i in interactions}
        self._order = sorted(self._by_id)
        self._served: list[str] = []

    @classmethod
    async def from_store(cls, store: RecordingStore, strict: bool = True) -> "PlaybackAgentClient":
        interactions = await store.load_all()
        logger.info(f"Loaded {len(interactions)} recordings from {store.recordings_dir}")
        return cls(interactions, strict=strict)

    def _next_unserved(self) -> AgentInteraction | None:
        for request_id in self._order:
            if request_id not in self._served:
                return self._by_id[request_id]
        return None

    async def decide(self, request: AgentRequest) -> AgentResponse:
        interaction = self._by_id.get(request.request_id)
        if interaction is None and not self.strict:
            interaction = self._next_unserved()
        if interaction is None:
            raise AgentUnavailableError(
                f"No recording for request {request.request_id}", path_id=request.path_id
            )

        recorded_tools = interaction.request.tool_names()
        if recorded_tools != request.tool_names():
            logger.warning(
                f"Tool catalogue for {request.request_id} differs from the recording: "
                f"{request.tool_names()} vs {recorded_tools}"
            )

        self._served.append(interaction.request_id)
        return interaction.response.model_copy(update={"request_id": request.request_id})

    @property
    def remaining(self) -> int:
        return len([rid for rid in self._order if rid not in self._served])

    def is_complete(self) -> bool:
        return self.remaining == 0

    def reset(self) -> None:
        self._served.clear()
