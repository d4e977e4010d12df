"""LLM-backed agent client: turns an AgentRequest into one tool call."""

import json
import logging
import re
from typing import Any

from machina.agent.protocol import AgentClient, AgentRequest, AgentResponse
from machina.config import RuntimeConfig
from machina.errors import AgentUnavailableError
from machina.llm.litellm import LiteLLMProvider
from machina.llm.provider import LLMProvider, LLMResponse, Tool

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class LLMAgentClient(AgentClient):
    """
    Asks an LLM to pick one tool from the catalogue.

    The provider's native tool call is used when present. Otherwise a JSON
    object in the text reply is accepted:
    ``{"tool": "...", "arguments": {...}, "reasoning": "..."}``. A reply with
    neither becomes an empty tool name, which the dispatcher rejects as an
    invalid call.
    """

    def __init__(self, llm: LLMProvider, max_tokens: int = 1024):
        self.llm = llm
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: RuntimeConfig | None = None) -> "LLMAgentClient":
        config = config or RuntimeConfig()
        provider = LiteLLMProvider(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            temperature=config.temperature,
        )
        return cls(provider, max_tokens=config.max_tokens)

    def _messages(self, request: AgentRequest) -> list[dict[str, Any]]:
        content = "Decision context:\n" + json.dumps(request.context, indent=2, sort_keys=True, default=str)
        if request.feedback:
            content += "\n\nResults of your earlier tool calls at this node:\n" + json.dumps(
                request.feedback, indent=2, default=str
            )
        return [{"role": "user", "content": content}]

    async def decide(self, request: AgentRequest) -> AgentResponse:
        tools = [Tool(name=t["name"], description=t["description"], parameters=t["parameters"]) for t in request.tools]
        try:
            response = await self.llm.acomplete(
                messages=self._messages(request),
                system=request.system_prompt,
                tools=tools,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            raise AgentUnavailableError(f"LLM call failed: {e}", path_id=request.path_id) from e
        return self._to_agent_response(request, response)

    def _to_agent_response(self, request: AgentRequest, response: LLMResponse) -> AgentResponse:
        if response.tool_calls:
            call = response.tool_calls[0]
            if len(response.tool_calls) > 1:
                logger.warning(
                    f"LLM returned {len(response.tool_calls)} tool calls for {request.request_id}, using the first"
                )
            return AgentResponse(
                request_id=request.request_id,
                tool_name=call.name,
                arguments=call.input,
                reasoning=response.content,
            )

        match = _JSON_OBJECT_RE.search(response.content or "")
        if match:
            try:
                data = json.loads(match.group())
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                arguments = data.get("arguments")
                return AgentResponse(
                    request_id=request.request_id,
                    tool_name=str(data.get("tool") or data.get("tool_name") or ""),
                    arguments=arguments if isinstance(arguments, dict) else {},
                    reasoning=str(data.get("reasoning", "")),
                )

        logger.warning(f"LLM reply for {request.request_id} named no tool")
        return AgentResponse(request_id=request.request_id, tool_name="", reasoning=response.content)
