"""
Azure OpenAI client for tool-calling agent turns.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import AzureOpenAI, OpenAIError

from edit_worker.config import get_config
from edit_worker.errors import ModelInvocationError
from edit_worker.schemas import ModelTurn, ToolCallRequest

logger = logging.getLogger(__name__)


class AzureOpenAIClient:
    """Client for Azure OpenAI chat completions with function calling."""

    def __init__(self, max_retries: int = 2):
        config = get_config()

        # The SDK retries connection errors, 429s and 5xx on its own
        self.client = AzureOpenAI(
            api_key=config.azure_openai_api_key,
            api_version=config.azure_openai_api_version,
            azure_endpoint=config.azure_openai_endpoint,
            max_retries=max_retries,
        )
        self.deployment = config.azure_openai_deployment_name

    def invoke_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> ModelTurn:
        """
        Run one reasoning step: the model may answer, call tools, or both.

        Args:
            messages: Conversation so far, in chat-completions format
            tools: Tool specifications the model may call

        Returns:
            The model's text, proposed tool calls and token usage

        Raises:
            ModelInvocationError: If the request fails after the SDK's retries
        """
        try:
            response = self.client.chat.completions.create(
                model=self.deployment,
                messages=messages,
                tools=tools,
                tool_choice="auto",
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            raise ModelInvocationError(f"Model request failed: {e}") from e

        if not response.choices:
            raise ModelInvocationError("Model returned no choices")

        message = response.choices[0].message
        tool_calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]

        return ModelTurn(
            text=message.content,
            tool_calls=tool_calls,
            usage=self._usage(response),
        )

    def _usage(self, response: Any) -> Optional[Dict[str, Any]]:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        return {
            "promptTokens": usage.prompt_tokens,
            "completionTokens": usage.completion_tokens,
            "totalTokens": usage.total_tokens,
        }


# Global client instance
_client: Optional[AzureOpenAIClient] = None


def get_azure_client() -> AzureOpenAIClient:
    """Get the global Azure OpenAI client instance."""
    global _client
    if _client is None:
        _client = AzureOpenAIClient()
    return _client
