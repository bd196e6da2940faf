# src/agents/llm_agent.py
from openai import AsyncOpenAI, RateLimitError
from typing import Any, Dict, List, Optional
from src.config.settings import Settings
import asyncio
import logging

logger = logging.getLogger(__name__)


class ChatAgent:
    """Async OpenAI chat completion client used by every pipeline stage."""

    def __init__(self, config: Settings, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.openai_timeout_seconds,
        )
        self.model = config.openai_llm_model
        self.max_retries = max(1, config.openai_max_retries)

    async def complete(
        self,
        system_prompt: str,
        messages: List[dict],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Send a conversation to the chat model and return the raw reply text.

        When the model answers with a tool call, the tool-call argument string
        is returned instead of the message content. Uses exponential backoff
        retry logic for rate limit errors; any other error is raised immediately.

        Args:
            system_prompt: System message prepended to the conversation
            messages: List of message dicts (e.g., [{"role": "user", "content": "Hello"}])
            tools: Optional function-calling tool definitions
            tool_choice: Optional tool choice (e.g., force a specific tool)
            temperature: Optional sampling temperature

        Returns:
            The tool-call arguments or the assistant's reply as a string.
        """
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        if tools:
            request["tools"] = tools
            if tool_choice is not None:
                request["tool_choice"] = tool_choice
        if temperature is not None:
            request["temperature"] = temperature

        base_delay = 1.0  # Start with 1 second delay

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(**request)
                break
            except RateLimitError:
                if attempt == self.max_retries - 1:
                    # Last attempt, raise the error
                    raise

                delay = base_delay * (2 ** attempt)
                logger.warning(f"Rate limit hit on chat completion. Retrying in {delay}s... (attempt {attempt + 1}/{self.max_retries})")
                await asyncio.sleep(delay)

        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None)
        if tool_calls:
            return tool_calls[0].function.arguments or ""
        return message.content or ""

    async def chat_single(self, prompt: str, system_prompt: str = "You are a helpful assistant.") -> str:
        """
        Send a single prompt to the chat model and get the response.

        Args:
            prompt: The user's prompt as a string.
            system_prompt: Optional system message

        Returns:
            The assistant's reply as a string.
        """
        return await self.complete(system_prompt, [{"role": "user", "content": prompt}])
