"""
Chat completion client for the assistant persona.

Requests go to a server-side proxy first (keeps the API key off the
client); if the proxy fails the request is retried once against the
OpenAI-compatible Groq endpoint directly. An empty reply counts as a
failure.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from agent.knowledge import KnowledgeBase
from core.errors import GenerationFailed, StoppedByUser
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class LLMConfig:
    """Configuration for the chat completion client."""
    model_name: str = "llama-3.1-8b-instant"
    temperature: float = 0.8
    max_tokens: int = 1024
    top_p: float = 0.9
    frequency_penalty: float = 0.2
    presence_penalty: float = 0.2
    stop: List[str] = field(default_factory=lambda: ["---", "###"])
    proxy_url: str = ""  # e.g. https://example.com/.netlify/functions/groq-chat
    direct_url: str = "https://api.groq.com/openai/v1/chat/completions"
    timeout: float = 30.0
    company_name: str = "Resonira Technologies"
    assistant_name: str = "Jessi"
    company_description: str = ""
    system_prompt: str = ""  # overrides the built-in persona when set


@dataclass
class LLMResponse:
    """Response from the chat endpoint including metadata."""
    content: str
    latency_ms: float
    model: str
    source: str = "proxy"  # "proxy" or "direct"
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class SystemPromptTemplate:
    """Builds the persona prompt with domain restrictions and company knowledge."""

    RESONIRA_SERVICES = ("IT consulting, AI solutions, software development, cloud services, "
                         "and helping businesses transform through innovative technology")

    TEMPLATE = """You are {assistant}, the friendly, natural-sounding AI voice assistant for {company}.
You sound and act like a real person: conversational, relaxed and helpful.

CORE PURPOSE
Your only job is to talk about {company}: its services, products, business solutions and related topics.
Help users understand what {company} offers, discuss their needs, and point them to the "Book a Call" button in the navigation bar when they want to schedule a meeting.

RESTRICTIONS
1. Never describe yourself as a generic AI assistant.
2. Never say you can answer questions, generate text or provide general info.
3. Never answer general knowledge questions (politics, science, history, news).
4. Never talk about other companies, products or celebrities.
5. If asked something off-topic, politely redirect: "Oh, I'm actually here to help with {company} stuff. What can I tell you about our services?"

WHEN ASKED WHAT YOU CAN DO
Say naturally that you can help them understand what {company} can do for their business, understand their requirements and give suggestions, or tell them about {company}'s services: {services}.
Finish with a friendly follow-up question.

WHEN THE USER WANTS A MEETING
Tell them to click the "Book a Call" button in the top navigation bar. Keep it under 30 words.

STYLE
Speak like a human: short, warm and confident. Use contractions. Mix short and medium sentences.
Keep responses under 40 words, one clear idea per response. Never sound robotic or formal.

Today's date is {current_date}."""

    @classmethod
    def format(cls, config: LLMConfig, knowledge: Optional[KnowledgeBase] = None,
               current_date: Optional[str] = None) -> str:
        if current_date is None:
            current_date = datetime.now().strftime("%Y-%m-%d")

        if config.system_prompt:
            prompt = config.system_prompt
        else:
            if "Resonira" in config.company_name:
                services = cls.RESONIRA_SERVICES
            else:
                services = config.company_description or "our products and services"
            prompt = cls.TEMPLATE.format(
                assistant=config.assistant_name,
                company=config.company_name,
                services=services,
                current_date=current_date,
            )

        if knowledge is not None and knowledge.initialized:
            company_info = knowledge.company_info()
            if company_info:
                prompt += ("\n\nCOMPANY & TEAM INFO\n"
                           "Critical facts about the company and leadership team. Always use this truth.\n"
                           f"{company_info}\n")
            projects = knowledge.project_list()
            if projects:
                prompt += (f"\n\nMASTER PROJECT LIST\n"
                           f"The complete list of {config.company_name} projects. Use it whenever the user "
                           "asks what you have worked on. Do not make up projects.\n\n"
                           f"{projects}\n")
        return prompt


class ResponseGenerationClient:
    """
    Chat completion client with proxy-then-direct fallback.

    Stateless with respect to the conversation: the caller passes the
    history for every request.
    """

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None,
                 knowledge: Optional[KnowledgeBase] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or LLMConfig()
        self.api_key = api_key
        self.knowledge = knowledge
        self._client = http_client
        self._stats = {"requests": 0, "direct_fallbacks": 0, "errors": 0, "total_latency": 0.0}
        logger.info(f"Initialized ResponseGenerationClient with model: {self.config.model_name}")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout, connect=10.0))
        return self._client

    def build_messages(self, turn_text: str, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": SystemPromptTemplate.format(self.config, self.knowledge)}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": turn_text})
        return messages

    def _request_body(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        return {
            "messages": messages,
            "model": self.config.model_name,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "top_p": self.config.top_p,
            "frequency_penalty": self.config.frequency_penalty,
            "presence_penalty": self.config.presence_penalty,
            "stop": self.config.stop,
        }

    async def get_response(self, turn_text: str, history: List[Dict[str, str]],
                           token: CancelToken) -> LLMResponse:
        """
        Generate the assistant reply for turn_text.

        Args:
            turn_text: The user's transcribed utterance
            history: Prior turns as chat messages, oldest first
            token: Cancels the request

        Returns:
            LLMResponse with non-empty content

        Raises:
            GenerationFailed: both endpoints failed or the reply was empty
            StoppedByUser: token cancelled
        """
        token.raise_if_cancelled()
        start_time = time.time()
        self._stats["requests"] += 1
        body = self._request_body(self.build_messages(turn_text, history))

        data: Optional[Dict[str, Any]] = None
        source = "proxy"
        if self.config.proxy_url:
            try:
                data = await self._post(self.config.proxy_url, body, {}, token)
            except GenerationFailed as e:
                logger.warning(f"Chat proxy failed, falling back to direct API call: {e}")

        if data is None:
            source = "direct"
            self._stats["direct_fallbacks"] += 1
            if not self.api_key:
                self._stats["errors"] += 1
                raise GenerationFailed("Groq API key is missing for direct call")
            data = await self._post(
                self.config.direct_url, body, {"Authorization": f"Bearer {self.api_key}"}, token
            )

        content, usage = self._extract(data)
        if not content:
            self._stats["errors"] += 1
            raise GenerationFailed("Empty response from chat model")

        latency_ms = (time.time() - start_time) * 1000
        self._stats["total_latency"] += latency_ms
        logger.info(f"Generated response in {latency_ms:.1f}ms via {source}: {content[:50]}...")
        return LLMResponse(
            content=content,
            latency_ms=latency_ms,
            model=self.config.model_name,
            source=source,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str],
                    token: CancelToken) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await token.run(client.post(url, json=body, headers=headers))
        except StoppedByUser:
            raise
        except httpx.HTTPError as e:
            raise GenerationFailed(f"Chat request to {url} failed: {e}", cause=e) from e

        if not response.is_success:
            try:
                message = response.json().get("error", {}).get("message", response.reason_phrase)
            except (ValueError, AttributeError):
                message = response.reason_phrase
            raise GenerationFailed(f"Chat API error {response.status_code}: {message}")

        try:
            return response.json()
        except ValueError as e:
            raise GenerationFailed(f"Invalid JSON from {url}", cause=e) from e

    @staticmethod
    def _extract(data: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Reply text from either the proxy or the direct response shape."""
        if not isinstance(data, dict):
            return "", {}
        usage = data.get("usage") or {}
        if data.get("response"):
            return str(data["response"]).strip(), usage
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
            return str(content).strip(), usage
        return "", usage

    async def health_check(self) -> Tuple[bool, str]:
        if self.config.proxy_url:
            return True, f"Proxy {self.config.proxy_url} configured"
        if self.api_key:
            return True, f"Direct API configured for {self.config.model_name}"
        return False, "No chat proxy configured and GROQ_API_KEY not set"

    def get_stats(self) -> Dict:
        stats = self._stats.copy()
        stats["model"] = self.config.model_name
        if stats["requests"]:
            stats["avg_latency_ms"] = stats["total_latency"] / stats["requests"]
        return stats

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
