"""
LLM interface for various model providers.

This module provides interfaces for interacting with different LLM providers,
including local models (Ollama) and cloud providers (OpenAI, Anthropic).
Failures raise LLMError so callers can fall back to heuristics.
"""

import logging
import os
import time
import configparser
from typing import Optional
from abc import ABC, abstractmethod

import requests

logger = logging.getLogger('meeting_ai.llm')


class LLMError(Exception):
    """The model could not produce a completion."""


class LLMInterface(ABC):
    """Abstract base class for LLM providers"""

    @abstractmethod
    def get_completion(self, prompt: str, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        """Get a completion from the model"""
        pass


class LocalLLM(LLMInterface):
    """Interface to Ollama LLM server"""

    def __init__(self, config):
        """Initialize with configuration"""
        self.config = config
        self.base_url = config["models"].get("llm_api_url", "http://localhost:11434/api")
        self.model_name = config["models"].get("llm_model", "mistral:7b-instruct-v0.2")
        self.temperature = float(config["system"].get("temperature", "0.1"))
        self.max_tokens = int(config["system"].get("max_token_limit", "500"))
        self.timeout = float(config["system"].get("request_timeout", "60"))

    def get_completion(self, prompt: str, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        """Get a completion from Ollama"""
        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens if max_tokens is not None else self.max_tokens

        payload = {
            "model": self.model_name,
            "prompt": prompt,
            "options": {"temperature": temperature, "num_predict": max_tokens},
            "stream": False
        }
        if system:
            payload["system"] = system
        if json_mode:
            payload["format"] = "json"

        try:
            response = requests.post(
                f"{self.base_url.rstrip('/')}/generate",
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Error calling Ollama API: {e}")
            raise LLMError(f"Ollama is not available: {e}") from e

        if response.status_code != 200:
            logger.error(f"Error from Ollama API: {response.status_code} - {response.text}")
            raise LLMError(f"Ollama API returned status code {response.status_code}")

        return response.json().get("response", "")


class OpenAILLM(LLMInterface):
    """Interface to OpenAI API"""

    def __init__(self, config):
        """Initialize with configuration"""
        self.config = config
        self.api_key = config["openai"].get("api_key") or os.environ.get("OPENAI_API_KEY", "")
        self.model_name = config["openai"].get("model", "gpt-4o-mini")
        self.temperature = float(config["system"].get("temperature", "0.1"))
        self.max_tokens = int(config["system"].get("max_token_limit", "500"))
        self.timeout = float(config["system"].get("request_timeout", "60"))

        # Rate limiting
        self.request_delay = float(config["openai"].get("request_delay", "0.5"))
        self.last_request_time = 0
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def get_completion(self, prompt: str, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        """Get a completion from OpenAI"""
        if not self.api_key:
            raise LLMError("OpenAI API key not set")

        # Apply rate limiting
        elapsed = time.time() - self.last_request_time
        if elapsed < self.request_delay:
            time.sleep(self.request_delay - elapsed)

        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens if max_tokens is not None else self.max_tokens

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self._get_client().chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception as e:
            logger.error(f"Error calling OpenAI API: {e}")
            raise LLMError(str(e)) from e
        finally:
            self.last_request_time = time.time()

        content = response.choices[0].message.content
        if not content:
            raise LLMError("No response from OpenAI")
        return content


class AnthropicLLM(LLMInterface):
    """Interface to Anthropic Claude API"""

    def __init__(self, config):
        """Initialize with configuration"""
        self.config = config
        self.api_key = config["anthropic"].get("api_key") or os.environ.get("ANTHROPIC_API_KEY", "")
        self.model_name = config["anthropic"].get("model", "claude-3-haiku-20240307")
        self.temperature = float(config["system"].get("temperature", "0.1"))
        self.max_tokens = int(config["system"].get("max_token_limit", "500"))
        self.timeout = float(config["system"].get("request_timeout", "60"))

        # Rate limiting
        self.request_delay = float(config["anthropic"].get("request_delay", "0.5"))
        self.last_request_time = 0

    def get_completion(self, prompt: str, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        """Get a completion from Anthropic"""
        if not self.api_key:
            raise LLMError("Anthropic API key not set")

        # Apply rate limiting
        elapsed = time.time() - self.last_request_time
        if elapsed < self.request_delay:
            time.sleep(self.request_delay - elapsed)

        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens if max_tokens is not None else self.max_tokens

        kwargs = {}
        if system:
            kwargs["system"] = system

        try:
            import anthropic
            client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)

            response = client.messages.create(
                model=self.model_name,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                **kwargs
            )
        except Exception as e:
            logger.error(f"Error calling Anthropic API: {e}")
            raise LLMError(str(e)) from e
        finally:
            self.last_request_time = time.time()

        return response.content[0].text


def create_llm_instance(config) -> Optional[LLMInterface]:
    """
    Factory function to create the appropriate LLM instance.

    Returns None when the provider is "none"; the email parser then uses its
    heuristic extraction only.
    """
    if not config or not isinstance(config, configparser.ConfigParser):
        logger.warning("Invalid config provided to LLM factory. Using local LLM.")
        config = configparser.ConfigParser()
        config["models"] = {"provider": "local", "llm_model": "mistral:7b-instruct-v0.2"}
        config["system"] = {"temperature": "0.1", "max_token_limit": "500"}
        return LocalLLM(config)

    provider = config.get("models", "provider", fallback="local").strip().lower()
    for section in ("models", "system", "openai", "anthropic"):
        if not config.has_section(section):
            config.add_section(section)

    if provider == "none":
        logger.info("No LLM configured, email parsing uses heuristics only")
        return None
    if provider == "openai":
        return OpenAILLM(config)
    if provider == "anthropic":
        return AnthropicLLM(config)
    if provider != "local":
        logger.warning(f"Unknown LLM provider '{provider}', using local LLM")
    return LocalLLM(config)
