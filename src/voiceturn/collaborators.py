"""
External collaborator interfaces used by the turn state machine, and an HTTP
response generator for OpenAI-compatible chat-completions servers (llama.cpp,
LM Studio, vLLM, ...)
"""
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from . import config as CFG
from .error_handler import CollaboratorFailure
from .logging_utils import setup_logger

logger = setup_logger("voiceturn.collaborators", "logs/voiceturn.log")


class AudioCapture(Protocol):
    def start_sampling(self, on_level: Callable[[float, float], None]) -> None: ...

    def stop_sampling(self) -> None: ...

    def take_utterance(self) -> Any: ...

    def discard_utterance(self) -> None: ...


class Transcriber(Protocol):
    def transcribe(self, audio: Any) -> str: ...


class ResponseGenerator(Protocol):
    def generate(self, text: str) -> str: ...


class SpeechSynthesizer(Protocol):
    def speak(self, text: str,
              on_start: Callable[[], None],
              on_done: Callable[[], None],
              on_stopped: Callable[[], None],
              on_error: Callable[[Exception], None]) -> Any: ...

    def stop(self, handle: Any) -> None: ...


class ChatCompletionsGenerator:
    """ResponseGenerator backed by a /v1/chat/completions endpoint"""

    def __init__(self, server_url: Optional[str] = None, model: Optional[str] = None,
                 system_prompt: Optional[str] = None, temperature: Optional[float] = None,
                 max_tokens: Optional[int] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.server_url = server_url or CFG.get_llm_server_url()
        self.model = model or CFG.get_llm_model()
        self.system_prompt = system_prompt if system_prompt is not None else CFG.get_system_prompt()
        self.temperature = CFG.get_llm_temperature() if temperature is None else temperature
        self.max_tokens = max_tokens or CFG.get_llm_max_tokens()
        self.timeout = timeout or CFG.get_llm_timeout()
        self.session = session or requests.Session()
        self.history: List[Dict[str, str]] = []
        self.max_history_messages = 12

    def build_messages(self, text: str) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(self.history[-self.max_history_messages:])
        messages.append({"role": "user", "content": text})
        return messages

    def generate(self, text: str) -> str:
        payload = {
            "model": self.model,
            "messages": self.build_messages(text),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }

        try:
            response = self.session.post(self.server_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise CollaboratorFailure("The language model timed out",
                                      component="response_generator", operation="generate") from e
        except requests.exceptions.ConnectionError as e:
            raise CollaboratorFailure(f"Cannot connect to language model at {self.server_url}",
                                      component="response_generator", operation="generate") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CollaboratorFailure(f"Language model request failed: {e}",
                                      component="response_generator", operation="generate") from e

        try:
            reply = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CollaboratorFailure("Malformed chat completion response",
                                      component="response_generator", operation="generate") from e

        reply = reply.strip()
        if reply:
            self.history.append({"role": "user", "content": text})
            self.history.append({"role": "assistant", "content": reply})
        logger.debug(f"LLM reply ({len(reply)} chars)")
        return reply

    def clear_history(self) -> None:
        self.history.clear()
