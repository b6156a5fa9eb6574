"""Text-generation back-ends used by the generative classifier and extractor."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Union

from docintel.errors import DocIntelError, TransientServiceError
from docintel.telemetry import emit_exception, log_event

LOGGER = logging.getLogger(__name__)


class ModelNotReadyError(DocIntelError):
    """Raised when the generation model cannot be loaded."""


class TextGenerator(Protocol):
    """Narrow contract of a prompt-in, text-out model."""

    @property
    def model_name(self) -> str:
        ...

    def generate(self, prompt: str, *, max_tokens: Optional[int] = None) -> str:
        ...


class StaticTextGenerator:
    """Deterministic generator answering from a fixed reply or a callable.

    Every prompt is recorded in :attr:`prompts` so callers can assert on what
    was sent to the model.
    """

    def __init__(self, reply: Union[str, Callable[[str], str]]) -> None:
        self._reply = reply
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return "static"

    def generate(self, prompt: str, *, max_tokens: Optional[int] = None) -> str:
        del max_tokens
        with self._lock:
            self.prompts.append(prompt)
        if callable(self._reply):
            return self._reply(prompt)
        return self._reply


@dataclass(slots=True)
class GenerationConfig:
    model_path: str
    max_tokens: int = 512
    device: str = "cpu"


class TransformersTextGenerator:
    """Lazy-loading wrapper around a causal language model.

    Weights are loaded on the first :meth:`generate` call. Decoding is greedy
    so that identical prompts yield identical answers.
    """

    def __init__(self, config: GenerationConfig) -> None:
        self._config = config
        self._model: Any = None
        self._tokenizer: Any = None
        self._lock = threading.RLock()
        self._load_error: Optional[Exception] = None

    @property
    def model_name(self) -> str:
        return self._config.model_path

    @property
    def model_loaded(self) -> bool:
        return self._model is not None

    @property
    def last_error(self) -> Optional[str]:
        return str(self._load_error) if self._load_error is not None else None

    def _ensure_loaded(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            started = time.perf_counter()
            try:
                from transformers import AutoModelForCausalLM, AutoTokenizer

                tokenizer = AutoTokenizer.from_pretrained(self._config.model_path)
                if tokenizer.pad_token_id is None and tokenizer.eos_token_id is not None:
                    tokenizer.pad_token_id = tokenizer.eos_token_id
                model = AutoModelForCausalLM.from_pretrained(
                    self._config.model_path,
                    device_map=self._config.device,
                    low_cpu_mem_usage=True,
                    trust_remote_code=False,
                )
            except Exception as error:
                self._load_error = error
                emit_exception(module=__name__, error=error)
                raise ModelNotReadyError(
                    f"Failed to load generation model {self._config.model_path!r}", cause=error
                ) from error

            self._model = model
            self._tokenizer = tokenizer
            self._load_error = None
            log_event(
                LOGGER,
                "generation.model.load",
                duration_ms=(time.perf_counter() - started) * 1000.0,
                details={"model": self._config.model_path, "device": self._config.device},
            )

    def generate(self, prompt: str, *, max_tokens: Optional[int] = None) -> str:
        self._ensure_loaded()
        effective_max_tokens = max_tokens if max_tokens and max_tokens > 0 else self._config.max_tokens
        try:
            inputs = self._tokenizer(
                prompt,
                return_tensors="pt",
                truncation=True,
                max_length=getattr(self._tokenizer, "model_max_length", 4096),
            ).to(self._config.device)
            output_ids = self._model.generate(
                **inputs,
                max_new_tokens=effective_max_tokens,
                do_sample=False,
                pad_token_id=self._tokenizer.pad_token_id,
                eos_token_id=self._tokenizer.eos_token_id,
            )
            generated = output_ids[0, inputs["input_ids"].shape[1] :]
            return self._tokenizer.decode(generated, skip_special_tokens=True).strip()
        except Exception as error:
            LOGGER.exception("Text generation failed")
            raise TransientServiceError("Text generation failed", cause=error) from error


__all__ = [
    "GenerationConfig",
    "ModelNotReadyError",
    "StaticTextGenerator",
    "TextGenerator",
    "TransformersTextGenerator",
]
