"""Prompt building, llama.cpp completion wrapper and reply extraction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Union

from .errors import ModelUnavailable

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
FALLBACK_REPLY = "I can receive your message, but the model response is unavailable right now."


# -----------------------------
# Types & defaults
# -----------------------------

class CompletionModel(Protocol):
    def complete(self, prompt: str, max_tokens: int) -> Any: ...


@dataclass
class GenerationConfig:
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# Prompt & extraction
# -----------------------------

def build_prompt(message: str, context: str = "", system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> str:
    """Render the fixed completion prompt.

    The "Relevant memories" block is present only when ``context`` is
    non-empty.
    """
    memories = f"Relevant memories:\n{context}\n" if context else ""
    return f"{system_prompt}\n{memories}User: {message}\nAssistant:"


# Ordered probe paths over the loosely typed response; first non-blank string wins.
ProbePath = Tuple[Union[str, int], ...]
REPLY_PROBES: Tuple[ProbePath, ...] = (
    ("response",),
    ("text",),
    ("output_text",),
    ("result", "response", 0),
)


def _probe(value: Any, path: ProbePath) -> Any:
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, (list, tuple)) or len(value) <= step:
                return None
            value = value[step]
        else:
            if not isinstance(value, Mapping):
                return None
            value = value.get(step)
    return value


def extract_reply(response: Any) -> Optional[str]:
    """Return the reply text from a model response, or None if no probe matches."""
    for path in REPLY_PROBES:
        found = _probe(response, path)
        if isinstance(found, str) and found.strip():
            return found
    return None


# -----------------------------
# Reply generator
# -----------------------------

class ReplyGenerator:
    """Builds the prompt, calls the model and extracts a reply.

    Never raises: a missing model, an exception from the model or an
    unrecognised response shape all yield :data:`FALLBACK_REPLY`.
    """

    def __init__(
        self,
        model: Optional[CompletionModel],
        *,
        max_tokens: int = 256,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        fallback: str = FALLBACK_REPLY,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.fallback = fallback

    def generate(self, history: Sequence[Any], context: str, message: str) -> str:
        # history is accepted for interface symmetry; the prompt template is fixed.
        prompt = build_prompt(message, context, self.system_prompt)
        try:
            response = self._invoke(prompt)
        except ModelUnavailable as e:
            logger.error("AI generation failed: %s", e, exc_info=e.__cause__ is not None)
            return self.fallback

        reply = extract_reply(response)
        if reply is None:
            logger.warning("Model response had no usable text (type=%s)", type(response).__name__)
            return self.fallback
        return reply

    def _invoke(self, prompt: str) -> Any:
        if self.model is None:
            raise ModelUnavailable("no model configured")
        try:
            return self.model.complete(prompt, self.max_tokens)
        except Exception as e:
            raise ModelUnavailable(f"model invocation failed: {e}") from e


# -----------------------------
# GGUF wrapper
# -----------------------------

class LlamaCompletionModel:
    """Thin wrapper around :mod:`llama_cpp` for non-streaming completion."""

    def __init__(self, model_path: str, **kwargs: Any) -> None:
        """
        Parameters
        ----------
        model_path : str
            Path to .gguf weights.
        kwargs : Any
            Passed to llama_cpp.Llama with some smart defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        # Lazy import so unit tests pass without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            try:
                kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0
            except Exception:
                kwargs["n_gpu_layers"] = 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems / Windows oddities.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

        self.gen_cfg = GenerationConfig()
        # The prompt ends with "Assistant:", so stop before the model writes the next turn.
        self.stops = ["</s>", "User:"]

    def complete(self, prompt: str, max_tokens: int) -> Dict[str, str]:
        result = self._llama(
            prompt,
            max_tokens=max_tokens,
            temperature=self.gen_cfg.temperature,
            top_p=self.gen_cfg.top_p,
            top_k=self.gen_cfg.top_k,
            repeat_penalty=self.gen_cfg.repeat_penalty,
            stop=self.stops,
            stream=False,
        )
        return {"text": result["choices"][0]["text"].strip()}


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> LlamaCompletionModel:
    """Create LlamaCompletionModel from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    params = {
        "n_ctx": model_cfg.get("n_ctx", 4096),
        "n_threads": model_cfg.get("n_threads"),
        "n_gpu_layers": model_cfg.get("n_gpu_layers"),
        "use_mmap": model_cfg.get("use_mmap", True),
    }
    # Remove None entries (llama.cpp is picky)
    params = {k: v for k, v in params.items() if v is not None}

    model = LlamaCompletionModel(model_path=model_path, **params)
    model.gen_cfg = GenerationConfig(
        temperature=float(model_cfg.get("temperature", 0.7)),
        top_p=float(model_cfg.get("top_p", 0.95)),
        top_k=int(model_cfg.get("top_k", 50)),
        repeat_penalty=float(model_cfg.get("repeat_penalty", 1.1)),
    )
    return model
