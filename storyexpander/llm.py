"""OpenAI client utilities: chat completion, image generation, credential lookup.

This module is the provider adapter. It performs exactly one request per call
and raises on transport/service errors; retry and model fallback live in
storyexpander.generation.

Public API:
- get_credential() -> Optional[str]
- validate_credential(lookup=None) -> str
- get_client() -> client | None
- complete(prompt, *, system, temperature, max_tokens, model) -> str
- generate_image(prompt, *, model, size) -> ImageResult
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional

import openai
from openai import OpenAI, AzureOpenAI

from .context import MissingCredentialError
from .env import env_str, get_image_model, get_model, normalize_base_url
from .logging import breadcrumb as _breadcrumb, log_run as _log_run
from .tokenizer import count_chat_tokens as _count_chat_tokens
from . import config

_CLIENT = None  # type: ignore
_CLIENT_INFO = ""  # for diagnostics (base_url or azure endpoint)

# Model families that reject `max_tokens` in favour of `max_completion_tokens`
_COMPLETION_TOKEN_FAMILIES = ("o1", "o3", "o4", "gpt-5")


@dataclass
class ImageResult:
    """Image synthesis outcome. A safety rejection is a result, not an error."""

    image_url: Optional[str]
    reason: str = ""
    rejected: bool = False


def get_credential() -> Optional[str]:
    return env_str("AZURE_OPENAI_API_KEY") or env_str("OPENAI_API_KEY")


def validate_credential(lookup: Optional[Callable[[], Optional[str]]] = None) -> str:
    """Fail fast with MissingCredentialError when no credential is configured."""
    key = (lookup or get_credential)()
    if not key or not str(key).strip():
        raise MissingCredentialError(
            "No API key configured. Set OPENAI_API_KEY (or AZURE_OPENAI_API_KEY) in the environment or .env"
        )
    return str(key)


def reset_client() -> None:
    global _CLIENT, _CLIENT_INFO
    _CLIENT = None
    _CLIENT_INFO = ""


def get_client():
    """Return an OpenAI client if a credential is present; otherwise None.
    Supports native OpenAI, OpenAI-compatible base URLs and Azure OpenAI.
    """
    global _CLIENT, _CLIENT_INFO
    if _CLIENT is not None:
        return _CLIENT
    api_key = get_credential()
    if not api_key:
        return None
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT") or os.getenv("AZURE_OPENAI_API_BASE")
    if azure_endpoint:
        api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        _CLIENT = AzureOpenAI(azure_endpoint=azure_endpoint, api_version=api_version, api_key=api_key)
        _CLIENT_INFO = f"azure:{azure_endpoint}|v={api_version}"
        _breadcrumb(f"openai:client-initialized azure_endpoint={azure_endpoint} api_version={api_version}")
        return _CLIENT
    base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
    if base_url:
        bu = normalize_base_url(base_url)
        _CLIENT = OpenAI(base_url=bu, api_key=api_key)
        _CLIENT_INFO = f"base_url:{bu}"
    else:
        _CLIENT = OpenAI(api_key=api_key)
        _CLIENT_INFO = "default"
    _breadcrumb(f"openai:client-initialized {_CLIENT_INFO}")
    return _CLIENT


def token_param_for(model: str) -> str:
    forced = env_str("SE_TOKENS_PARAM")
    if forced:
        return forced.strip()
    name = (model or "").lower()
    if any(name.startswith(fam) for fam in _COMPLETION_TOKEN_FAMILIES):
        return "max_completion_tokens"
    return "max_tokens"


def _log_usage(resp) -> None:
    try:
        usage = getattr(resp, "usage", None)
        if usage:
            fr = resp.choices[0].finish_reason if resp.choices else None
            _log_run(
                f"LLM response | usage prompt={getattr(usage, 'prompt_tokens', None)} "
                f"completion={getattr(usage, 'completion_tokens', None)} "
                f"total={getattr(usage, 'total_tokens', None)} finish_reason={fr}"
            )
    except Exception:
        pass


def complete(
    prompt: str,
    *,
    system: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 4000,
    model: Optional[str] = None,
) -> str:
    """Single chat-completion request. Raises on provider errors."""
    client = get_client()
    if client is None:
        raise MissingCredentialError("No API key configured for text generation")
    model_name = model or get_model()
    messages = [
        {"role": "system", "content": system or "You are a skilled novelist and story editor."},
        {"role": "user", "content": prompt},
    ]
    kwargs = {
        "model": model_name,
        "messages": messages,
        "temperature": temperature,
    }
    token_param = token_param_for(model_name)
    kwargs[token_param] = int(max_tokens)
    try:
        ptoks = int(_count_chat_tokens(messages, model_name))
    except Exception:
        ptoks = 0
    _log_run(
        f"LLM request | model={model_name} temp={temperature} param={token_param} "
        f"prompt_tokens={ptoks} chars={len(prompt)} limit={max_tokens} endpoint={_CLIENT_INFO}"
    )
    try:
        resp = client.chat.completions.create(**kwargs)
    except openai.BadRequestError as e:
        msg = str(e)
        if "Unsupported parameter" in msg and token_param in msg:
            # Provider wants the other token budget parameter name
            alt = "max_completion_tokens" if token_param == "max_tokens" else "max_tokens"
            _breadcrumb(f"llm:param-fallback:{alt}")
            kwargs.pop(token_param, None)
            kwargs[alt] = int(max_tokens)
            resp = client.chat.completions.create(**kwargs)
        elif ("Unsupported value" in msg or "unsupported_value" in msg) and "temperature" in msg:
            # Some reasoning models only accept the default temperature
            _breadcrumb("llm:param-fallback:temperature-default")
            kwargs.pop("temperature", None)
            resp = client.chat.completions.create(**kwargs)
        else:
            raise
    _log_usage(resp)
    return resp.choices[0].message.content or ""


def _is_safety_rejection(err: Exception) -> bool:
    code = str(getattr(err, "code", "") or "")
    msg = str(err).lower()
    return code == "content_policy_violation" or "content_policy" in msg or "safety system" in msg


def generate_image(prompt: str, *, model: Optional[str] = None, size: Optional[str] = None) -> ImageResult:
    """Request one image. Safety rejections come back as ImageResult(rejected=True)."""
    client = get_client()
    if client is None:
        raise MissingCredentialError("No API key configured for image generation")
    model_name = model or get_image_model()
    _log_run(f"IMAGE request | model={model_name} chars={len(prompt)}")
    try:
        resp = client.images.generate(
            model=model_name,
            prompt=prompt,
            n=1,
            size=size or env_str("SE_IMAGE_SIZE") or config.IMAGE_SIZE,
        )
    except openai.BadRequestError as e:
        if _is_safety_rejection(e):
            return ImageResult(image_url=None, reason=str(e), rejected=True)
        raise
    data = getattr(resp, "data", None) or []
    url = getattr(data[0], "url", None) if data else None
    if not url:
        return ImageResult(image_url=None, reason="Image provider returned no URL")
    return ImageResult(image_url=url)
