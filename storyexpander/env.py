"""Environment helpers for Story Expander.

Centralizes reading environment variables, resolving model/token settings
per pipeline step, masking secrets for logging, normalizing base URLs, and
capturing a program environment snapshot for diagnostics.
"""
from __future__ import annotations

import os
import re
from typing import Optional, Dict, Any, List, Tuple
from pathlib import Path

from dotenv import load_dotenv

from . import config


def load_env() -> None:
    """Load environment variables from a local .env file if present.

    We set override=True so the local .env takes precedence over shell state
    during development, which avoids confusion from lingering env values.
    """
    load_dotenv(override=True)


def env_str(name: str) -> Optional[str]:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return None
    return val


def env_int(name: str, default: int) -> int:
    try:
        v = int(os.getenv(name, str(default)))
        if v <= 0:
            return default
        return v
    except Exception:
        return default


def env_float(name: str, default: float) -> float:
    try:
        v = float(os.getenv(name, str(default)))
        return v if v >= 0 else default
    except Exception:
        return default


def resolve_temp(step_key: str, default_temp: float) -> float:
    """Resolve temperature with precedence: SE_TEMP_{STEP} -> SE_TEMP_DEFAULT -> default_temp."""
    for name in (f"SE_TEMP_{step_key}", "SE_TEMP_DEFAULT"):
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            try:
                return float(val)
            except Exception:
                pass
    return float(default_temp)


def resolve_max_tokens(step_key: str, default_max_tokens: int) -> int:
    """Resolve max tokens with precedence: SE_MAX_TOKENS_{STEP} -> SE_MAX_TOKENS_DEFAULT -> default."""
    for name in (f"SE_MAX_TOKENS_{step_key}", "SE_MAX_TOKENS_DEFAULT"):
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            try:
                v = int(val)
                return v if v > 0 else default_max_tokens
            except Exception:
                pass
    return int(default_max_tokens)


# ---------------------------
# Models
# ---------------------------

def get_model() -> str:
    return env_str("SE_MODEL_DEFAULT") or config.DEFAULT_MODEL


def get_fallback_model() -> str:
    return env_str("SE_MODEL_FALLBACK") or config.FALLBACK_MODEL


def get_image_model() -> str:
    return env_str("SE_IMAGE_MODEL") or config.IMAGE_MODEL


def retry_attempts() -> int:
    return env_int("SE_RETRY_ATTEMPTS", config.MAX_ATTEMPTS)


def retry_base_delay() -> float:
    return env_float("SE_RETRY_BASE_DELAY", 1.0)


# ---------------------------
# Path resolution
# ---------------------------

def _as_path(val: Optional[str]) -> Optional[Path]:
    if val is None or str(val).strip() == "":
        return None
    return Path(val)


def get_base_dir() -> Path:
    """Resolve the base working directory for a project.

    Env: SE_BASE_DIR
    Default: current working directory
    """
    base = env_str("SE_BASE_DIR")
    if base:
        p = Path(base)
        return p if p.is_absolute() else (Path.cwd() / p)
    return Path(".")


def get_state_dir() -> Path:
    """Resolve the directory holding persisted pipeline snapshots.

    Env: SE_STATE_DIR (relative to base if not absolute)
    Default: <base>/state
    """
    base = get_base_dir()
    p = _as_path(env_str("SE_STATE_DIR"))
    if p is None:
        return base / "state"
    return p if p.is_absolute() else (base / p)


def get_llm_log_dir() -> Path:
    return get_base_dir() / "llm_logs"


def get_prompts_dir() -> Path:
    """Resolve the prompt template directory.

    Env: SE_PROMPTS_DIR
    Default: the templates shipped inside the package
    """
    p = _as_path(env_str("SE_PROMPTS_DIR"))
    if p is None:
        return Path(__file__).resolve().parent / "prompts"
    return p if p.is_absolute() else (get_base_dir() / p)


def log_llm_enabled() -> bool:
    return os.getenv("SE_LOG_LLM", "0").strip() == "1"


# ---------------------------
# Composite resolvers for steps and prompt templates
# ---------------------------

def env_for(step_key: str, *, default_temp: float = 0.7, default_max_tokens: int = 4000) -> Tuple[Optional[str], float, int]:
    """Resolve (model, temperature, max_tokens) for a logical step.

    Precedence:
    - SE_MODEL_{STEP}, SE_TEMP_{STEP}, SE_MAX_TOKENS_{STEP}
    - SE_TEMP_DEFAULT, SE_MAX_TOKENS_DEFAULT
    - Provided defaults
    """
    model = env_str(f"SE_MODEL_{step_key}")
    temp = resolve_temp(step_key, default_temp)
    max_tokens = resolve_max_tokens(step_key, default_max_tokens)
    return model, float(temp), int(max_tokens)


def env_for_prompt(template_filename: str, fallback_step_key: str, *, default_temp: float, default_max_tokens: int) -> Tuple[Optional[str], float, int]:
    """Resolve env for a specific prompt template with per-prompt overrides.

    Precedence:
    - SE_MODEL_PROMPT_{KEY}, SE_TEMP_PROMPT_{KEY}, SE_MAX_TOKENS_PROMPT_{KEY}
    - Fallback to env_for(fallback_step_key)
    - Provided defaults
    """
    from .templates import prompt_key_from_filename

    key = prompt_key_from_filename(template_filename)
    model = None
    temp: Optional[float] = None
    max_tokens: Optional[int] = None
    if key:
        model = env_str(f"SE_MODEL_PROMPT_{key}") or None
        t = os.getenv(f"SE_TEMP_PROMPT_{key}")
        if t is not None and str(t).strip() != "":
            try:
                temp = float(t)
            except Exception:
                temp = None
        mt = os.getenv(f"SE_MAX_TOKENS_PROMPT_{key}")
        if mt is not None and str(mt).strip() != "":
            try:
                v = int(mt)
                max_tokens = v if v > 0 else None
            except Exception:
                max_tokens = None
    step_model, step_temp, step_max = env_for(fallback_step_key, default_temp=default_temp, default_max_tokens=default_max_tokens)
    model = model or step_model or get_model()
    if temp is None:
        temp = step_temp
    if max_tokens is None:
        max_tokens = step_max
    return model, float(temp), int(max_tokens)


def mask_env_value(k: str, v: Optional[str]) -> str:
    """Mask secrets in environment values while retaining minimal suffix for debugging.
    Masks keys containing key/secret/token/password regardless of prefix.
    """
    try:
        if v is None:
            return ""
        kl = (k or "").lower()
        if any(s in kl for s in ("key", "secret", "token", "password")):
            s = str(v)
            if len(s) <= 8:
                return "***"
            return ("*" * (len(s) - 4)) + s[-4:]
        return str(v)
    except Exception:
        return ""


def normalize_base_url_from_env() -> Dict[str, str]:
    """Infer the effective base URL or Azure endpoint from environment without creating a client."""
    info: Dict[str, str] = {}
    azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT") or os.getenv("AZURE_OPENAI_API_BASE")
    if azure_endpoint:
        info["azure_endpoint"] = azure_endpoint.strip()
        info["azure_api_version"] = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        return info
    base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
    if base_url:
        info["base_url"] = normalize_base_url(base_url)
    return info


def normalize_base_url(base_url: str) -> str:
    """Many OpenAI-compatible providers require a '/v1' suffix; append it when missing."""
    bu = base_url.strip()
    lower = bu.lower()
    is_azure = ("azure.com" in lower) or ("openai.azure" in lower)
    if (not is_azure) and not re.search(r"/v\d+/?$", bu):
        bu = bu.rstrip("/") + "/v1"
    return bu


def collect_program_env_snapshot() -> Dict[str, Any]:
    """Collect program-relevant environment settings for diagnostics.
    Includes SE_*, OPENAI_*, AZURE_OPENAI_* variables with secret masking,
    plus derived fields such as base URL and default/fallback models.
    """
    prefixes = ("SE_", "OPENAI_", "AZURE_OPENAI_")
    env_items: List[Tuple[str, str]] = []
    for k, v in os.environ.items():
        if any(k.startswith(p) for p in prefixes):
            env_items.append((k, mask_env_value(k, v)))
    env_items.sort(key=lambda kv: kv[0])
    derived: Dict[str, Any] = {}
    derived.update(normalize_base_url_from_env())
    derived["model_default"] = get_model()
    derived["model_fallback"] = get_fallback_model()
    derived["image_model"] = get_image_model()
    derived["tokens_param_forced"] = env_str("SE_TOKENS_PARAM") or ""
    derived["retry_attempts"] = retry_attempts()
    derived["state_dir"] = str(get_state_dir())
    derived["prompts_dir"] = str(get_prompts_dir())
    derived["dotenv_override_enabled"] = True
    return {
        "env": {k: v for k, v in env_items},
        "derived": derived,
    }
