import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")


PROVIDER_DEFAULTS: Dict[str, Dict[str, Optional[str]]] = {
    "openai": {
        "base_url": None,
        "chat_model": "gpt-4o-mini",
        "key_env": "OPENAI_API_KEY",
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "chat_model": "google/gemini-2.0-flash-001",
        "key_env": "OPEN_ROUTER_API_KEY",
    },
    "mistral": {
        "base_url": "https://api.mistral.ai/v1",
        "chat_model": "mistral-small-latest",
        "key_env": "MISTRAL_API_KEY",
    },
}

# Providers whose vision+JSON mode is known to invent numeric line items.
OCR_FIRST_PROVIDERS = {"mistral"}

EXTRACTION_STRATEGIES = {"auto", "ocr_then_parse", "direct_vision"}
OCR_BACKENDS = {"mistral", "tesseract", "none"}


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    the repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping; does not mutate the environment."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    values = {k: v.strip() for k, v in dotenv_values(path).items() if k and v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(env: Dict[str, str], *names: str) -> Optional[str]:
    """First non-empty value among names, process environment first."""
    for name in names:
        v = os.environ.get(name)
        if v and v.strip():
            return v.strip()
    for name in names:
        v = env.get(name) or env.get(name.lower())
        if v and v.strip():
            return v.strip()
    return None


def _int_setting(env: Dict[str, str], name: str, default: int) -> int:
    raw = _lookup(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not an integer; using {default}")
        return default


@dataclass(frozen=True)
class AssistantSettings:
    """Everything the assistant needs to talk to its providers."""

    provider: str
    api_key: Optional[str]
    base_url: Optional[str]
    chat_model: str
    extraction_model: str
    extraction_strategy: str
    ocr_backend: str
    ocr_api_key: Optional[str]
    ocr_base_url: str = "https://api.mistral.ai"
    ocr_model: str = "mistral-ocr-latest"
    max_image_side: int = 1540
    image_quality: int = 80
    max_vision_images: int = 8
    retry_attempts: int = 4
    retry_delays: Tuple[float, ...] = (20.0, 40.0, 60.0)
    pending_ttl_seconds: int = 1800
    request_timeout_seconds: int = 180
    temperature: float = 0.0

    @property
    def uses_ocr_then_parse(self) -> bool:
        if self.extraction_strategy == "ocr_then_parse":
            return True
        if self.extraction_strategy == "direct_vision":
            return False
        return self.provider in OCR_FIRST_PROVIDERS


def load_settings(dotenv_dir: Optional[str] = None) -> AssistantSettings:
    """Build settings from the process environment, falling back to .env."""
    env = _read_dotenv(dotenv_dir or os.getcwd())

    provider = (_lookup(env, "AUTOSERVICE_PROVIDER") or "openai").lower()
    if provider not in PROVIDER_DEFAULTS:
        log.warning(f"Unknown AUTOSERVICE_PROVIDER={provider!r}; defaulting to 'openai'")
        provider = "openai"
    defaults = PROVIDER_DEFAULTS[provider]

    api_key = _lookup(env, "AUTOSERVICE_API_KEY", str(defaults["key_env"]))
    if not api_key:
        log.warning(f"No API key found for provider '{provider}' (AUTOSERVICE_API_KEY / {defaults['key_env']})")
    base_url = _lookup(env, "AUTOSERVICE_BASE_URL") or defaults["base_url"]
    chat_model = _lookup(env, "AUTOSERVICE_CHAT_MODEL") or str(defaults["chat_model"])
    extraction_model = _lookup(env, "AUTOSERVICE_EXTRACTION_MODEL") or chat_model

    strategy = (_lookup(env, "AUTOSERVICE_EXTRACTION_STRATEGY") or "auto").lower()
    if strategy not in EXTRACTION_STRATEGIES:
        log.warning(f"AUTOSERVICE_EXTRACTION_STRATEGY={strategy!r} is invalid; using 'auto'")
        strategy = "auto"

    mistral_key = _lookup(env, "MISTRAL_API_KEY")
    ocr_backend = (_lookup(env, "AUTOSERVICE_OCR_BACKEND") or "").lower()
    if not ocr_backend:
        ocr_backend = "mistral" if (provider == "mistral" or mistral_key) else "none"
    if ocr_backend not in OCR_BACKENDS:
        log.warning(f"AUTOSERVICE_OCR_BACKEND={ocr_backend!r} is invalid; OCR disabled")
        ocr_backend = "none"
    if ocr_backend == "mistral" and not mistral_key:
        log.warning("Mistral OCR selected but MISTRAL_API_KEY is missing; OCR disabled")
        ocr_backend = "none"

    settings = AssistantSettings(
        provider=provider,
        api_key=api_key,
        base_url=base_url,
        chat_model=chat_model,
        extraction_model=extraction_model,
        extraction_strategy=strategy,
        ocr_backend=ocr_backend,
        ocr_api_key=mistral_key,
        ocr_base_url=_lookup(env, "MISTRAL_BASE_URL") or "https://api.mistral.ai",
        ocr_model=_lookup(env, "MISTRAL_OCR_MODEL") or "mistral-ocr-latest",
        max_image_side=_int_setting(env, "AUTOSERVICE_MAX_IMAGE_SIDE", 1540),
        retry_attempts=_int_setting(env, "AUTOSERVICE_RETRY_ATTEMPTS", 4),
        pending_ttl_seconds=_int_setting(env, "AUTOSERVICE_PENDING_TTL", 1800),
    )
    log.info(
        f"Settings: provider={settings.provider} model={settings.chat_model} "
        f"ocr={settings.ocr_backend} strategy={'ocr_then_parse' if settings.uses_ocr_then_parse else 'direct_vision'}"
    )
    return settings
