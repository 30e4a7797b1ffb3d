"""Per-request flow configuration.

A FlowContext is built fresh for each request from stored config plus
environment flags, then passed explicitly to every flow. Nothing here is
cached between requests, so changing settings takes effect immediately
and tests can hand flows a context with stub models.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from . import storage
from .image_model import HttpImageModel, ImageModel
from .llm import LLM, HttpLLM
from .notify import Notifier, build_notifier


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class FlowContext:
    config: dict[str, Any]
    llm: LLM
    image_model: ImageModel
    notifier: Notifier
    mock_images: bool = False
    image_fallback: bool = False
    production: bool = False
    image_timeout: float = 120.0
    retry_delay: float = 1.0

    def model(self, role: str) -> str:
        return self.config["models"][role]

    def prompt(self, name: str) -> str:
        return self.config["prompts"].get(name) or ""


def build_flow_context() -> FlowContext:
    """Assemble a FlowContext from storage.get_config() and the environment."""
    config = storage.get_config()
    text_conn = config["connections"]["text"]
    image_conn = config["connections"]["image"]
    env_key = os.getenv("GEMINI_API_KEY", "")
    env_url = os.getenv("GEMINI_BASE_URL", "")

    llm = HttpLLM(
        provider_url=env_url or text_conn["provider_url"],
        api_key=text_conn.get("api_key") or env_key,
        provider_format=text_conn.get("format", "gemini"),
        model=config["models"]["synopsis"],
    )
    image_model = HttpImageModel(
        provider_url=env_url or image_conn["provider_url"],
        api_key=image_conn.get("api_key") or env_key,
        model=config["models"]["image"],
    )

    notifications = dict(config["notifications"])
    if os.getenv("SMTP_HOST"):
        notifications["smtp_host"] = os.getenv("SMTP_HOST")
        notifications["smtp_port"] = os.getenv("SMTP_PORT", notifications["smtp_port"])
        notifications["smtp_user"] = os.getenv("SMTP_USER", notifications["smtp_user"])
        notifications["smtp_password"] = os.getenv("SMTP_PASSWORD", notifications["smtp_password"])

    return FlowContext(
        config=config,
        llm=llm,
        image_model=image_model,
        notifier=build_notifier(notifications),
        mock_images=_env_flag("MOCK_STORYBOOK_IMAGES"),
        image_fallback=_env_flag("STORYBOOK_IMAGE_FALLBACK"),
        production=os.getenv("APP_ENV", "").lower() == "production",
    )
