"""
Vendor request shaping for text and image generation APIs.

Turns a caller-supplied API configuration plus a prompt into the URL, JSON
body and headers a given vendor expects. Supported vendors:

- openai: OpenAI-compatible APIs (chat completions, images/generations).
  Gemini models served through an OpenAI-compatible gateway use
  images/edits (with references), images/generations, or chat completions
  when `apiEndpoint == "chat"`.
- volcengine: OpenAI-compatible chat and images/generations.
- google-imagen: POST to `apiUrl` with `instances` / `parameters` (images only).
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from backend.core.errors import PayloadValidationError, UnsupportedVendorError

TEXT_VENDORS = frozenset({"openai", "volcengine"})
IMAGE_VENDORS = frozenset({"openai", "volcengine", "google-imagen"})

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_ASPECT_RATIO = "1:1"

REFERENCE_IMAGES_INSTRUCTION = (
    "Character reference images follow. Characters in the generated image "
    "must look exactly like these references:"
)


class VendorConfig(BaseModel):
    """API configuration supplied in a task payload (`textApiConfig` / `imageApiConfig`)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(..., min_length=1)
    api_url: str = Field(..., alias="apiUrl", min_length=1)
    api_key: str = Field(..., alias="apiKey", min_length=1)
    model: str = Field(..., min_length=1)
    api_endpoint: Literal["images", "chat"] | None = Field(default=None, alias="apiEndpoint")

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def base_url(self) -> str:
        return self.api_url if self.api_url.endswith("/") else self.api_url + "/"

    @property
    def is_gemini(self) -> bool:
        return "gemini" in self.model.lower()

    @property
    def is_gemini3_image(self) -> bool:
        model = self.model.lower()
        return "gemini-3" in model and "image" in model

    @classmethod
    def from_payload(cls, raw: Any, field_name: str) -> "VendorConfig":
        """
        Validate an API configuration from a task payload.

        Raises:
            PayloadValidationError: If the configuration is missing or incomplete
        """
        if not isinstance(raw, dict):
            raise PayloadValidationError(f"Missing API configuration '{field_name}'")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            missing = sorted(
                str(err["loc"][0]) for err in e.errors() if err.get("loc")
            )
            raise PayloadValidationError(
                f"Incomplete API configuration '{field_name}': {', '.join(missing)}"
            ) from e

    def masked(self) -> dict[str, Any]:
        """Loggable view of the configuration with the key hidden."""
        return {
            "type": self.type,
            "apiUrl": self.api_url,
            "model": self.model,
            "apiEndpoint": self.api_endpoint,
            "apiKey": "***",
        }


@dataclass
class VendorRequest:
    """A fully shaped upstream request."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(repr=False, default_factory=dict)
    endpoint: str = ""


@dataclass(frozen=True)
class ImageDimensions:
    width: int
    height: int

    @property
    def size_string(self) -> str:
        return f"{self.width}x{self.height}"


def auth_headers(config: VendorConfig) -> dict[str, str]:
    return {"Authorization": f"Bearer {config.api_key}"}


def calculate_image_size(
    base_size: str = DEFAULT_IMAGE_SIZE, aspect_ratio: str = DEFAULT_ASPECT_RATIO
) -> ImageDimensions:
    """
    Derive pixel dimensions from a base size and an aspect ratio.

    The first number of `base_size` becomes the long side; both sides are
    rounded to multiples of 64.

    >>> calculate_image_size("1024x1024", "16:9").size_string
    '1024x576'
    """
    try:
        base = int(base_size.lower().split("x")[0])
    except (ValueError, AttributeError):
        base = 1024
    if base <= 0:
        base = 1024

    try:
        ratio_w, ratio_h = (float(p) for p in aspect_ratio.split(":"))
        ratio = ratio_w / ratio_h
    except (ValueError, ZeroDivisionError, AttributeError):
        ratio = 1.0

    if ratio >= 1:
        width, height = base, round(base / ratio)
    else:
        width, height = round(base * ratio), base

    return ImageDimensions(
        width=max(64, round(width / 64) * 64),
        height=max(64, round(height / 64) * 64),
    )


def preset_image_size(pixel_size: str) -> str:
    """Map a pixel size to the gateway presets accepted by Gemini image endpoints."""
    try:
        width = int(pixel_size.lower().split("x")[0])
    except (ValueError, AttributeError):
        width = 1024
    if width >= 2048:
        return "4K"
    if width >= 1280:
        return "HD"
    return "1K"


def build_text_request(
    config: VendorConfig,
    messages: list[dict[str, Any]] | str,
    *,
    temperature: float = 0.8,
    max_tokens: int = 8000,
) -> VendorRequest:
    """
    Shape a chat-completions request.

    Args:
        config: Text API configuration
        messages: Full message list, or a single user prompt string

    Raises:
        UnsupportedVendorError: For vendors without a chat API
    """
    if config.type not in TEXT_VENDORS:
        raise UnsupportedVendorError(f"Unsupported text API type: {config.type}")

    if isinstance(messages, str):
        messages = [{"role": "user", "content": messages}]

    return VendorRequest(
        url=f"{config.base_url}chat/completions",
        body={
            "model": config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        },
        headers=auth_headers(config),
        endpoint="chat/completions",
    )


def _gemini_request(
    config: VendorConfig,
    prompt: str,
    reference_images: list[str],
    image_size: str,
    aspect_ratio: str,
) -> VendorRequest:
    if config.api_endpoint == "chat":
        if config.is_gemini3_image and not reference_images:
            content: Any = prompt
        else:
            content = []
            if reference_images:
                content.append({"type": "text", "text": REFERENCE_IMAGES_INSTRUCTION})
                content.extend(
                    {"type": "image_url", "image_url": {"url": image}}
                    for image in reference_images
                )
            content.append({"type": "text", "text": prompt})
        body = {"model": config.model, "messages": [{"role": "user", "content": content}]}
        endpoint = "chat/completions"
    else:
        body = {
            "model": config.model,
            "prompt": prompt,
            "image_config": {
                "aspect_ratio": aspect_ratio,
                "image_size": preset_image_size(image_size),
            },
        }
        if reference_images:
            body["image"] = list(reference_images)
            endpoint = "images/edits"
        else:
            endpoint = "images/generations"

    return VendorRequest(
        url=f"{config.base_url}{endpoint}",
        body=body,
        headers=auth_headers(config),
        endpoint=endpoint,
    )


def build_image_request(
    config: VendorConfig,
    prompt: str,
    *,
    reference_images: list[str] | None = None,
    image_size: str = DEFAULT_IMAGE_SIZE,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
) -> VendorRequest:
    """
    Shape an image generation request for the configured vendor.

    Reference images are only sent to Gemini models; other vendors generate
    from the prompt alone.

    Raises:
        UnsupportedVendorError: For unknown vendor types
    """
    reference_images = reference_images or []
    dimensions = calculate_image_size(image_size, aspect_ratio)

    if config.type == "openai" and config.is_gemini:
        return _gemini_request(config, prompt, reference_images, image_size, aspect_ratio)

    if config.type == "openai":
        body = {
            "model": config.model,
            "prompt": prompt,
            "n": 1,
            "size": dimensions.size_string,
            "quality": "standard",
        }
        return VendorRequest(
            url=f"{config.base_url}images/generations",
            body=body,
            headers=auth_headers(config),
            endpoint="images/generations",
        )

    if config.type == "volcengine":
        body = {
            "model": config.model,
            "prompt": prompt,
            "n": 1,
            "size": dimensions.size_string,
        }
        return VendorRequest(
            url=f"{config.base_url}images/generations",
            body=body,
            headers=auth_headers(config),
            endpoint="images/generations",
        )

    if config.type == "google-imagen":
        return VendorRequest(
            url=config.api_url,
            body={"instances": [{"prompt": prompt}], "parameters": {"sampleCount": 1}},
            headers=auth_headers(config),
            endpoint="predict",
        )

    raise UnsupportedVendorError(f"Unsupported image API type: {config.type}")
