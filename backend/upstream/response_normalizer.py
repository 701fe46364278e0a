"""
Normalize heterogeneous vendor responses into a single image or text value.

Vendors disagree on where a generated image lives: OpenAI-compatible chat
responses put it in message content parts, Gemini puts it in `parts` with
`inline_data`, image endpoints return `data[].url` / `data[].b64_json`, and
Imagen returns `predictions[].bytesBase64Encoded`. Each shape is one rule;
rules are tried in order and the first hit wins.
"""

from collections.abc import Callable
import re
from typing import Any

from backend.core.errors import ImageNotFoundError, TextNotFoundError

DATA_URI_PATTERN = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]+")
DEFAULT_MIME_TYPE = "image/png"

Rule = Callable[[Any], str | None]


def to_data_uri(data: str, mime_type: str | None = None) -> str:
    """Wrap base64 data as a data URI; existing data URIs pass through unchanged."""
    if data.startswith("data:"):
        return data
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{data}"


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _get_message(data: Any) -> dict | None:
    """Return choices[0].message, falling back to candidates[0].content."""
    if not isinstance(data, dict):
        return None
    choice = _first(data.get("choices"))
    if isinstance(choice, dict) and isinstance(choice.get("message"), dict):
        return choice["message"]
    candidate = _first(data.get("candidates"))
    if isinstance(candidate, dict) and isinstance(candidate.get("content"), dict):
        return candidate["content"]
    return None


# Rules over a single content part (OpenAI-style array content)


def _part_image_url(part: dict) -> str | None:
    if part.get("type") == "image_url":
        image_url = part.get("image_url")
        if isinstance(image_url, dict) and image_url.get("url"):
            return image_url["url"]
    return None


def _part_image_source(part: dict) -> str | None:
    source = part.get("source")
    if part.get("type") == "image" and isinstance(source, dict) and source.get("data"):
        return to_data_uri(source["data"], source.get("media_type"))
    return None


def _part_image_data(part: dict) -> str | None:
    image = part.get("image")
    if isinstance(image, dict) and image.get("data"):
        return to_data_uri(image["data"], image.get("mime_type") or image.get("mimeType"))
    return None


def _part_image_bytes(part: dict) -> str | None:
    image = part.get("image")
    if isinstance(image, dict) and image.get("image_bytes"):
        return to_data_uri(image["image_bytes"], image.get("mime_type"))
    return None


def _part_inline_image(part: dict) -> str | None:
    if part.get("type") == "image" and isinstance(part.get("data"), str):
        return to_data_uri(part["data"], part.get("mime_type") or part.get("media_type"))
    return None


def _part_url(part: dict) -> str | None:
    url = part.get("url")
    return url if isinstance(url, str) and url else None


def _part_b64_json(part: dict) -> str | None:
    b64 = part.get("b64_json")
    return to_data_uri(b64) if isinstance(b64, str) and b64 else None


CONTENT_PART_RULES: tuple[Callable[[dict], str | None], ...] = (
    _part_image_url,
    _part_image_source,
    _part_image_data,
    _part_image_bytes,
    _part_inline_image,
    _part_url,
    _part_b64_json,
)


# Rules over Gemini-style message.parts


def _gemini_inline_data(part: dict) -> str | None:
    inline = part.get("inline_data")
    if isinstance(inline, dict) and inline.get("data"):
        return to_data_uri(inline["data"], inline.get("mime_type") or inline.get("mimeType"))
    return None


def _gemini_inline_data_camel(part: dict) -> str | None:
    inline = part.get("inlineData")
    if isinstance(inline, dict) and inline.get("data"):
        return to_data_uri(inline["data"], inline.get("mimeType") or inline.get("mime_type"))
    return None


GEMINI_PART_RULES: tuple[Callable[[dict], str | None], ...] = (
    _gemini_inline_data,
    _gemini_inline_data_camel,
    _part_image_bytes,
    _part_image_data,
)


# Rules over the message


def _from_array_content(data: Any) -> str | None:
    message = _get_message(data)
    content = message.get("content") if message else None
    if not isinstance(content, list):
        return None
    for part in content:
        if not isinstance(part, dict):
            continue
        for rule in CONTENT_PART_RULES:
            found = rule(part)
            if found:
                return found
    return None


def _from_string_content(data: Any) -> str | None:
    message = _get_message(data)
    content = message.get("content") if message else None
    if not isinstance(content, str):
        return None
    match = DATA_URI_PATTERN.search(content)
    return match.group(0) if match else None


def _from_message_parts(data: Any) -> str | None:
    message = _get_message(data)
    parts = message.get("parts") if message else None
    if not isinstance(parts, list):
        return None
    for part in parts:
        if not isinstance(part, dict):
            continue
        for rule in GEMINI_PART_RULES:
            found = rule(part)
            if found:
                return found
    return None


# Rules over the top-level response


def _from_data_items(data: Any) -> str | None:
    items = data.get("data") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return None
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("url"):
            return item["url"]
        if item.get("b64_json"):
            return to_data_uri(item["b64_json"])
    return None


def _from_top_level_url(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    url = data.get("image_url") or data.get("imageUrl")
    return url if isinstance(url, str) and url else None


def _from_predictions(data: Any) -> str | None:
    prediction = _first(data.get("predictions")) if isinstance(data, dict) else None
    if isinstance(prediction, dict) and prediction.get("bytesBase64Encoded"):
        return to_data_uri(prediction["bytesBase64Encoded"], prediction.get("mimeType"))
    return None


IMAGE_RULES: tuple[Rule, ...] = (
    _from_array_content,
    _from_string_content,
    _from_message_parts,
    _from_data_items,
    _from_top_level_url,
    _from_predictions,
)


def extract_image(data: Any) -> str:
    """
    Extract a generated image from any supported vendor response.

    Returns:
        A `data:<mime>;base64,...` URI, or the vendor's image URL

    Raises:
        ImageNotFoundError: If no rule matches
    """
    for rule in IMAGE_RULES:
        found = rule(data)
        if found:
            return found
    raise ImageNotFoundError("No image found in response")


def extract_text(data: Any) -> str:
    """
    Extract the assistant text from a chat-completions response.

    Raises:
        TextNotFoundError: If the response has no non-empty text content
    """
    message = _get_message(data)
    content = message.get("content") if message else None

    if isinstance(content, list):
        content = "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        )
    elif message and content is None and isinstance(message.get("parts"), list):
        content = "".join(
            part.get("text", "") for part in message["parts"] if isinstance(part, dict)
        )

    if not isinstance(content, str) or not content.strip():
        raise TextNotFoundError("No text content in response")
    return content.strip()
