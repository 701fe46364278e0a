"""Tests for vendor response normalization."""

import pytest

from backend.core.errors import ImageNotFoundError, TextNotFoundError
from backend.upstream.response_normalizer import extract_image, extract_text, to_data_uri

B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


def chat(content=None, **message):
    if content is not None:
        message["content"] = content
    return {"choices": [{"message": message}]}


class TestArrayContent:
    def test_image_url_part(self):
        data = chat([{"type": "text", "text": "here"}, {"type": "image_url", "image_url": {"url": "https://cdn/x.png"}}])
        assert extract_image(data) == "https://cdn/x.png"

    def test_image_source_part_keeps_media_type(self):
        data = chat([{"type": "image", "source": {"data": B64, "media_type": "image/webp"}}])
        assert extract_image(data) == f"data:image/webp;base64,{B64}"

    def test_image_data_part_without_type(self):
        data = chat([{"image": {"data": B64}, "index": 0}])
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_image_bytes_part(self):
        data = chat([{"image": {"image_bytes": B64}}])
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_inline_data_on_image_part(self):
        data = chat([{"type": "image", "data": B64}])
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_url_part(self):
        assert extract_image(chat([{"url": "https://cdn/y.jpg"}])) == "https://cdn/y.jpg"

    def test_b64_json_part(self):
        assert extract_image(chat([{"b64_json": B64}])) == f"data:image/png;base64,{B64}"


class TestStringContent:
    def test_embedded_data_uri_is_extracted(self):
        data = chat(f"Here is your picture: ![page](data:image/jpeg;base64,{B64}) enjoy")
        assert extract_image(data) == f"data:image/jpeg;base64,{B64}"

    def test_plain_text_has_no_image(self):
        with pytest.raises(ImageNotFoundError):
            extract_image(chat("I cannot draw that."))


class TestMessageParts:
    def test_gemini_inline_data(self):
        data = {"candidates": [{"content": {"parts": [{"text": "ok"}, {"inline_data": {"data": B64, "mime_type": "image/jpeg"}}]}}]}
        assert extract_image(data) == f"data:image/jpeg;base64,{B64}"

    def test_gemini_inline_data_camel_case(self):
        data = {"candidates": [{"content": {"parts": [{"inlineData": {"data": B64, "mimeType": "image/webp"}}]}}]}
        assert extract_image(data) == f"data:image/webp;base64,{B64}"

    @pytest.mark.parametrize(
        "part,mime_type",
        [
            ({"inline_data": {"data": B64, "mimeType": "image/jpeg"}}, "image/jpeg"),
            ({"inlineData": {"data": B64, "mime_type": "image/webp"}}, "image/webp"),
        ],
    )
    def test_gemini_inline_data_mixed_key_case(self, part, mime_type):
        data = {"candidates": [{"content": {"parts": [part]}}]}
        assert extract_image(data) == f"data:{mime_type};base64,{B64}"

    def test_parts_on_chat_message(self):
        data = chat(None, parts=[{"image": {"image_bytes": B64, "mime_type": "image/png"}}])
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_parts_image_data(self):
        data = chat(None, parts=[{"image": {"data": B64}}])
        assert extract_image(data) == f"data:image/png;base64,{B64}"


class TestTopLevel:
    def test_data_url(self):
        assert extract_image({"data": [{"url": "https://cdn/z.png"}]}) == "https://cdn/z.png"

    def test_data_b64_json(self):
        assert extract_image({"data": [{"b64_json": B64}]}) == f"data:image/png;base64,{B64}"

    def test_data_items_are_scanned_past_the_first(self):
        data = {"data": [{"revised_prompt": "a fox"}, {"b64_json": B64}, {"url": "https://cdn/late.png"}]}
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_data_item_prefers_url_over_b64_json(self):
        data = {"data": ["skip", {"b64_json": B64, "url": "https://cdn/both.png"}]}
        assert extract_image(data) == "https://cdn/both.png"

    @pytest.mark.parametrize("key", ["image_url", "imageUrl"])
    def test_direct_image_url(self, key):
        assert extract_image({key: "https://cdn/w.png"}) == "https://cdn/w.png"

    def test_imagen_predictions(self):
        data = {"predictions": [{"bytesBase64Encoded": B64, "mimeType": "image/png"}]}
        assert extract_image(data) == f"data:image/png;base64,{B64}"

    def test_message_rules_win_over_top_level(self):
        data = chat([{"url": "https://cdn/first.png"}])
        data["data"] = [{"url": "https://cdn/second.png"}]
        assert extract_image(data) == "https://cdn/first.png"


class TestNoImage:
    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"choices": []},
            {"data": []},
            {"data": [{"revised_prompt": "a fox"}]},
            chat([{"type": "text", "text": "no image"}]),
            {"error": {"message": "quota exceeded"}},
            None,
            [],
        ],
    )
    def test_fails_loudly(self, data):
        with pytest.raises(ImageNotFoundError, match="No image found in response"):
            extract_image(data)


class TestExtractText:
    def test_string_content_is_stripped(self):
        assert extract_text(chat("  Once upon a time.\n")) == "Once upon a time."

    def test_text_parts_are_joined(self):
        data = chat([{"type": "text", "text": "Hello "}, {"type": "text", "text": "world"}])
        assert extract_text(data) == "Hello world"

    @pytest.mark.parametrize("data", [{}, chat(""), chat("   "), {"choices": [{}]}])
    def test_missing_text_raises(self, data):
        with pytest.raises(TextNotFoundError):
            extract_text(data)


def test_data_uri_passthrough():
    uri = f"data:image/gif;base64,{B64}"
    assert to_data_uri(uri) == uri
    assert to_data_uri(B64, "image/jpeg") == f"data:image/jpeg;base64,{B64}"
